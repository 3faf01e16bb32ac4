"""Provider families and their wire adapters.

This module provides:
- The model-name pattern table that routes a model to a provider family
- Credential resolution (caller-supplied first, deployment fallback second)
- Adapters that build the provider-specific request body and headers and
  pull the completion text back out of the provider response
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from . import config
from .errors import ErrorKind, TaskError
from .prompts import compose_user_content


class ProviderFamily(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    XAI = "xai"


@dataclass(frozen=True)
class ResolvedProvider:
    family: ProviderFamily
    model: str
    api_key: str
    base_url: str

    def __repr__(self) -> str:
        # Keep credentials out of logs and tracebacks
        return f"ResolvedProvider(family={self.family.value!r}, model={self.model!r}, base_url={self.base_url!r})"


class ProviderAdapter(ABC):
    """Base class for provider wire adapters."""

    display_name = "Provider"

    @abstractmethod
    def get_headers(self, api_key: str) -> Dict[str, str]:
        """Return headers with provider-specific auth and content type."""
        pass

    @abstractmethod
    def build_request(
        self,
        model: str,
        prompt: str,
        context: Optional[Mapping[str, Any]],
        temperature: float,
        max_tokens: int,
        system_prompt: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Return the JSON body for a single-turn completion."""
        pass

    @abstractmethod
    def parse_response(self, body: Dict[str, Any]) -> str:
        """Extract completion text. Raises KeyError/IndexError/TypeError/ValueError on unexpected shapes."""
        pass

    def get_chat_endpoint(self) -> str:
        return "/chat/completions"


class OpenAIAdapter(ProviderAdapter):
    """OpenAI and OpenAI-compatible providers."""

    display_name = "OpenAI"
    default_system_prompt = "You are a helpful AI assistant executing workflow tasks."

    def get_headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {api_key}",
        }

    def build_request(self, model, prompt, context, temperature, max_tokens, system_prompt=None):
        return {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [
                {"role": "system", "content": system_prompt or self.default_system_prompt},
                {"role": "user", "content": compose_user_content(prompt, context)},
            ],
        }

    def parse_response(self, body: Dict[str, Any]) -> str:
        content = body["choices"][0]["message"]["content"]
        if not isinstance(content, str):
            raise TypeError(f"expected string content, got {type(content).__name__}")
        return content


class XAIAdapter(OpenAIAdapter):
    """xAI Grok speaks the OpenAI chat-completions format."""

    display_name = "xAI"


class AnthropicAdapter(ProviderAdapter):
    """Anthropic Messages API adapter."""

    display_name = "Anthropic"

    def get_headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "x-api-key": api_key,
            "anthropic-version": config.ANTHROPIC_VERSION,
        }

    def build_request(self, model, prompt, context, temperature, max_tokens, system_prompt=None):
        body = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [
                {"role": "user", "content": compose_user_content(prompt, context)},
            ],
        }
        # Anthropic takes the system prompt as a top-level field, not a message
        if system_prompt:
            body["system"] = system_prompt
        return body

    def parse_response(self, body: Dict[str, Any]) -> str:
        blocks = body["content"]
        if not isinstance(blocks, list) or not blocks:
            raise ValueError("response has no content blocks")
        texts = [block.get("text", "") for block in blocks if block.get("type", "text") == "text"]
        if not texts:
            raise ValueError("response has no text blocks")
        return "".join(texts)

    def get_chat_endpoint(self) -> str:
        return "/messages"


# Provider registry
PROVIDER_ADAPTERS: Dict[ProviderFamily, ProviderAdapter] = {
    ProviderFamily.ANTHROPIC: AnthropicAdapter(),
    ProviderFamily.OPENAI: OpenAIAdapter(),
    ProviderFamily.XAI: XAIAdapter(),
}

# Model-name prefix -> family. First match wins, so list longer prefixes first.
MODEL_PATTERNS: List[Tuple[str, ProviderFamily]] = [
    ("claude", ProviderFamily.ANTHROPIC),
    ("gpt", ProviderFamily.OPENAI),
    ("grok", ProviderFamily.XAI),
]


def get_adapter(family: ProviderFamily) -> ProviderAdapter:
    return PROVIDER_ADAPTERS[family]


def register_adapter(family: ProviderFamily, adapter: ProviderAdapter) -> None:
    """Replace the adapter for a family (e.g. a proxy with a different wire format)."""
    PROVIDER_ADAPTERS[family] = adapter


def register_model_pattern(prefix: str, family: ProviderFamily) -> None:
    """Route models whose name starts with ``prefix`` to ``family``."""
    prefix = prefix.strip().lower()
    if not prefix:
        raise ValueError("model prefix must be non-empty")
    MODEL_PATTERNS[:] = [(p, f) for p, f in MODEL_PATTERNS if p != prefix]
    MODEL_PATTERNS.append((prefix, family))
    MODEL_PATTERNS.sort(key=lambda item: len(item[0]), reverse=True)


def family_for_model(model: Optional[str]) -> Optional[ProviderFamily]:
    name = (model or "").strip().lower()
    if not name:
        return None
    for prefix, family in MODEL_PATTERNS:
        if name.startswith(prefix):
            return family
    return None


def resolve_provider(
    model: Optional[str],
    supplied_credentials: Optional[Mapping[str, str]] = None,
    fallback_credentials: Optional[Mapping[str, str]] = None,
) -> Union[ResolvedProvider, TaskError]:
    """Map a model name to a concrete family, endpoint and credential.

    Returns a ``TaskError`` of kind ``UnknownModel`` or ``NoCredential`` instead of raising.
    """
    family = family_for_model(model)
    if family is None:
        known = ", ".join(f"'{prefix}'" for prefix, _ in MODEL_PATTERNS)
        return TaskError(
            ErrorKind.UNKNOWN_MODEL,
            f"Unknown model: {model or '<empty>'}. Must start with one of {known}",
        )

    supplied = supplied_credentials or {}
    fallback = config.fallback_credentials() if fallback_credentials is None else fallback_credentials
    api_key = (supplied.get(family.value) or "").strip() or (fallback.get(family.value) or "").strip()
    if not api_key:
        return TaskError(
            ErrorKind.NO_CREDENTIAL,
            f"No API key for {get_adapter(family).display_name}",
        )

    base_url = config.PROVIDER_BASE_URLS.get(family.value, "").rstrip("/")
    return ResolvedProvider(family=family, model=model.strip(), api_key=api_key, base_url=base_url)
