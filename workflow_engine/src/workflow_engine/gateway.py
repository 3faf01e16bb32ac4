"""Provider gateway: one completion call with timeout, retry and backoff."""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

import httpx

from . import config
from .errors import ErrorKind, TaskError
from .providers import ResolvedProvider, get_adapter

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = 429

# Upstream bodies are echoed into TaskResult.error; keep them short
_MAX_BODY_SNIPPET = 500


@dataclass
class CompletionResult:
    """Result of a single gateway call (after internal retries)."""
    provider: str
    model: str
    success: bool = False
    text: Optional[str] = None
    error: Optional[TaskError] = None
    status_code: int = 0
    attempts: int = 0
    latency_ms: float = 0.0


def _is_retryable_status(status_code: int) -> bool:
    return status_code == RETRYABLE_STATUS or status_code >= 500


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        secs = float(value)
    except (TypeError, ValueError):
        return None
    return secs if secs >= 0 else None


def _snippet(text: str) -> str:
    text = (text or "").strip()
    if len(text) > _MAX_BODY_SNIPPET:
        return text[:_MAX_BODY_SNIPPET] + "..."
    return text


class ProviderGateway:
    """Uniform ``complete()`` over every registered provider family.

    The gateway keeps no per-call state, so one instance serves any number of
    concurrent tasks. Every failure comes back as a classified ``TaskError``.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        *,
        timeout_secs: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base_ms: Optional[int] = None,
        jitter: Optional[float] = None,
        max_backoff_secs: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.timeout_secs = config.PROVIDER_TIMEOUT_SECS if timeout_secs is None else timeout_secs
        self.max_retries = config.PROVIDER_MAX_RETRIES if max_retries is None else max(0, max_retries)
        self.backoff_base_ms = config.PROVIDER_BACKOFF_BASE_MS if backoff_base_ms is None else backoff_base_ms
        self.jitter = config.PROVIDER_BACKOFF_JITTER if jitter is None else jitter
        self.max_backoff_secs = config.PROVIDER_MAX_BACKOFF_SECS if max_backoff_secs is None else max_backoff_secs
        self._sleep = sleep
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=self.timeout_secs)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    def backoff_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Seconds to wait before retry number ``attempt`` (0-based)."""
        if retry_after is not None:
            return min(retry_after, self.max_backoff_secs)
        delay = (self.backoff_base_ms / 1000.0) * (2 ** attempt)
        delay += random.random() * self.jitter * delay
        return min(delay, self.max_backoff_secs)

    async def complete(
        self,
        provider: ResolvedProvider,
        prompt: str,
        context: Optional[Mapping[str, Any]] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        system_prompt: Optional[str] = None,
    ) -> CompletionResult:
        temperature = config.DEFAULT_TEMPERATURE if temperature is None else temperature
        max_tokens = config.DEFAULT_MAX_TOKENS if max_tokens is None else max_tokens
        adapter = get_adapter(provider.family)
        url = f"{provider.base_url}{adapter.get_chat_endpoint()}"
        headers = adapter.get_headers(provider.api_key)
        body = adapter.build_request(provider.model, prompt, context, temperature, max_tokens, system_prompt)

        result = CompletionResult(provider=provider.family.value, model=provider.model)
        start_time = time.monotonic()
        budget = self.max_retries + 1

        for attempt in range(budget):
            result.attempts = attempt + 1
            retry_after = None
            try:
                resp = await self.http_client.post(url, json=body, headers=headers, timeout=self.timeout_secs)
            except httpx.TimeoutException as e:
                error = TaskError(
                    ErrorKind.TIMEOUT,
                    f"{adapter.display_name} call exceeded {self.timeout_secs:g}s ({type(e).__name__})",
                    retryable=True,
                )
            except httpx.RequestError as e:
                error = TaskError(
                    ErrorKind.PROVIDER_HTTP,
                    f"{adapter.display_name} request failed: {e!r}",
                    retryable=True,
                )
            else:
                result.status_code = resp.status_code
                if 200 <= resp.status_code < 300:
                    try:
                        result.text = adapter.parse_response(resp.json())
                    except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
                        result.error = TaskError(
                            ErrorKind.MALFORMED,
                            f"Unexpected {adapter.display_name} response: {e}",
                            status_code=resp.status_code,
                        )
                    else:
                        result.success = True
                    break
                error = TaskError(
                    ErrorKind.PROVIDER_HTTP,
                    f"{adapter.display_name} API error ({resp.status_code}): {_snippet(resp.text)}",
                    status_code=resp.status_code,
                    retryable=_is_retryable_status(resp.status_code),
                )
                if resp.status_code == RETRYABLE_STATUS:
                    retry_after = _parse_retry_after(resp.headers.get("retry-after"))

            result.error = error
            if not error.retryable or attempt + 1 >= budget:
                break
            delay = self.backoff_delay(attempt, retry_after)
            logger.warning(
                "Provider %s call failed (%s), retrying in %.2fs (attempt %d/%d)",
                provider.family.value, error, delay, attempt + 1, budget,
            )
            await self._sleep(delay)

        result.latency_ms = (time.monotonic() - start_time) * 1000
        return result
