"""Tests for ProviderGateway retry, backoff and error classification."""

import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest

# Ensure package path for local src
ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "workflow_engine" / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from workflow_engine import config as wf_config
from workflow_engine.errors import ErrorKind
from workflow_engine.gateway import ProviderGateway
from workflow_engine.providers import ProviderFamily, ResolvedProvider


def run(coro):
    return asyncio.run(coro)


class FakeResponse:
    def __init__(self, body, status_code=200, headers=None):
        self._body = body
        self.status_code = status_code
        self.headers = headers or {"content-type": "application/json"}

    @property
    def text(self):
        if isinstance(self._body, (dict, list)):
            return json.dumps(self._body)
        return str(self._body)

    def json(self):
        if isinstance(self._body, (dict, list)):
            return self._body
        return json.loads(self._body)


class FakeHTTPClient:
    """Returns (or raises) the scripted items in order; the last one repeats."""

    def __init__(self, script):
        self.script = list(script)
        self.calls = []

    async def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        return item


def openai_ok(text="done"):
    return FakeResponse({"choices": [{"message": {"content": text}}]})


def make_gateway(script, **kwargs):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    client = FakeHTTPClient(script)
    kwargs.setdefault("max_retries", 3)
    kwargs.setdefault("backoff_base_ms", 1000)
    kwargs.setdefault("jitter", 0.0)
    gw = ProviderGateway(client, timeout_secs=5, sleep=fake_sleep, **kwargs)
    return gw, client, sleeps


OPENAI = ResolvedProvider(ProviderFamily.OPENAI, "gpt-4", "sk-test", "https://api.openai.test/v1")
ANTHROPIC = ResolvedProvider(ProviderFamily.ANTHROPIC, "claude-3", "ak-test", "https://api.anthropic.test/v1")


class TestComplete:
    def test_success_first_try(self):
        gw, client, sleeps = make_gateway([openai_ok("hello")])
        res = run(gw.complete(OPENAI, "p", {"a": 1}, temperature=0.1, max_tokens=7))
        assert res.success
        assert res.text == "hello"
        assert res.attempts == 1
        assert sleeps == []
        call = client.calls[0]
        assert call["url"] == "https://api.openai.test/v1/chat/completions"
        assert call["headers"]["Authorization"] == "Bearer sk-test"
        assert call["json"]["max_tokens"] == 7
        assert call["timeout"] == 5

    def test_defaults_read_from_config_at_call_time(self, monkeypatch):
        gw, client, _ = make_gateway([openai_ok()])
        monkeypatch.setattr(wf_config, "DEFAULT_TEMPERATURE", 0.25)
        monkeypatch.setattr(wf_config, "DEFAULT_MAX_TOKENS", 321)
        run(gw.complete(OPENAI, "p"))
        body = client.calls[0]["json"]
        assert body["temperature"] == 0.25
        assert body["max_tokens"] == 321

    def test_anthropic_endpoint_and_parse(self):
        gw, client, _ = make_gateway([FakeResponse({"content": [{"type": "text", "text": "yo"}]})])
        res = run(gw.complete(ANTHROPIC, "p"))
        assert res.success and res.text == "yo"
        assert client.calls[0]["url"].endswith("/messages")

    def test_retries_5xx_then_succeeds(self):
        gw, client, sleeps = make_gateway([FakeResponse("boom", 503), FakeResponse("boom", 502), openai_ok()])
        res = run(gw.complete(OPENAI, "p"))
        assert res.success
        assert res.attempts == 3
        # Exponential: base * 2**attempt with no jitter
        assert sleeps == [1.0, 2.0]

    def test_429_honours_retry_after_capped(self):
        gw, _, sleeps = make_gateway(
            [FakeResponse("slow down", 429, headers={"retry-after": "120"}), openai_ok()],
            max_backoff_secs=10,
        )
        res = run(gw.complete(OPENAI, "p"))
        assert res.success
        assert sleeps == [10]

    def test_non_retryable_4xx_fails_immediately(self):
        gw, client, sleeps = make_gateway([FakeResponse({"error": "bad key"}, 401)])
        res = run(gw.complete(OPENAI, "p"))
        assert not res.success
        assert res.error.kind == ErrorKind.PROVIDER_HTTP
        assert res.error.status_code == 401
        assert not res.error.retryable
        assert "bad key" in res.error.message
        assert len(client.calls) == 1
        assert sleeps == []

    def test_exhausted_retries_report_last_error(self):
        gw, client, sleeps = make_gateway([FakeResponse("down", 500)], max_retries=2)
        res = run(gw.complete(OPENAI, "p"))
        assert not res.success
        assert res.attempts == 3
        assert len(client.calls) == 3
        assert len(sleeps) == 2
        assert res.error.kind == ErrorKind.PROVIDER_HTTP
        assert res.error.retryable

    def test_timeout_is_distinct_from_http(self):
        gw, _, _ = make_gateway([httpx.ReadTimeout("slow")], max_retries=1)
        res = run(gw.complete(OPENAI, "p"))
        assert not res.success
        assert res.error.kind == ErrorKind.TIMEOUT
        assert str(res.error).startswith("Timeout:")

    def test_network_error_retried(self):
        gw, _, sleeps = make_gateway([httpx.ConnectError("refused"), openai_ok("ok")])
        res = run(gw.complete(OPENAI, "p"))
        assert res.success and res.text == "ok"
        assert len(sleeps) == 1

    def test_malformed_body(self):
        gw, client, _ = make_gateway([FakeResponse({"unexpected": True})])
        res = run(gw.complete(OPENAI, "p"))
        assert not res.success
        assert res.error.kind == ErrorKind.MALFORMED
        assert len(client.calls) == 1


class TestBackoff:
    def test_jitter_bounds(self):
        gw = ProviderGateway(FakeHTTPClient([openai_ok()]), backoff_base_ms=1000, jitter=0.3, max_backoff_secs=100)
        for attempt in range(3):
            base = 2 ** attempt
            delay = gw.backoff_delay(attempt)
            assert base <= delay <= base * 1.3

    def test_cap(self):
        gw = ProviderGateway(FakeHTTPClient([openai_ok()]), backoff_base_ms=1000, jitter=0.0, max_backoff_secs=3)
        assert gw.backoff_delay(5) == 3
