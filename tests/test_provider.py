import itertools
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import pytest
from openai import APIConnectionError, APITimeoutError

from workflow_agent.config import Settings
from workflow_agent.errors import ProviderError, ProviderTimeoutError
from workflow_agent.provider import AzureADTokenSource, OpenAIChatProvider, TokenCache, build_provider

REQUEST = httpx.Request("POST", "https://llm.example/v1/chat/completions")


def chunk(content=None, tool_calls=None, finish_reason=None):
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)])

def fragment(index, id=None, name=None, arguments=None):
    return SimpleNamespace(index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments))

def provider_with(chunks, family="native"):
    client = MagicMock()
    client.chat.completions.create.return_value = iter(chunks)
    return OpenAIChatProvider(client, model="gpt-4o", family=family), client

# ---------------------------------------------------------------------------
# Streaming Tests
# ---------------------------------------------------------------------------

def test_chunks_become_provider_events():
    provider, client = provider_with([
        chunk(content="Saving."),
        chunk(tool_calls=[fragment(0, id="call_1", name="saveCase", arguments='{"name":')]),
        chunk(tool_calls=[fragment(0, arguments='"Loan"}')]),
        SimpleNamespace(choices=[]),
        chunk(finish_reason="tool_calls"),
    ])
    events = list(provider.stream([{"role": "user", "content": "hi"}], [{"type": "function"}], timeout=30))

    assert [e.content for e in events] == ["Saving.", "", "", ""]
    assert events[1].tool_calls[0].name == "saveCase"
    assert events[2].tool_calls[0].arguments == '"Loan"}'
    assert events[-1].finish_reason == "tool_calls"
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["stream"] is True
    assert kwargs["tool_choice"] == "auto"

def test_text_family_sends_no_tools():
    provider, client = provider_with([chunk(content="ok")], family="text")
    list(provider.stream([], [{"type": "function"}], timeout=30))
    assert "tools" not in client.chat.completions.create.call_args.kwargs

def test_sdk_timeout_maps_to_provider_timeout():
    client = MagicMock()
    client.chat.completions.create.side_effect = APITimeoutError(request=REQUEST)
    provider = OpenAIChatProvider(client, model="gpt-4o")
    with pytest.raises(ProviderTimeoutError):
        list(provider.stream([], None, timeout=5))

def test_connection_error_maps_to_provider_error():
    client = MagicMock()
    client.chat.completions.create.side_effect = APIConnectionError(request=REQUEST)
    provider = OpenAIChatProvider(client, model="gpt-4o")
    with pytest.raises(ProviderError):
        list(provider.stream([], None, timeout=5))

def test_stream_deadline(monkeypatch):
    ticks = itertools.count(0.0, 100.0)
    monkeypatch.setattr("workflow_agent.provider.time.monotonic", lambda: next(ticks))
    provider, _ = provider_with([chunk(content="late")])
    with pytest.raises(ProviderTimeoutError, match="exceeded 10s"):
        list(provider.stream([], None, timeout=10))

# ---------------------------------------------------------------------------
# Azure AD Token Tests
# ---------------------------------------------------------------------------

def test_token_cache_refreshes_before_expiry():
    now = [0.0]
    fetch = MagicMock(side_effect=[("t1", 120.0), ("t2", 120.0)])
    cache = TokenCache(fetch, skew=60.0, clock=lambda: now[0])

    assert cache.get() == "t1"
    now[0] = 30.0
    assert cache.get() == "t1"
    now[0] = 61.0
    assert cache.get() == "t2"
    assert fetch.call_count == 2

def test_token_cache_invalidate():
    fetch = MagicMock(side_effect=[("t1", 3600.0), ("t2", 3600.0)])
    cache = TokenCache(fetch)
    cache.get()
    cache.invalidate()
    assert cache.get() == "t2"

def test_azure_token_source_posts_client_credentials():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = request.content.decode()
        return httpx.Response(200, json={"access_token": "abc", "expires_in": 1800})

    source = AzureADTokenSource("tenant-1", "client-1", "s3cret", http=httpx.Client(transport=httpx.MockTransport(handler)))
    assert source() == ("abc", 1800.0)
    assert "tenant-1" in seen["url"]
    assert "grant_type=client_credentials" in seen["body"]

def test_azure_token_failure_is_provider_error():
    transport = httpx.MockTransport(lambda request: httpx.Response(401, json={"error": "invalid_client"}))
    source = AzureADTokenSource("t", "c", "s", http=httpx.Client(transport=transport))
    with pytest.raises(ProviderError):
        source()

# ---------------------------------------------------------------------------
# Factory Tests
# ---------------------------------------------------------------------------

def test_build_provider_openai_compatible():
    provider = build_provider(Settings(base_url="http://localhost:1234/v1", model="local-model", provider_family="text"))
    assert provider.model == "local-model"
    assert provider.family == "text"

def test_build_provider_azure_uses_deployment():
    settings = Settings(
        azure_tenant_id="t",
        azure_client_id="c",
        azure_client_secret="s",
        azure_endpoint="https://example.openai.azure.com",
        azure_deployment="gpt4o-prod",
    )
    cache = TokenCache(lambda: ("token", 3600.0))
    provider = build_provider(settings, token_cache=cache)
    assert provider.model == "gpt4o-prod"
