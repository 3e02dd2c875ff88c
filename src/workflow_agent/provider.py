# provider.py
# LLM provider client: streamed chat completions normalized to ProviderEvents.
#
# Works against any OpenAI-compatible endpoint, or Azure OpenAI with an Azure
# AD client-credentials token. Two families:
#   native: tool schemas are sent and calls come back as structured deltas
#   text  : no schemas; the model writes TOOL: name PARAMS: {...} in prose

import time
from threading import Lock
from typing import Callable, Iterator

import httpx
from openai import APIConnectionError, APIError, APITimeoutError, AzureOpenAI, OpenAI

from workflow_agent.config import Settings
from workflow_agent.errors import ProviderError, ProviderTimeoutError
from workflow_agent.models import ProviderEvent, ToolCallFragment

AZURE_SCOPE = "https://cognitiveservices.azure.com/.default"
AZURE_TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"


# ---------------------------------------------------------------------------
# Azure AD tokens
# ---------------------------------------------------------------------------


class TokenCache:
    """
    Holds one bearer token and refreshes it through `fetch` shortly before it
    expires. `fetch` returns (token, lifetime_seconds).
    """

    def __init__(
        self,
        fetch: Callable[[], tuple[str, float]],
        skew: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self._skew = skew
        self._clock = clock
        self._lock = Lock()
        self._token: str | None = None
        self._expires_at = 0.0

    def get(self) -> str:
        with self._lock:
            if self._token is None or self._clock() >= self._expires_at - self._skew:
                token, lifetime = self._fetch()
                self._token = token
                self._expires_at = self._clock() + lifetime
            return self._token

    def invalidate(self) -> None:
        with self._lock:
            self._token = None


class AzureADTokenSource:
    """Client-credentials grant against the Microsoft identity platform."""

    def __init__(self, tenant_id: str, client_id: str, client_secret: str, http: httpx.Client | None = None) -> None:
        self.url = AZURE_TOKEN_URL.format(tenant=tenant_id)
        self.client_id = client_id
        self.client_secret = client_secret
        self.http = http or httpx.Client(timeout=30)

    def __call__(self) -> tuple[str, float]:
        try:
            response = self.http.post(
                self.url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "scope": AZURE_SCOPE,
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ProviderError(f"Azure AD token request failed: {exc}") from exc
        body = response.json()
        if "access_token" not in body:
            raise ProviderError(f"Azure AD token response has no access_token: {body.get('error_description', body)}")
        return body["access_token"], float(body.get("expires_in", 3600))


# ---------------------------------------------------------------------------
# Chat provider
# ---------------------------------------------------------------------------


class OpenAIChatProvider:
    """
    Example:
        provider = OpenAIChatProvider(OpenAI(), model="gpt-4o")
        for event in provider.stream(messages, tools, timeout=60):
            ...
    """

    def __init__(
        self,
        client: OpenAI,
        model: str,
        family: str = "native",
        temperature: float = 0.7,
        max_tokens: int = 4000,
    ) -> None:
        self.client = client
        self.model = model
        self.family = family
        self.temperature = temperature
        self.max_tokens = max_tokens

    def stream(self, messages: list[dict], tools: list[dict] | None, timeout: float) -> Iterator[ProviderEvent]:
        """
        Yield one ProviderEvent per streamed chunk.

        Raises:
            ProviderTimeoutError: the call, or the stream as a whole, ran past `timeout`.
            ProviderError: connection or API failure.
        """
        deadline = time.monotonic() + timeout
        kwargs = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": True,
            "timeout": timeout,
        }
        if self.family == "native" and tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        try:
            response = self.client.chat.completions.create(**kwargs)
            for chunk in response:
                if time.monotonic() > deadline:
                    raise ProviderTimeoutError(f"Model call exceeded {timeout:.0f}s")
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                fragments = []
                for tc in (delta.tool_calls or []) if delta else []:
                    fragments.append(
                        ToolCallFragment(
                            index=tc.index,
                            id=tc.id,
                            name=tc.function.name if tc.function else None,
                            arguments=(tc.function.arguments or "") if tc.function else "",
                        )
                    )
                yield ProviderEvent(
                    content=(delta.content or "") if delta else "",
                    tool_calls=fragments,
                    finish_reason=choice.finish_reason,
                )
        except APITimeoutError as exc:
            raise ProviderTimeoutError(f"Model call timed out: {exc}") from exc
        except (APIConnectionError, APIError) as exc:
            raise ProviderError(f"Model call failed: {exc}") from exc


def build_provider(settings: Settings, token_cache: TokenCache | None = None) -> OpenAIChatProvider:
    """Provider for `settings`: Azure OpenAI with AD tokens, or any OpenAI-compatible endpoint."""
    if settings.uses_azure:
        if token_cache is None:
            token_cache = TokenCache(
                AzureADTokenSource(
                    settings.azure_tenant_id,
                    settings.azure_client_id,
                    settings.azure_client_secret or "",
                )
            )
        client = AzureOpenAI(
            azure_endpoint=settings.azure_endpoint,
            azure_deployment=settings.azure_deployment,
            api_version=settings.azure_api_version,
            azure_ad_token_provider=token_cache.get,
        )
    else:
        client = OpenAI(base_url=settings.base_url, api_key=settings.api_key or "not-needed")
    return OpenAIChatProvider(
        client,
        model=(settings.azure_deployment or settings.model) if settings.uses_azure else settings.model,
        family=settings.provider_family,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
    )
