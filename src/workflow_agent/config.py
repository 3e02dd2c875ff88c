# config.py
# Runtime settings. Every value is overridable via environment variable;
# a .env file in the working directory is loaded first.

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    return value if value not in (None, "") else default


class Settings(BaseModel):
    """Central config for the server, the provider and the agent loop."""

    # Persistence
    database_url: str = "sqlite:///workflow_agent.db"

    # Provider
    provider_family: str = Field(default="native", pattern="^(native|text)$")
    model: str = "gpt-4o"
    base_url: str | None = None
    api_key: str | None = None
    temperature: float = 0.7
    max_tokens: int = 4000
    request_timeout: float = 120.0

    # Azure AD (used when tenant, client and endpoint are all set)
    azure_tenant_id: str | None = None
    azure_client_id: str | None = None
    azure_client_secret: str | None = None
    azure_endpoint: str | None = None
    azure_deployment: str | None = None
    azure_api_version: str = "2024-02-15-preview"

    # Agent loop
    max_iterations: int = Field(default=15, ge=1)
    tool_workers: int = Field(default=8, ge=1)
    stream_flush_chars: int = Field(default=80, ge=1)

    # Server
    host: str = "127.0.0.1"
    port: int = 5600

    @property
    def uses_azure(self) -> bool:
        return bool(self.azure_tenant_id and self.azure_client_id and self.azure_endpoint)

    @classmethod
    def from_env(cls) -> "Settings":
        values = {
            "database_url": _env("DATABASE_URL"),
            "provider_family": _env("LLM_PROVIDER_FAMILY"),
            "model": _env("LLM_MODEL"),
            "base_url": _env("LLM_BASE_URL"),
            "api_key": _env("LLM_API_KEY") or _env("OPENAI_API_KEY"),
            "temperature": _env("LLM_TEMPERATURE"),
            "max_tokens": _env("LLM_MAX_TOKENS"),
            "request_timeout": _env("LLM_TIMEOUT"),
            "azure_tenant_id": _env("AZURE_TENANT_ID"),
            "azure_client_id": _env("AZURE_CLIENT_ID"),
            "azure_client_secret": _env("AZURE_CLIENT_SECRET"),
            "azure_endpoint": _env("AZURE_OPENAI_ENDPOINT"),
            "azure_deployment": _env("AZURE_OPENAI_DEPLOYMENT"),
            "azure_api_version": _env("AZURE_OPENAI_API_VERSION"),
            "max_iterations": _env("AGENT_MAX_ITERATIONS"),
            "tool_workers": _env("AGENT_TOOL_WORKERS"),
            "stream_flush_chars": _env("STREAM_FLUSH_CHARS"),
            "host": _env("HOST"),
            "port": _env("PORT"),
        }
        # Unset variables fall back to the field defaults.
        return cls.model_validate({k: v for k, v in values.items() if v is not None})
