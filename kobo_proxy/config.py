"""Configuration for kobo-proxy."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from yarl import URL

DEFAULT_PORT = 3000
LOG_LEVELS = ("critical", "error", "warning", "info", "debug")


class ProxyConfig(BaseModel):
    """Startup settings. Frozen once built and shared by every request."""

    model_config = ConfigDict(frozen=True)

    port: int = Field(default=DEFAULT_PORT, ge=0, le=65535)
    # scheme + host[:port] that devices should use to reach the proxy
    frontend_url: str
    enable_request_logging: bool = False
    enable_response_logging: bool = False
    log_level: str = "info"

    @model_validator(mode="before")
    @classmethod
    def _default_frontend_url(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("frontend_url") is None:
            port = data.get("port", DEFAULT_PORT)
            data = {**data, "frontend_url": f"http://localhost:{port}"}
        return data

    @field_validator("frontend_url")
    @classmethod
    def _check_frontend_url(cls, value: str) -> str:
        value = value.strip()
        try:
            url = URL(value)
        except ValueError as exc:
            raise ValueError(f"frontend_url is not a valid URL: {value!r}") from exc
        if url.scheme not in ("http", "https") or not url.host:
            raise ValueError(f"frontend_url must look like http://host[:port], got {value!r}")
        return value.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.lower()
        if value not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return value
