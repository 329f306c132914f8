"""Configuration for the n8n HTTP client."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Settings:
    """Immutable engine connection settings loaded from environment variables."""

    api_key: str = field(repr=False)
    api_endpoint: str = "http://localhost:5678"
    timeout: float = 30.0
    connect_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> Settings:
        api_key = os.getenv("N8N_API_KEY", "")
        api_endpoint = os.getenv("N8N_API_ENDPOINT", "http://localhost:5678").rstrip("/")
        timeout = float(os.getenv("N8N_TIMEOUT", "30"))
        return cls(
            api_key=api_key,
            api_endpoint=api_endpoint,
            timeout=timeout,
        )

    @property
    def base_url(self) -> str:
        return f"{self.api_endpoint}/api/v1"

    @property
    def webhook_base_url(self) -> str:
        return f"{self.api_endpoint}/webhook"

    @property
    def headers(self) -> dict[str, str]:
        h: dict[str, str] = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            h["X-N8N-API-KEY"] = self.api_key
        return h
