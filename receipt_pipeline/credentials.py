from __future__ import annotations

import os
from typing import Protocol

from receipt_pipeline.providers import get_provider


class CredentialStore(Protocol):
    def get_api_key(self, provider_id: str) -> str | None:
        """Return the stored secret for a provider, or None when absent."""


class EnvCredentialStore:
    """Reads provider keys from the environment (OPENAI_API_KEY and friends)."""

    def get_api_key(self, provider_id: str) -> str | None:
        descriptor = get_provider(provider_id)
        for name in descriptor.api_key_env:
            value = os.getenv(name)
            if value and value.strip():
                return value.strip()
        return None


class StaticCredentialStore:
    def __init__(self, keys: dict[str, str] | None = None) -> None:
        self._keys = dict(keys or {})

    def get_api_key(self, provider_id: str) -> str | None:
        value = self._keys.get(provider_id)
        return value or None


def mask_api_key(api_key: str | None) -> str:
    if not api_key or len(api_key) < 8:
        return "****"
    return f"{'*' * (len(api_key) - 4)}{api_key[-4:]}"
