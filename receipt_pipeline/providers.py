from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final, Literal

EndpointShape = Literal["openai_chat", "anthropic_messages", "gemini_generate"]


class UnknownProviderError(ValueError):
    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Unknown provider: {provider_id}")
        self.provider_id = provider_id
        self.code = "unknown_provider"


@dataclass(frozen=True)
class ProviderDescriptor:
    id: str
    name: str
    description: str
    documentation_url: str
    api_key_pattern: re.Pattern[str]
    api_key_placeholder: str
    endpoint_shape: EndpointShape
    default_model: str
    api_key_env: tuple[str, ...]


_PROVIDERS: Final[dict[str, ProviderDescriptor]] = {
    "openai": ProviderDescriptor(
        id="openai",
        name="OpenAI GPT-4 Vision",
        description="Strong accuracy on complex and handwritten receipts.",
        documentation_url="https://platform.openai.com/docs/guides/vision",
        api_key_pattern=re.compile(r"^sk-[A-Za-z0-9_-]{48,}$"),
        api_key_placeholder="sk-...",
        endpoint_shape="openai_chat",
        default_model="gpt-4o",
        api_key_env=("OPENAI_API_KEY",),
    ),
    "anthropic": ProviderDescriptor(
        id="anthropic",
        name="Anthropic Claude Sonnet",
        description="Fast structured-data extraction with good value.",
        documentation_url="https://docs.anthropic.com/claude/docs/vision",
        api_key_pattern=re.compile(r"^sk-ant-[A-Za-z0-9_-]{95,}$"),
        api_key_placeholder="sk-ant-...",
        endpoint_shape="anthropic_messages",
        default_model="claude-sonnet-4-20250514",
        api_key_env=("ANTHROPIC_API_KEY",),
    ),
    "gemini": ProviderDescriptor(
        id="gemini",
        name="Google Gemini Vision",
        description="Multimodal model with solid results on varied receipt layouts.",
        documentation_url="https://ai.google.dev/gemini-api/docs/vision",
        api_key_pattern=re.compile(r"^AIza[A-Za-z0-9_-]{35}$"),
        api_key_placeholder="AIza...",
        endpoint_shape="gemini_generate",
        default_model="gemini-2.0-flash",
        api_key_env=("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    ),
}


def list_providers() -> list[ProviderDescriptor]:
    return list(_PROVIDERS.values())


def get_provider(provider_id: str) -> ProviderDescriptor:
    descriptor = _PROVIDERS.get(provider_id.strip().lower()) if provider_id else None
    if descriptor is None:
        raise UnknownProviderError(provider_id)
    return descriptor


def is_known_provider(provider_id: str) -> bool:
    return bool(provider_id) and provider_id.strip().lower() in _PROVIDERS


def key_format_problem(provider_id: str, api_key: str | None) -> str | None:
    """Return a human-readable reason the key is malformed, or None if it looks valid."""
    descriptor = get_provider(provider_id)
    if api_key is None or not api_key.strip():
        return "API key cannot be empty"
    if not descriptor.api_key_pattern.fullmatch(api_key):
        return (
            f"Invalid {descriptor.name} API key format. "
            f"Expected format: {descriptor.api_key_placeholder}"
        )
    return None


def validate_key_format(provider_id: str, api_key: str | None) -> bool:
    return key_format_problem(provider_id, api_key) is None
