from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Protocol

import openai
import requests

from receipt_pipeline.config import Settings
from receipt_pipeline.prompts import RECEIPT_EXTRACTION_PROMPT
from receipt_pipeline.providers import ProviderDescriptor, get_provider, key_format_problem


class ExtractionError(RuntimeError):
    kind = "provider_error"
    retryable = False

    def __init__(
        self,
        message: str,
        code: str | None = None,
        *,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code or self.kind
        if retryable is not None:
            self.retryable = retryable


class AuthError(ExtractionError):
    kind = "auth_error"


class RateLimitedError(ExtractionError):
    kind = "rate_limited"
    retryable = True

    def __init__(self, message: str, code: str | None = None, *, retry_after: float | None = None) -> None:
        super().__init__(message, code)
        self.retry_after = retry_after


class NetworkError(ExtractionError):
    kind = "network_error"
    retryable = True


class ProviderError(ExtractionError):
    kind = "provider_error"
    retryable = True


class MalformedResponseError(ExtractionError):
    kind = "malformed_response"


class ImageUnavailableError(ExtractionError):
    kind = "image_unavailable"


class ProviderTransport(Protocol):
    def send(self, *, api_key: str, image_b64: str, mime: str, prompt: str) -> dict[str, Any]:
        """Issue one extraction request and return the decoded provider envelope."""

    def check(self, api_key: str) -> None:
        """Make a cheap authenticated call; raise ExtractionError on failure."""


_MIME_BY_SUFFIX = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
}


def resolve_image_path(image_uri: str) -> Path:
    if image_uri.startswith("file://"):
        image_uri = image_uri[len("file://"):]
    return Path(image_uri)


def _mime_for_path(path: Path) -> str:
    mime = _MIME_BY_SUFFIX.get(path.suffix.lower())
    if mime is None:
        raise ImageUnavailableError(f"Unsupported image type: {path.suffix}", code="unsupported_type")
    return mime


def _read_base64(path: Path) -> str:
    try:
        return base64.b64encode(path.read_bytes()).decode("ascii")
    except FileNotFoundError as exc:
        raise ImageUnavailableError(f"Image not found: {path}", code="file_not_found") from exc
    except OSError as exc:
        raise ImageUnavailableError(f"Image could not be read: {path}", code="file_unreadable") from exc


def _retry_after_seconds(headers: Any) -> float | None:
    if headers is None:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except (TypeError, ValueError):
        return None


def _raise_for_status(response: requests.Response, provider_name: str) -> None:
    status = response.status_code
    if status < 400:
        return
    detail = response.text[:300]
    if status in {401, 403}:
        raise AuthError(f"{provider_name} rejected the API key ({status})", code="invalid_key")
    if status == 429:
        raise RateLimitedError(
            f"{provider_name} rate limit exceeded",
            retry_after=_retry_after_seconds(response.headers),
        )
    if status >= 500:
        raise ProviderError(f"{provider_name} service error {status}: {detail}", code="provider_unavailable")
    raise ProviderError(
        f"{provider_name} rejected the request {status}: {detail}",
        code="provider_rejected",
        retryable=False,
    )


def _json_body(response: requests.Response, provider_name: str) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise MalformedResponseError(f"{provider_name} returned a non-JSON body", code="invalid_envelope") from exc
    if not isinstance(payload, dict):
        raise MalformedResponseError(f"{provider_name} returned an unexpected body", code="invalid_envelope")
    return payload


def _post(url: str, provider_name: str, **kwargs: Any) -> requests.Response:
    try:
        return requests.post(url, **kwargs)
    except requests.Timeout as exc:
        raise NetworkError(f"{provider_name} request timed out", code="timeout") from exc
    except requests.RequestException as exc:
        raise NetworkError(f"Failed to reach {provider_name}: {exc}", code="connection_failed") from exc


def _get(url: str, provider_name: str, **kwargs: Any) -> requests.Response:
    try:
        return requests.get(url, **kwargs)
    except requests.Timeout as exc:
        raise NetworkError(f"{provider_name} request timed out", code="timeout") from exc
    except requests.RequestException as exc:
        raise NetworkError(f"Failed to reach {provider_name}: {exc}", code="connection_failed") from exc


class OpenAIChatTransport:
    def __init__(
        self,
        *,
        model: str,
        max_tokens: int = 1000,
        temperature: float = 0.1,
        timeout: float = 45.0,
        client_factory: Callable[[str], Any] | None = None,
    ) -> None:
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._timeout = timeout
        self._client_factory = client_factory

    def _client(self, api_key: str) -> Any:
        if self._client_factory is not None:
            return self._client_factory(api_key)
        # Retries belong to the processing queue, not the SDK.
        return openai.OpenAI(api_key=api_key, max_retries=0, timeout=self._timeout)

    def send(self, *, api_key: str, image_b64: str, mime: str, prompt: str) -> dict[str, Any]:
        client = self._client(api_key)
        try:
            response = client.chat.completions.create(
                model=self._model,
                max_tokens=self._max_tokens,
                temperature=self._temperature,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": prompt},
                            {"type": "image_url", "image_url": {"url": f"data:{mime};base64,{image_b64}"}},
                        ],
                    }
                ],
            )
        except openai.OpenAIError as exc:
            raise _classify_openai_error(exc) from exc
        if isinstance(response, dict):
            return response
        if hasattr(response, "model_dump"):
            return response.model_dump()
        raise MalformedResponseError("OpenAI returned an unexpected response object", code="invalid_envelope")

    def check(self, api_key: str) -> None:
        client = self._client(api_key)
        try:
            client.models.list()
        except openai.OpenAIError as exc:
            raise _classify_openai_error(exc) from exc


def _classify_openai_error(exc: Exception) -> ExtractionError:
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return AuthError("OpenAI rejected the API key", code="invalid_key")
    if isinstance(exc, openai.RateLimitError):
        return RateLimitedError(
            "OpenAI rate limit exceeded",
            retry_after=_retry_after_seconds(exc.response.headers),
        )
    if isinstance(exc, openai.APITimeoutError):
        return NetworkError("OpenAI request timed out", code="timeout")
    if isinstance(exc, openai.APIConnectionError):
        return NetworkError(f"Failed to reach OpenAI: {exc}", code="connection_failed")
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code >= 500:
            return ProviderError(f"OpenAI service error {exc.status_code}", code="provider_unavailable")
        return ProviderError(
            f"OpenAI rejected the request {exc.status_code}",
            code="provider_rejected",
            retryable=False,
        )
    return ProviderError(f"OpenAI request failed: {exc}", code="provider_unavailable")


class AnthropicMessagesTransport:
    def __init__(
        self,
        *,
        model: str,
        max_tokens: int = 1000,
        temperature: float = 0.1,
        timeout: float = 45.0,
        base_url: str = "https://api.anthropic.com",
    ) -> None:
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._timeout = timeout
        self._base_url = base_url.rstrip("/")

    def _headers(self, api_key: str) -> dict[str, str]:
        return {
            "x-api-key": api_key,
            "anthropic-version": "2023-06-01",
            "Content-Type": "application/json",
        }

    def send(self, *, api_key: str, image_b64: str, mime: str, prompt: str) -> dict[str, Any]:
        response = _post(
            f"{self._base_url}/v1/messages",
            "Anthropic",
            headers=self._headers(api_key),
            json={
                "model": self._model,
                "max_tokens": self._max_tokens,
                "temperature": self._temperature,
                "messages": [
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": prompt},
                            {
                                "type": "image",
                                "source": {"type": "base64", "media_type": mime, "data": image_b64},
                            },
                        ],
                    }
                ],
            },
            timeout=self._timeout,
        )
        _raise_for_status(response, "Anthropic")
        return _json_body(response, "Anthropic")

    def check(self, api_key: str) -> None:
        response = _get(f"{self._base_url}/v1/models", "Anthropic", headers=self._headers(api_key), timeout=self._timeout)
        _raise_for_status(response, "Anthropic")


class GeminiGenerateTransport:
    def __init__(
        self,
        *,
        model: str,
        max_tokens: int = 1000,
        temperature: float = 0.1,
        timeout: float = 45.0,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
    ) -> None:
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._timeout = timeout
        self._base_url = base_url.rstrip("/")

    def _raise_for_status(self, response: requests.Response) -> None:
        # Gemini reports a bad key as 400 API_KEY_INVALID rather than 401.
        if response.status_code == 400 and "API_KEY_INVALID" in response.text:
            raise AuthError("Gemini rejected the API key", code="invalid_key")
        _raise_for_status(response, "Gemini")

    def send(self, *, api_key: str, image_b64: str, mime: str, prompt: str) -> dict[str, Any]:
        response = _post(
            f"{self._base_url}/models/{self._model}:generateContent",
            "Gemini",
            headers={"Content-Type": "application/json", "x-goog-api-key": api_key},
            json={
                "contents": [
                    {
                        "parts": [
                            {"text": prompt},
                            {"inline_data": {"mime_type": mime, "data": image_b64}},
                        ]
                    }
                ],
                "generationConfig": {
                    "temperature": self._temperature,
                    "maxOutputTokens": self._max_tokens,
                },
            },
            timeout=self._timeout,
        )
        self._raise_for_status(response)
        return _json_body(response, "Gemini")

    def check(self, api_key: str) -> None:
        response = _get(
            f"{self._base_url}/models",
            "Gemini",
            headers={"x-goog-api-key": api_key},
            timeout=self._timeout,
        )
        self._raise_for_status(response)


def build_default_transports(settings: Settings) -> dict[str, ProviderTransport]:
    common = {
        "max_tokens": settings.extraction_max_tokens,
        "temperature": settings.extraction_temperature,
        "timeout": settings.request_timeout_seconds,
    }
    return {
        "openai_chat": OpenAIChatTransport(model=settings.openai_model, **common),
        "anthropic_messages": AnthropicMessagesTransport(model=settings.anthropic_model, **common),
        "gemini_generate": GeminiGenerateTransport(model=settings.gemini_model, **common),
    }


@dataclass(frozen=True)
class ConnectionCheck:
    ok: bool
    error: str | None = None
    message: str | None = None


class ExtractionClient:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transports: dict[str, ProviderTransport] | None = None,
        prompt: str = RECEIPT_EXTRACTION_PROMPT,
    ) -> None:
        self._settings = settings or Settings()
        self._transports = transports if transports is not None else build_default_transports(self._settings)
        self._prompt = prompt

    def _transport(self, descriptor: ProviderDescriptor) -> ProviderTransport:
        transport = self._transports.get(descriptor.endpoint_shape)
        if transport is None:
            raise ExtractionError(
                f"No transport registered for {descriptor.endpoint_shape}",
                code="unsupported_provider",
            )
        return transport

    async def submit(
        self,
        image_uri: str,
        provider: ProviderDescriptor | str,
        credential: str | None,
    ) -> dict[str, Any]:
        descriptor = get_provider(provider) if isinstance(provider, str) else provider
        if not credential:
            raise AuthError(f"No API key configured for {descriptor.name}", code="missing_api_key")
        path = resolve_image_path(image_uri)
        mime = _mime_for_path(path)
        encoded = await asyncio.to_thread(_read_base64, path)
        transport = self._transport(descriptor)
        return await asyncio.to_thread(
            transport.send,
            api_key=credential,
            image_b64=encoded,
            mime=mime,
            prompt=self._prompt,
        )

    def check_connection(self, provider_id: str, api_key: str | None) -> ConnectionCheck:
        descriptor = get_provider(provider_id)
        problem = key_format_problem(descriptor.id, api_key)
        if problem is not None:
            return ConnectionCheck(ok=False, error="invalid_format", message=problem)
        assert api_key is not None
        try:
            self._transport(descriptor).check(api_key)
        except AuthError:
            return ConnectionCheck(
                ok=False,
                error="invalid_key",
                message=f"Invalid API key. Please check your {descriptor.name} API key.",
            )
        except RateLimitedError:
            return ConnectionCheck(ok=False, error="rate_limit", message="Rate limit exceeded. Please try again later.")
        except NetworkError:
            return ConnectionCheck(
                ok=False,
                error="network_error",
                message=f"Failed to connect to {descriptor.name}. Please check your internet connection.",
            )
        except ExtractionError as exc:
            return ConnectionCheck(ok=False, error="service_unavailable", message=str(exc))
        return ConnectionCheck(ok=True)
