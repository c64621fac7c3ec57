"""Backend Adapters — HTTP protocol handling for each generation backend.

All three backends speak the OpenAI chat-completions dialect over HTTPS with
bearer auth; they differ in base URL, model id, timeout and extra headers:
  - Flash: Groq (also hosts Whisper transcription and the vision model)
  - Lite: OpenRouter (requires attribution headers)
  - Pro: Gemini OpenAI-compatible endpoint

Adapters never retry. Non-2xx responses are classified into ``UpstreamError``
subclasses and raised; the failover controller decides what to do with them.
"""

from __future__ import annotations

import base64
import json
import logging
from abc import ABC
from collections.abc import AsyncIterator
from typing import Any

import httpx

from app.gateway.types import Backend, BackendConfig, Credential, GenerationResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Upstream errors
# ---------------------------------------------------------------------------


class UpstreamError(Exception):
    """Raised when a backend call fails. Subclasses encode the retry policy."""

    def __init__(self, message: str, status_code: int = 0, retry_after: float | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class UpstreamAuthError(UpstreamError):
    """401/403 or an "invalid API key" body — the credential is bad."""


class UpstreamRateLimitError(UpstreamError):
    """429 — this credential is throttled, another one may not be."""


class UpstreamServerError(UpstreamError):
    """5xx, timeout or transport failure."""


class UpstreamContextLengthError(UpstreamError):
    """413 or a context-length complaint — retrying cannot help."""


class UpstreamBadRequestError(UpstreamError):
    """Any other 4xx."""


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def classify_upstream_error(status_code: int, body: str, retry_after: str | None = None) -> UpstreamError:
    """Map an upstream HTTP failure onto the error taxonomy."""
    lowered = body.lower()
    snippet = body[:300]

    if status_code in (401, 403):
        return UpstreamAuthError(f"Upstream rejected credential ({status_code}): {snippet}", status_code)
    if status_code == 429:
        return UpstreamRateLimitError(
            f"Rate limited by upstream: {snippet}", status_code, retry_after=_parse_retry_after(retry_after)
        )
    if status_code == 413 or "context_length" in lowered or "too large" in lowered:
        return UpstreamContextLengthError(f"Prompt too large for upstream ({status_code})", status_code)
    if status_code >= 500:
        return UpstreamServerError(f"Upstream server error ({status_code}): {snippet}", status_code)
    # Gemini answers 400 API_KEY_INVALID instead of 401
    if "api key" in lowered or "api_key_invalid" in lowered:
        return UpstreamAuthError(f"Upstream rejected credential ({status_code}): {snippet}", status_code)
    return UpstreamBadRequestError(f"Upstream rejected request ({status_code}): {snippet}", status_code)


def _raise_for_upstream(resp: httpx.Response) -> None:
    if resp.status_code < 400:
        return
    raise classify_upstream_error(resp.status_code, resp.text, resp.headers.get("retry-after"))


# ---------------------------------------------------------------------------
# Base adapter
# ---------------------------------------------------------------------------


class BaseBackendAdapter(ABC):
    """OpenAI-compatible chat-completions adapter.

    The credential is passed per call so one adapter instance can serve every
    attempt of every request without shared mutable client state.
    """

    backend: Backend
    temperature: float = 0.7
    max_tokens: int = 4096

    def __init__(self, config: BackendConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self._transport = transport

    @property
    def chat_url(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/chat/completions"

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout or self.config.timeout_seconds, transport=self._transport)

    def _headers(self, credential: Credential) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {credential.secret}",
            "Content-Type": "application/json",
        }

    def _payload(self, messages: list[dict[str, Any]], stream: bool = False, **overrides: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.config.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if stream:
            payload["stream"] = True
        payload.update(overrides)
        return payload

    async def generate(self, messages: list[dict[str, Any]], credential: Credential) -> GenerationResult:
        """Buffered completion."""
        payload = self._payload(messages)
        try:
            async with self._client() as client:
                resp = await client.post(self.chat_url, json=payload, headers=self._headers(credential))
        except httpx.TimeoutException as e:
            raise UpstreamServerError(f"{self.backend.value} timeout after {self.config.timeout_seconds}s") from e
        except httpx.RequestError as e:
            raise UpstreamServerError(f"{self.backend.value} transport error: {e}") from e

        _raise_for_upstream(resp)
        data = resp.json()

        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise UpstreamServerError(f"{self.backend.value} returned an unexpected body") from e

        usage = data.get("usage") or {}
        return GenerationResult(text=content, total_tokens=int(usage.get("total_tokens") or 0))

    async def stream(self, messages: list[dict[str, Any]], credential: Credential) -> AsyncIterator[str]:
        """Server-streamed completion, yielding text deltas."""
        payload = self._payload(messages, stream=True)
        headers = self._headers(credential)
        headers["Accept"] = "text/event-stream"
        try:
            async with self._client() as client:
                async with client.stream("POST", self.chat_url, json=payload, headers=headers) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        raise classify_upstream_error(resp.status_code, body, resp.headers.get("retry-after"))
                    async for line in resp.aiter_lines():
                        if not line or not line.startswith("data:"):
                            continue
                        data = line[5:].strip()
                        if not data:
                            continue
                        if data == "[DONE]":
                            return
                        try:
                            chunk = json.loads(data)
                        except ValueError:
                            continue
                        if not isinstance(chunk, dict):
                            continue
                        if "error" in chunk:
                            raise UpstreamServerError(f"{self.backend.value} stream error: {chunk['error']}")
                        delta = _delta_text(chunk)
                        if delta:
                            yield delta
        except httpx.TimeoutException as e:
            raise UpstreamServerError(f"{self.backend.value} stream timeout after {self.config.timeout_seconds}s") from e
        except httpx.RequestError as e:
            raise UpstreamServerError(f"{self.backend.value} stream transport error: {e}") from e


def _delta_text(chunk: dict[str, Any]) -> str:
    choices = chunk.get("choices") or []
    if not choices:
        return ""
    delta = choices[0].get("delta") or {}
    content = delta.get("content")
    return content if isinstance(content, str) else ""


# ---------------------------------------------------------------------------
# Flash (Groq), which also serves transcription and image description
# ---------------------------------------------------------------------------

_IMAGE_PROMPT = "Describe this image for a sales bot. What is the product? Color? Details?"


class FlashAdapter(BaseBackendAdapter):
    backend = Backend.FLASH

    def __init__(
        self,
        config: BackendConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        transcription_model: str = "whisper-large-v3",
        vision_model: str = "llama-3.2-11b-vision-preview",
        media_timeout: float = 60.0,
    ):
        super().__init__(config, transport)
        self.transcription_model = transcription_model
        self.vision_model = vision_model
        self.media_timeout = media_timeout

    async def transcribe(self, audio: bytes, credential: Credential, filename: str = "audio.ogg") -> str:
        url = f"{self.config.base_url.rstrip('/')}/audio/transcriptions"
        try:
            async with self._client(self.media_timeout) as client:
                resp = await client.post(
                    url,
                    files={"file": (filename, audio)},
                    data={"model": self.transcription_model, "response_format": "text"},
                    headers={"Authorization": f"Bearer {credential.secret}"},
                )
        except httpx.RequestError as e:
            raise UpstreamServerError(f"transcription transport error: {e}") from e
        _raise_for_upstream(resp)
        return resp.text.strip()

    async def describe_image(self, image_url: str, credential: Credential) -> str:
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": _IMAGE_PROMPT},
                    {"type": "image_url", "image_url": {"url": image_url}},
                ],
            }
        ]
        payload = self._payload(messages, model=self.vision_model, max_tokens=300)
        try:
            async with self._client(self.media_timeout) as client:
                resp = await client.post(self.chat_url, json=payload, headers=self._headers(credential))
        except httpx.RequestError as e:
            raise UpstreamServerError(f"vision transport error: {e}") from e
        _raise_for_upstream(resp)
        data = resp.json()
        return (data["choices"][0]["message"]["content"] or "").strip()


# ---------------------------------------------------------------------------
# Lite (OpenRouter)
# ---------------------------------------------------------------------------


class LiteAdapter(BaseBackendAdapter):
    backend = Backend.LITE
    referer = "https://salesmanchatbot.online"
    title = "SalesmanChatbot"

    def _headers(self, credential: Credential) -> dict[str, str]:
        headers = super()._headers(credential)
        headers["HTTP-Referer"] = self.referer
        headers["X-Title"] = self.title
        return headers


# ---------------------------------------------------------------------------
# Pro (Gemini, OpenAI-compatible endpoint)
# ---------------------------------------------------------------------------


class ProAdapter(BaseBackendAdapter):
    backend = Backend.PRO
    max_tokens = 8192


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[Backend, type[BaseBackendAdapter]] = {
    Backend.FLASH: FlashAdapter,
    Backend.LITE: LiteAdapter,
    Backend.PRO: ProAdapter,
}


def get_adapter(config: BackendConfig, **kwargs: Any) -> BaseBackendAdapter:
    """Create an adapter instance for the backend named in ``config``."""
    adapter_cls = ADAPTER_REGISTRY.get(config.backend)
    if adapter_cls is None:
        raise ValueError(f"No adapter registered for backend: {config.backend}")
    return adapter_cls(config, **kwargs)


# ---------------------------------------------------------------------------
# Media download
# ---------------------------------------------------------------------------


async def fetch_media(url: str, timeout: float = 60.0) -> bytes:
    """Download an audio/image reference. Accepts http(s) and base64 ``data:`` URLs."""
    if url.startswith("data:"):
        header, _, encoded = url.partition(",")
        if ";base64" not in header:
            return encoded.encode("utf-8")
        try:
            return base64.b64decode(encoded)
        except ValueError as e:
            raise UpstreamBadRequestError("Malformed base64 data URL") from e

    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            resp = await client.get(url)
    except httpx.RequestError as e:
        raise UpstreamServerError(f"media download failed: {e}") from e
    if resp.status_code >= 400:
        raise UpstreamBadRequestError(f"media download returned {resp.status_code}", resp.status_code)
    return resp.content
