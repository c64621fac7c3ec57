"""Multimodal Preprocessor — folds audio and images into the text prompt.

Audio runs first: the reference is downloaded, transcribed and appended to
the user message. Images follow: at most ``max_images`` are described
concurrently and the descriptions become an ``[Image Context]`` block for
the system content. A failed modality degrades to text-only and never fails
the request.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from app.core.exceptions import ModalityError
from app.gateway.key_pool import KeyPool
from app.gateway.types import Credential
from app.gateway.vendor_adapters import FlashAdapter, UpstreamAuthError, UpstreamError, fetch_media

logger = logging.getLogger(__name__)

AUDIO_FAILED_MARKER = " [Audio processing failed]"

MediaFetcher = Callable[[str, float], Awaitable[bytes]]

# Response shape errors from a provider that answered 200 with an odd body
_MODALITY_FAILURES = (UpstreamError, KeyError, IndexError, TypeError, ValueError)


@dataclass
class PreprocessResult:
    message: str
    image_context: str = ""


class MultimodalPreprocessor:
    def __init__(
        self,
        adapter: FlashAdapter,
        pool: KeyPool,
        max_images: int = 2,
        media_timeout: float = 60.0,
        fetcher: MediaFetcher = fetch_media,
    ):
        self.adapter = adapter
        self.pool = pool
        self.max_images = max_images
        self.media_timeout = media_timeout
        self._fetch = fetcher

    async def preprocess(
        self,
        user_message: str,
        image_refs: list[str],
        audio_ref: str | None,
        credential: Credential,
    ) -> PreprocessResult:
        message = user_message

        if audio_ref:
            try:
                transcript = await self.transcribe(audio_ref, credential)
                message = f'{message} [Audio Transcript: "{transcript}"]'.lstrip()
            except ModalityError as e:
                logger.warning("Audio preprocessing failed: %s", e)
                message = f"{message}{AUDIO_FAILED_MARKER}".lstrip()

        image_context = ""
        if image_refs:
            try:
                descriptions = await self.describe_images(image_refs, credential)
                image_context = f"\n[Image Context]: {' | '.join(descriptions)}\n"
            except ModalityError as e:
                logger.warning("Image preprocessing failed: %s", e)

        return PreprocessResult(message=message, image_context=image_context)

    async def transcribe(self, audio_ref: str, credential: Credential) -> str:
        """Download and transcribe one audio reference. Raises ModalityError."""
        try:
            audio = await self._fetch(audio_ref, self.media_timeout)
            return await self.adapter.transcribe(audio, credential)
        except _MODALITY_FAILURES as e:
            await self._demote_on_auth(e, credential)
            raise ModalityError("audio", str(e)) from e

    async def describe_images(self, image_refs: list[str], credential: Credential) -> list[str]:
        """Describe the first ``max_images`` references concurrently. Raises ModalityError."""
        selected = image_refs[: self.max_images]
        if len(image_refs) > len(selected):
            logger.info("Describing %d of %d images", len(selected), len(image_refs))

        results = await asyncio.gather(
            *(self.adapter.describe_image(url, credential) for url in selected),
            return_exceptions=True,
        )

        for result in results:
            if isinstance(result, BaseException):
                if not isinstance(result, _MODALITY_FAILURES):
                    raise result
                await self._demote_on_auth(result, credential)
                raise ModalityError("image", str(result)) from result
        return list(results)

    async def _demote_on_auth(self, error: BaseException, credential: Credential) -> None:
        if isinstance(error, UpstreamAuthError):
            await self.pool.demote(credential)
