"""Tests for audio / image preprocessing."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from app.gateway.key_pool import KeyPool
from app.gateway.preprocessor import MultimodalPreprocessor
from app.gateway.types import Backend, BackendConfig, Credential, CredentialStatus
from app.gateway.vendor_adapters import FlashAdapter, UpstreamAuthError, UpstreamServerError

CRED = Credential(id=1, backend=Backend.FLASH, secret="gsk-media")


def _make(transcribe=None, describe=None, fetch=None) -> tuple[MultimodalPreprocessor, KeyPool, FlashAdapter]:
    adapter = FlashAdapter(BackendConfig(Backend.FLASH, "https://groq.test/openai/v1", "groq/compound-mini"))
    adapter.transcribe = transcribe or AsyncMock(return_value="ami ekta shirt chai")
    adapter.describe_image = describe or AsyncMock(side_effect=lambda url, cred: f"desc of {url}")
    pool = KeyPool()
    pool.add(CRED)
    fetcher = fetch or AsyncMock(return_value=b"audio")
    return MultimodalPreprocessor(adapter, pool, fetcher=fetcher), pool, adapter


class TestAudio:
    @pytest.mark.asyncio
    async def test_transcript_appended(self):
        pre, _, _ = _make()

        result = await pre.preprocess("Hello", [], "https://cdn.test/v.ogg", CRED)

        assert result.message == 'Hello [Audio Transcript: "ami ekta shirt chai"]'
        assert result.image_context == ""

    @pytest.mark.asyncio
    async def test_failure_marker_instead_of_error(self):
        pre, pool, _ = _make(transcribe=AsyncMock(side_effect=UpstreamServerError("503", 503)))

        result = await pre.preprocess("Hello", [], "https://cdn.test/v.ogg", CRED)

        assert result.message == "Hello [Audio processing failed]"
        assert pool.status_of(1) == CredentialStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_download_failure_marker(self):
        pre, _, adapter = _make(fetch=AsyncMock(side_effect=UpstreamServerError("dns", 0)))

        result = await pre.preprocess("", [], "https://cdn.test/v.ogg", CRED)

        assert result.message == "[Audio processing failed]"
        adapter.transcribe.assert_not_called()

    @pytest.mark.asyncio
    async def test_auth_failure_demotes(self):
        pre, pool, _ = _make(transcribe=AsyncMock(side_effect=UpstreamAuthError("401", 401)))

        result = await pre.preprocess("Hello", [], "https://cdn.test/v.ogg", CRED)

        assert result.message.endswith("[Audio processing failed]")
        assert pool.status_of(1) == CredentialStatus.OFFLINE


class TestImages:
    @pytest.mark.asyncio
    async def test_at_most_two_described(self):
        pre, _, adapter = _make()
        urls = ["https://cdn.test/1.jpg", "https://cdn.test/2.jpg", "https://cdn.test/3.jpg"]

        result = await pre.preprocess("What is this?", urls, None, CRED)

        assert adapter.describe_image.call_count == 2
        assert result.image_context == (
            "\n[Image Context]: desc of https://cdn.test/1.jpg | desc of https://cdn.test/2.jpg\n"
        )
        assert result.message == "What is this?"

    @pytest.mark.asyncio
    async def test_failure_omits_context(self):
        pre, pool, _ = _make(describe=AsyncMock(side_effect=UpstreamServerError("500", 500)))

        result = await pre.preprocess("What is this?", ["https://cdn.test/1.jpg"], None, CRED)

        assert result.image_context == ""
        assert pool.status_of(1) == CredentialStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_auth_failure_demotes(self):
        pre, pool, _ = _make(describe=AsyncMock(side_effect=UpstreamAuthError("401", 401)))

        result = await pre.preprocess("x", ["https://cdn.test/1.jpg"], None, CRED)

        assert result.image_context == ""
        assert pool.status_of(1) == CredentialStatus.OFFLINE

    @pytest.mark.asyncio
    async def test_audio_runs_before_images(self):
        order: list[str] = []

        async def transcribe(audio, cred):
            order.append("audio")
            return "voice"

        async def describe(url, cred):
            order.append("image")
            return "pic"

        pre, _, _ = _make(transcribe=transcribe, describe=describe)
        result = await pre.preprocess("hi", ["https://cdn.test/1.jpg"], "https://cdn.test/v.ogg", CRED)

        assert order == ["audio", "image"]
        assert result.message == 'hi [Audio Transcript: "voice"]'
        assert result.image_context == "\n[Image Context]: pic\n"
