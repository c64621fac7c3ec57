"""Gateway Orchestrator — one chat completion from balance gate to ledger entry.

Pipeline per request:
  1. Parse messages into a NormalizedPrompt (400 before any billing)
  2. Balance gate (402 before any upstream call)
  3. Route the requested model to a backend
  4. Acquire a credential and preprocess audio / images
  5. Compact history to the token budget
  6. Generate under the failover controller
  7. Sanitize (buffered) or relay (streamed) the reply
  8. Meter the usage

Usage:
    gateway = ChatGateway.from_settings(settings, pool, billing)

    prepared = await gateway.prepare(account, messages, model="salesmanchatbot-flash")
    body = await gateway.complete(prepared)
    # or
    events = await gateway.open_stream(prepared)
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Any

import httpx

from app.core.config import Settings
from app.core.exceptions import GatewayError, MalformedRequestError, UpstreamRequestError
from app.core.metrics import CHAT_REQUESTS
from app.gateway.billing import BalanceDecision, BillingService, estimate_usage_tokens
from app.gateway.compactor import ContextCompactor
from app.gateway.failover import FailoverController
from app.gateway.key_pool import KeyPool
from app.gateway.preprocessor import MultimodalPreprocessor
from app.gateway.prompt import DEFAULT_SYSTEM_PROMPT, build_messages, parse_messages
from app.gateway.router import route
from app.gateway.sanitizer import sanitize
from app.gateway.streaming import stream_chat_completion
from app.gateway.types import Backend, BackendConfig, BackendRoute, ChatTurn, Credential
from app.gateway.vendor_adapters import (
    BaseBackendAdapter,
    FlashAdapter,
    UpstreamBadRequestError,
    UpstreamError,
    fetch_media,
    get_adapter,
)
from app.models.account import Account

logger = logging.getLogger(__name__)


def backend_configs(settings: Settings) -> dict[Backend, BackendConfig]:
    return {
        Backend.FLASH: BackendConfig(
            Backend.FLASH, settings.flash_base_url, settings.flash_model, settings.flash_timeout_seconds
        ),
        Backend.LITE: BackendConfig(Backend.LITE, settings.lite_base_url, settings.lite_model, settings.lite_timeout_seconds),
        Backend.PRO: BackendConfig(Backend.PRO, settings.pro_base_url, settings.pro_model, settings.pro_timeout_seconds),
    }


@dataclass
class PreparedChat:
    """Everything generation needs, resolved before the first upstream chat call."""

    account_id: Any
    route: BackendRoute
    decision: BalanceDecision
    system_content: str
    history: list[ChatTurn]
    user_message: str
    credential: Credential | None = None
    completion_id: str = field(default_factory=lambda: f"chatcmpl-{int(time.time() * 1000)}")
    created: int = field(default_factory=lambda: int(time.time()))

    @property
    def messages(self) -> list[dict[str, str]]:
        return build_messages(self.system_content, self.history, self.user_message)

    def estimate_tokens(self, completion: str) -> int:
        return estimate_usage_tokens(self.system_content, self.history, self.user_message, completion)


class ChatGateway:
    """Main gateway orchestrator.

    Integrates:
      - KeyPool: credential selection, demotion, cooldown
      - MultimodalPreprocessor: audio transcripts and image context
      - ContextCompactor: history trimming to the token budget
      - FailoverController: bounded retry with credential rotation
      - BillingService: balance gate and usage ledger
    """

    def __init__(
        self,
        pool: KeyPool,
        billing: BillingService,
        adapters: dict[Backend, BaseBackendAdapter],
        compactor: ContextCompactor | None = None,
        preprocessor: MultimodalPreprocessor | None = None,
        max_attempts: int = 3,
        transcription_model: str = "whisper-large-v3",
        transcription_cost: float = 0.005,
        transcription_minimum_balance: float = 0.001,
        media_timeout: float = 60.0,
    ):
        self.pool = pool
        self.billing = billing
        self.adapters = adapters
        self.compactor = compactor or ContextCompactor()
        self.failover = FailoverController(pool, max_attempts)
        self.transcription_model = transcription_model
        self.transcription_cost = transcription_cost
        self.transcription_minimum_balance = transcription_minimum_balance
        self.media_timeout = media_timeout
        self.preprocessor = preprocessor
        if self.preprocessor is None and isinstance(adapters.get(Backend.FLASH), FlashAdapter):
            self.preprocessor = MultimodalPreprocessor(adapters[Backend.FLASH], pool)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        pool: KeyPool,
        billing: BillingService,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ChatGateway:
        adapters: dict[Backend, BaseBackendAdapter] = {}
        for backend, config in backend_configs(settings).items():
            kwargs: dict[str, Any] = {"transport": transport}
            if backend == Backend.FLASH:
                kwargs.update(
                    transcription_model=settings.transcription_model,
                    vision_model=settings.vision_model,
                    media_timeout=settings.media_timeout_seconds,
                )
            adapters[backend] = get_adapter(config, **kwargs)

        flash = adapters[Backend.FLASH]
        if not isinstance(flash, FlashAdapter):
            raise TypeError(f"Flash backend needs a FlashAdapter for media, got {type(flash).__name__}")
        return cls(
            pool=pool,
            billing=billing,
            adapters=adapters,
            compactor=ContextCompactor(settings.context_soft_budget, settings.context_hard_ceiling),
            preprocessor=MultimodalPreprocessor(
                flash,
                pool,
                max_images=settings.max_images_per_request,
                media_timeout=settings.media_timeout_seconds,
            ),
            max_attempts=settings.max_attempts,
            transcription_model=settings.transcription_model,
            transcription_cost=settings.transcription_cost,
            transcription_minimum_balance=settings.transcription_minimum_balance,
            media_timeout=settings.media_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    async def prepare(self, account: Account, messages: list[dict[str, Any]], model: str | None) -> PreparedChat:
        """Steps 1–5. Raises GatewayError subclasses."""
        prompt = parse_messages(messages)
        decision = self.billing.check_balance(account)
        backend_route = route(model)

        generation_credential: Credential | None = None
        message = prompt.user_message
        image_context = ""

        if (prompt.image_refs or prompt.audio_refs) and self.preprocessor is not None:
            media_credential = self.pool.acquire(Backend.FLASH)
            result = await self.preprocessor.preprocess(
                prompt.user_message,
                prompt.image_refs,
                prompt.audio_refs[0] if prompt.audio_refs else None,
                media_credential,
            )
            message = result.message
            image_context = result.image_context
            if backend_route.backend == Backend.FLASH and self.pool.is_usable(media_credential):
                generation_credential = media_credential
            else:
                self.pool.release(media_credential)

        system_content = (prompt.system_prompt or DEFAULT_SYSTEM_PROMPT) + image_context
        history = self.compactor.compact(system_content, prompt.history, message)

        return PreparedChat(
            account_id=account.id,
            route=backend_route,
            decision=decision,
            system_content=system_content,
            history=history,
            user_message=message,
            credential=generation_credential,
        )

    # ------------------------------------------------------------------
    # Buffered
    # ------------------------------------------------------------------

    async def complete(self, prepared: PreparedChat) -> dict[str, Any]:
        """Generate, sanitize and meter one buffered completion."""
        backend_route = prepared.route
        adapter = self.adapters[backend_route.backend]
        messages = prepared.messages

        try:
            result = await self.failover.run(
                backend_route.backend,
                lambda credential: adapter.generate(messages, credential),
                prepared.credential,
            )
        except GatewayError as e:
            CHAT_REQUESTS.labels(model=backend_route.public_model_name, outcome=e.code).inc()
            raise

        text = sanitize(result.text)
        token_count = result.total_tokens or prepared.estimate_tokens(text)

        await self.billing.meter(
            prepared.account_id,
            backend_route.public_model_name,
            token_count,
            backend_route.pricing_tier,
            free_tier=prepared.decision.free_tier,
        )
        CHAT_REQUESTS.labels(model=backend_route.public_model_name, outcome="success").inc()

        return {
            "id": prepared.completion_id,
            "object": "chat.completion",
            "created": prepared.created,
            "model": backend_route.public_model_name,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": text},
                    "finish_reason": "stop",
                }
            ],
            "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": token_count},
        }

    # ------------------------------------------------------------------
    # Streamed
    # ------------------------------------------------------------------

    async def open_stream(self, prepared: PreparedChat) -> AsyncGenerator[str, None]:
        """Open the upstream stream and return the SSE event iterator.

        Failures before the first delta raise here, so the caller still gets a
        plain HTTP error. Later failures become an error event in the stream.
        """
        backend_route = prepared.route
        adapter = self.adapters[backend_route.backend]
        messages = prepared.messages

        try:
            deltas = await self.failover.open_stream(
                backend_route.backend,
                lambda credential: adapter.stream(messages, credential),
                prepared.credential,
            )
        except GatewayError as e:
            CHAT_REQUESTS.labels(model=backend_route.public_model_name, outcome=e.code).inc()
            raise

        async def on_complete(text: str) -> None:
            await self.billing.meter(
                prepared.account_id,
                backend_route.public_model_name,
                prepared.estimate_tokens(text),
                backend_route.pricing_tier,
                free_tier=prepared.decision.free_tier,
            )
            CHAT_REQUESTS.labels(model=backend_route.public_model_name, outcome="success").inc()

        return stream_chat_completion(
            deltas,
            on_complete,
            prepared.completion_id,
            prepared.created,
            backend_route.public_model_name,
        )

    # ------------------------------------------------------------------
    # Transcription
    # ------------------------------------------------------------------

    async def transcribe(self, account: Account, audio_url: str) -> str:
        """Fixed-price audio transcription on the flash provider."""
        self.billing.require_balance(account, self.transcription_minimum_balance)
        flash = self.adapters[Backend.FLASH]
        if not isinstance(flash, FlashAdapter):
            raise UpstreamRequestError("Transcription is not available")

        try:
            audio = await fetch_media(audio_url, self.media_timeout)
        except UpstreamBadRequestError as e:
            raise MalformedRequestError(f"Could not download audio: {e}") from e
        except UpstreamError as e:
            raise UpstreamRequestError(f"Could not download audio: {e}") from e

        text = await self.failover.run(Backend.FLASH, lambda credential: flash.transcribe(audio, credential))
        await self.billing.meter(account.id, self.transcription_model, 1, cost=self.transcription_cost)
        return text
