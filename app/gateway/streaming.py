"""Streaming Adapter — relays upstream deltas as OpenAI-style SSE chunks.

Every delta is forwarded and accumulated. Once the stream ends for any reason
(clean end, upstream failure, caller disconnect) ``on_complete`` receives the
accumulated text exactly once, shielded from cancellation, so a partial
stream is still metered.

The HTTP layer does not close a body iterator it stopped reading; the chat
route attaches ``aclose()`` as a response background task so metering runs
when the response ends rather than when the generator is garbage collected.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable
from typing import Any

from app.core.exceptions import GatewayError, UpstreamRequestError
from app.gateway.vendor_adapters import UpstreamError

logger = logging.getLogger(__name__)

DONE_EVENT = "data: [DONE]\n\n"


def sse_event(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def chunk_payload(
    completion_id: str, created: int, model: str, content: str | None, finish_reason: str | None = None
) -> dict[str, Any]:
    delta: dict[str, Any] = {} if content is None else {"content": content}
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


async def stream_chat_completion(
    deltas: AsyncIterator[str],
    on_complete: Callable[[str], Awaitable[Any]],
    completion_id: str,
    created: int,
    model: str,
) -> AsyncGenerator[str, None]:
    buffer: list[str] = []
    try:
        try:
            async for delta in deltas:
                buffer.append(delta)
                yield sse_event(chunk_payload(completion_id, created, model, delta))
            yield sse_event(chunk_payload(completion_id, created, model, None, finish_reason="stop"))
        except (UpstreamError, GatewayError) as e:
            logger.warning("Stream for %s interrupted after %d deltas: %s", completion_id, len(buffer), e)
            error = e if isinstance(e, GatewayError) else UpstreamRequestError(f"Upstream stream failed: {e}")
            yield sse_event(error.to_envelope())
        yield DONE_EVENT
    finally:
        try:
            await asyncio.shield(on_complete("".join(buffer)))
        except asyncio.CancelledError:
            # The shielded task keeps running; only this wait was cancelled
            logger.info("Caller disconnected from %s; metering continues in background", completion_id)
            raise
        except Exception:
            logger.exception("Metering failed for stream %s", completion_id)
        finally:
            await _close(deltas)


async def _close(deltas: AsyncIterator[str]) -> None:
    aclose = getattr(deltas, "aclose", None)
    if aclose is not None:
        await aclose()
