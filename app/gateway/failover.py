"""Retry/Failover Controller — bounded retry with credential rotation.

Per request, at most ``max_attempts`` upstream calls:
  - success                 → return
  - 429 / 5xx / transport   → cool the key, re-acquire, retry;
                              CapacityError once attempts run out
  - 401 / 403 / bad key     → demote the key, AuthConfigError, no retry
  - context length / 413    → OversizeError, no retry
  - any other 4xx           → UpstreamRequestError, no retry

The credential is an explicit argument of every attempt. Nothing about the
current key lives on a shared object, so concurrent requests cannot see each
other's rotation.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TypeVar

from app.core.exceptions import AuthConfigError, CapacityError, OversizeError, UpstreamRequestError
from app.core.metrics import UPSTREAM_ATTEMPTS
from app.gateway.key_pool import KeyPool
from app.gateway.types import Backend, Credential
from app.gateway.vendor_adapters import (
    UpstreamAuthError,
    UpstreamBadRequestError,
    UpstreamContextLengthError,
    UpstreamError,
    UpstreamRateLimitError,
    UpstreamServerError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3

OVERSIZE_MESSAGE = (
    "The current conversation is too large for the engine. "
    "Please reduce the length of your system prompt or clear some history."
)


class FailoverController:
    def __init__(self, pool: KeyPool, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.pool = pool
        self.max_attempts = max_attempts

    async def run(
        self,
        backend: Backend,
        call: Callable[[Credential], Awaitable[T]],
        first_credential: Credential | None = None,
    ) -> T:
        """Run ``call(credential)`` under the retry policy above."""
        credential = first_credential or self.pool.acquire(backend)
        last_error: UpstreamError | None = None

        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                credential = self.pool.acquire(backend)

            try:
                result = await call(credential)
            except UpstreamAuthError as e:
                UPSTREAM_ATTEMPTS.labels(backend=backend.value, result="auth_error").inc()
                await self.pool.demote(credential)
                raise AuthConfigError(
                    f"The {backend.value} provider rejected its credential. Please try again later."
                ) from e
            except UpstreamContextLengthError as e:
                UPSTREAM_ATTEMPTS.labels(backend=backend.value, result="oversize").inc()
                raise OversizeError(OVERSIZE_MESSAGE) from e
            except (UpstreamRateLimitError, UpstreamServerError) as e:
                last_error = e
                result_label = "rate_limited" if isinstance(e, UpstreamRateLimitError) else "server_error"
                UPSTREAM_ATTEMPTS.labels(backend=backend.value, result=result_label).inc()
                self.pool.cool_down(credential, e.retry_after)
                logger.warning(
                    "%s issue on %s (attempt %d/%d): %s",
                    backend.value,
                    credential.label,
                    attempt,
                    self.max_attempts,
                    e,
                )
                continue
            except UpstreamBadRequestError as e:
                UPSTREAM_ATTEMPTS.labels(backend=backend.value, result="bad_request").inc()
                raise UpstreamRequestError(f"The {backend.value} provider rejected the request: {e}") from e

            UPSTREAM_ATTEMPTS.labels(backend=backend.value, result="success").inc()
            self.pool.release(credential)
            if attempt > 1:
                logger.info("%s succeeded on attempt %d with %s", backend.value, attempt, credential.label)
            return result

        raise CapacityError(
            f"The {backend.value} engine is at capacity after {self.max_attempts} attempts. Please retry shortly."
        ) from last_error

    async def open_stream(
        self,
        backend: Backend,
        stream_fn: Callable[[Credential], AsyncIterator[str]],
        first_credential: Credential | None = None,
    ) -> AsyncIterator[str]:
        """Open a delta stream under the retry policy.

        An attempt counts as successful once the first delta (or a clean end)
        has been read; failures after that belong to the streaming adapter.
        """

        async def _prime(credential: Credential) -> AsyncIterator[str]:
            stream = stream_fn(credential)
            try:
                first = await stream.__anext__()
            except StopAsyncIteration:
                return _chain(None, stream)
            except BaseException:
                await stream.aclose()
                raise
            return _chain(first, stream)

        return await self.run(backend, _prime, first_credential)


async def run_with_failover(
    pool: KeyPool,
    backend: Backend,
    call: Callable[[Credential], Awaitable[T]],
    first_credential: Credential | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> T:
    return await FailoverController(pool, max_attempts).run(backend, call, first_credential)


async def _chain(first: str | None, rest: AsyncIterator[str]) -> AsyncIterator[str]:
    try:
        if first is not None:
            yield first
        async for delta in rest:
            yield delta
    finally:
        await rest.aclose()
