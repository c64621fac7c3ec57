"""Key Pool — in-process registry of upstream provider credentials.

Credentials are operator-managed rows in ``provider_credentials``. The pool
mirrors them in memory and refreshes periodically, so ``acquire()`` never
touches the database.

Selection:
  - uniformly random among ``active`` credentials of the backend that are
    not cooling down after a 429
  - if every active credential is cooling, random among all active ones
  - if none is active, the statically configured fallback key

Demotion (active → offline) is idempotent, so concurrent writers need no
locking; last write wins. The database row is authoritative on refresh: an
operator re-activating a repaired credential brings it back, except when the
refresh read began before a local demotion and so may predate it.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.encryption import decrypt_value
from app.core.logging import mask_secret
from app.core.metrics import CREDENTIAL_DEMOTIONS
from app.gateway.types import Backend, Credential, CredentialStatus
from app.models.provider_credential import ProviderCredential

logger = logging.getLogger(__name__)


@dataclass
class _PoolEntry:
    credential: Credential
    status: CredentialStatus = CredentialStatus.ACTIVE
    last_used_at: datetime | None = None
    cooling_until: float = 0.0  # time.monotonic() deadline
    demoted_at: float | None = None  # time.monotonic() of the local demotion

    def is_cooling(self, now: float) -> bool:
        return now < self.cooling_until


class KeyPool:
    """Random-selection credential pool with static fallback.

    Usage:
        pool = KeyPool(fallback_keys={Backend.FLASH: "gsk-..."}, session_factory=factory)
        await pool.refresh()

        cred = pool.acquire(Backend.FLASH)
        ...
        pool.release(cred)            # advisory
        await pool.demote(cred)       # on upstream auth failure
        pool.cool_down(cred, 30.0)    # on upstream 429
    """

    def __init__(
        self,
        fallback_keys: dict[Backend, str] | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        cooldown_seconds: float = 60.0,
        rng: random.Random | None = None,
    ):
        self._entries: dict[int, _PoolEntry] = {}
        self._fallback: dict[Backend, Credential] = {
            backend: Credential(id=None, backend=backend, secret=key) for backend, key in (fallback_keys or {}).items()
        }
        self._session_factory = session_factory
        self._cooldown_seconds = cooldown_seconds
        self._rng = rng or random.Random()
        self._refresh_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def add(
        self,
        credential: Credential,
        status: CredentialStatus = CredentialStatus.ACTIVE,
        read_started: float | None = None,
    ) -> None:
        """Register a credential directly (used by refresh and by tests).

        ``read_started`` is the monotonic time the database read behind this
        call began. A local demotion at or after that moment is newer than the
        row and is kept.
        """
        if credential.id is None:
            raise ValueError("Fallback credentials are configured, not added")
        existing = self._entries.get(credential.id)
        if existing is not None:
            demoted_at = existing.demoted_at
            if demoted_at is not None and read_started is not None and demoted_at >= read_started:
                status = CredentialStatus.OFFLINE
            elif status == CredentialStatus.ACTIVE:
                demoted_at = None
            self._entries[credential.id] = _PoolEntry(
                credential=credential,
                status=status,
                last_used_at=existing.last_used_at,
                cooling_until=existing.cooling_until,
                demoted_at=demoted_at,
            )
            return
        self._entries[credential.id] = _PoolEntry(credential=credential, status=status)

    async def refresh(self) -> int:
        """Reload credentials from the database. Returns the number of active credentials."""
        if self._session_factory is None:
            return self.active_count()

        read_started = time.monotonic()
        async with self._session_factory() as session:
            result = await session.execute(select(ProviderCredential))
            rows = result.scalars().all()

        seen: set[int] = set()
        for row in rows:
            try:
                backend = Backend(row.backend)
            except ValueError:
                logger.warning("Skipping credential %d with unknown backend %r", row.id, row.backend)
                continue
            secret = decrypt_value(row.secret)
            if not secret:
                continue
            status = CredentialStatus.ACTIVE if row.status == CredentialStatus.ACTIVE.value else CredentialStatus.OFFLINE
            self.add(Credential(id=row.id, backend=backend, secret=secret), status, read_started)
            seen.add(row.id)

        # Rows deleted by the operator leave the pool
        for cred_id in list(self._entries):
            if cred_id not in seen:
                del self._entries[cred_id]

        active = self.active_count()
        logger.info("Key pool refreshed: %d credentials, %d active", len(self._entries), active)
        return active

    async def start(self, interval_seconds: float) -> None:
        """Load once and keep refreshing in the background."""
        await self.refresh()
        self._refresh_task = asyncio.create_task(self._refresh_loop(interval_seconds))

    async def stop(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def _refresh_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.refresh()
            except Exception as e:
                logger.error("Key pool refresh failed: %s", e)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def acquire(self, backend: Backend) -> Credential:
        """Pick a credential for ``backend``. Never raises."""
        now = time.monotonic()
        active = [
            e for e in self._entries.values() if e.credential.backend == backend and e.status == CredentialStatus.ACTIVE
        ]
        if active:
            warm = [e for e in active if not e.is_cooling(now)]
            entry = self._rng.choice(warm or active)
            return entry.credential

        fallback = self._fallback.get(backend)
        if fallback is None or not fallback.secret:
            logger.warning("No active credentials and no fallback key for %s", backend.value)
            return Credential(id=None, backend=backend, secret="")
        logger.warning("No active credentials for %s, using static fallback key", backend.value)
        return fallback

    def release(self, credential: Credential) -> None:
        """Record ``last_used_at``. Advisory and non-blocking."""
        if credential.is_fallback:
            return
        entry = self._entries.get(credential.id)
        if entry is None:
            return
        entry.last_used_at = datetime.now(timezone.utc)
        if self._session_factory is not None:
            self._spawn(self._persist_last_used(credential.id, entry.last_used_at))

    async def demote(self, credential: Credential) -> None:
        """Flip a credential to offline. Idempotent; the fallback key is never demoted."""
        if credential.is_fallback:
            logger.error("Static fallback key for %s was rejected upstream", credential.backend.value)
            return
        entry = self._entries.get(credential.id)
        if entry is not None and entry.status == CredentialStatus.OFFLINE:
            return
        if entry is not None:
            entry.status = CredentialStatus.OFFLINE
            entry.demoted_at = time.monotonic()

        logger.warning(
            "Marking credential %s (%s) as OFFLINE due to invalid credentials",
            credential.label,
            mask_secret(credential.secret),
        )
        CREDENTIAL_DEMOTIONS.labels(backend=credential.backend.value).inc()

        if self._session_factory is None:
            return
        # The in-memory demotion holds even when the write fails
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(ProviderCredential)
                    .where(ProviderCredential.id == credential.id)
                    .values(status=CredentialStatus.OFFLINE.value)
                )
                await session.commit()
        except Exception as e:
            logger.error("Failed to persist OFFLINE status for credential %s: %s", credential.label, e)

    def cool_down(self, credential: Credential, seconds: float | None = None) -> None:
        """Keep a rate-limited credential out of selection for a while (in memory only)."""
        if credential.is_fallback:
            return
        entry = self._entries.get(credential.id)
        if entry is None:
            return
        duration = seconds if seconds is not None else self._cooldown_seconds
        entry.cooling_until = time.monotonic() + duration
        logger.info("Cooling credential %s for %.1fs", credential.label, duration)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def status_of(self, credential_id: int) -> CredentialStatus | None:
        entry = self._entries.get(credential_id)
        return entry.status if entry else None

    def is_usable(self, credential: Credential) -> bool:
        """False once a pooled credential has been demoted."""
        if credential.is_fallback:
            return bool(credential.secret)
        return self.status_of(credential.id) == CredentialStatus.ACTIVE

    def active_count(self, backend: Backend | None = None) -> int:
        return sum(
            1
            for e in self._entries.values()
            if e.status == CredentialStatus.ACTIVE and (backend is None or e.credential.backend == backend)
        )

    def get_stats(self) -> dict:
        now = time.monotonic()
        stats: dict[str, dict[str, int]] = {}
        for backend in Backend:
            entries = [e for e in self._entries.values() if e.credential.backend == backend]
            stats[backend.value] = {
                "total": len(entries),
                "active": sum(1 for e in entries if e.status == CredentialStatus.ACTIVE),
                "cooling": sum(1 for e in entries if e.status == CredentialStatus.ACTIVE and e.is_cooling(now)),
                "fallback_configured": int(bool(self._fallback.get(backend) and self._fallback[backend].secret)),
            }
        return stats

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist_last_used(self, credential_id: int, when: datetime) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(ProviderCredential).where(ProviderCredential.id == credential_id).values(last_used_at=when)
                )
                await session.commit()
        except Exception as e:
            logger.warning("Failed to record last_used_at for credential %d: %s", credential_id, e)
