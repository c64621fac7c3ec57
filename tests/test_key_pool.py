"""Tests for the provider credential pool."""

from __future__ import annotations

import random
import time

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.core.encryption import encrypt_value
from app.core.metrics import CREDENTIAL_DEMOTIONS
from app.gateway.key_pool import KeyPool
from app.gateway.types import Backend, Credential, CredentialStatus
from app.models.provider_credential import ProviderCredential


def _cred(cred_id: int, backend: Backend = Backend.FLASH) -> Credential:
    return Credential(id=cred_id, backend=backend, secret=f"gsk-secret-{cred_id}")


async def _insert_credential(db, backend: Backend, secret: str, status: str = "active") -> ProviderCredential:
    row = ProviderCredential(backend=backend.value, secret=encrypt_value(secret), status=status)
    db.add(row)
    await db.commit()
    await db.refresh(row)
    return row


class TestAcquire:
    def test_random_among_active(self):
        pool = KeyPool(rng=random.Random(7))
        for i in range(1, 4):
            pool.add(_cred(i))
        pool.add(_cred(9, Backend.PRO))

        picked = {pool.acquire(Backend.FLASH).id for _ in range(200)}
        assert picked == {1, 2, 3}

    def test_offline_never_selected(self):
        pool = KeyPool()
        pool.add(_cred(1))
        pool.add(_cred(2), CredentialStatus.OFFLINE)

        assert all(pool.acquire(Backend.FLASH).id == 1 for _ in range(50))

    def test_fallback_when_no_active(self):
        pool = KeyPool(fallback_keys={Backend.LITE: "or-fallback"})
        pool.add(_cred(1, Backend.LITE), CredentialStatus.OFFLINE)

        cred = pool.acquire(Backend.LITE)
        assert cred.is_fallback
        assert cred.secret == "or-fallback"

    def test_never_raises_without_fallback(self):
        pool = KeyPool()
        cred = pool.acquire(Backend.PRO)
        assert cred.is_fallback
        assert cred.secret == ""

    def test_prefers_credentials_not_cooling(self):
        pool = KeyPool(rng=random.Random(1))
        pool.add(_cred(1))
        pool.add(_cred(2))
        pool.cool_down(_cred(1), 60)

        assert all(pool.acquire(Backend.FLASH).id == 2 for _ in range(50))

    def test_all_cooling_still_returns_active(self):
        pool = KeyPool()
        pool.add(_cred(1))
        pool.cool_down(_cred(1), 60)

        assert pool.acquire(Backend.FLASH).id == 1

    def test_add_rejects_fallback(self):
        pool = KeyPool()
        with pytest.raises(ValueError):
            pool.add(Credential(id=None, backend=Backend.FLASH, secret="x"))


class TestDemote:
    @pytest.mark.asyncio
    async def test_idempotent(self):
        pool = KeyPool()
        pool.add(_cred(1, Backend.PRO))
        counter = CREDENTIAL_DEMOTIONS.labels(backend="pro")
        before = counter._value.get()

        await pool.demote(_cred(1, Backend.PRO))
        await pool.demote(_cred(1, Backend.PRO))

        assert pool.status_of(1) == CredentialStatus.OFFLINE
        assert counter._value.get() == before + 1
        assert not pool.is_usable(_cred(1, Backend.PRO))

    @pytest.mark.asyncio
    async def test_fallback_never_demoted(self):
        pool = KeyPool(fallback_keys={Backend.FLASH: "gsk-fallback"})
        fallback = pool.acquire(Backend.FLASH)

        await pool.demote(fallback)

        assert pool.acquire(Backend.FLASH).secret == "gsk-fallback"

    @pytest.mark.asyncio
    async def test_persisted(self, db, session_factory):
        row = await _insert_credential(db, Backend.FLASH, "gsk-live")
        pool = KeyPool(session_factory=session_factory)
        await pool.refresh()

        await pool.demote(pool.acquire(Backend.FLASH))

        async with session_factory() as session:
            stored = await session.get(ProviderCredential, row.id)
        assert stored.status == "offline"

    @pytest.mark.asyncio
    async def test_write_failure_is_logged_not_raised(self, caplog):
        def broken_factory():
            raise OperationalError("UPDATE provider_credentials", {}, Exception("database is locked"))

        pool = KeyPool(session_factory=broken_factory)
        pool.add(_cred(1))

        with caplog.at_level("ERROR", logger="app.gateway.key_pool"):
            await pool.demote(_cred(1))

        assert pool.status_of(1) == CredentialStatus.OFFLINE
        assert "Failed to persist OFFLINE status" in caplog.text


class TestRefresh:
    @pytest.mark.asyncio
    async def test_loads_and_decrypts(self, db, session_factory):
        await _insert_credential(db, Backend.FLASH, "gsk-one")
        await _insert_credential(db, Backend.LITE, "or-two")
        await _insert_credential(db, Backend.PRO, "gm-three", status="offline")
        pool = KeyPool(session_factory=session_factory)

        active = await pool.refresh()

        assert active == 2
        assert pool.acquire(Backend.FLASH).secret == "gsk-one"
        assert pool.acquire(Backend.LITE).secret == "or-two"
        assert pool.acquire(Backend.PRO).is_fallback

    @pytest.mark.asyncio
    async def test_deleted_rows_leave_pool(self, db, session_factory):
        row = await _insert_credential(db, Backend.FLASH, "gsk-gone")
        pool = KeyPool(session_factory=session_factory)
        await pool.refresh()
        assert pool.active_count(Backend.FLASH) == 1

        await db.delete(row)
        await db.commit()
        await pool.refresh()

        assert pool.active_count(Backend.FLASH) == 0

    @pytest.mark.asyncio
    async def test_operator_reactivation_restores_credential(self, db, session_factory):
        row = await _insert_credential(db, Backend.FLASH, "gsk-broken")
        pool = KeyPool(session_factory=session_factory)
        await pool.refresh()
        await pool.demote(pool.acquire(Backend.FLASH))
        await pool.refresh()
        assert pool.status_of(row.id) == CredentialStatus.OFFLINE

        async with session_factory() as session:
            stored = await session.get(ProviderCredential, row.id)
            stored.status = "active"
            stored.secret = encrypt_value("gsk-repaired")
            await session.commit()
        await pool.refresh()

        assert pool.status_of(row.id) == CredentialStatus.ACTIVE
        assert pool.acquire(Backend.FLASH).secret == "gsk-repaired"

    @pytest.mark.asyncio
    async def test_demotion_newer_than_read_is_kept(self):
        pool = KeyPool()
        pool.add(_cred(1))
        read_started = time.monotonic()
        await pool.demote(_cred(1))

        # Row read before the demotion landed still says active
        pool.add(_cred(1), CredentialStatus.ACTIVE, read_started=read_started)

        assert pool.status_of(1) == CredentialStatus.OFFLINE


class TestRelease:
    @pytest.mark.asyncio
    async def test_records_last_used(self, db, session_factory):
        row = await _insert_credential(db, Backend.FLASH, "gsk-used")
        pool = KeyPool(session_factory=session_factory)
        await pool.refresh()

        pool.release(pool.acquire(Backend.FLASH))
        await pool.stop()  # drains background writes

        async with session_factory() as session:
            result = await session.execute(select(ProviderCredential.last_used_at).where(ProviderCredential.id == row.id))
        assert result.scalar_one() is not None

    def test_stats(self):
        pool = KeyPool(fallback_keys={Backend.FLASH: "gsk-fallback"})
        pool.add(_cred(1))
        pool.add(_cred(2), CredentialStatus.OFFLINE)
        pool.cool_down(_cred(1), 30)

        stats = pool.get_stats()
        assert stats["flash"] == {"total": 2, "active": 1, "cooling": 1, "fallback_configured": 1}
        assert stats["pro"]["total"] == 0
