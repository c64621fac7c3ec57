"""Metering & Billing — balance gate before generation, ledger entry after.

Cost model::

    cost = max(tokens * rate_per_million / 1_000_000, floor_cost)

Gate (before any upstream call):
  - balance >= minimum_balance               → paid request
  - else request_count < free_tier_cap       → free tier (cost 0)
  - else                                     → InsufficientBalanceError (402)

The deduction is one conditional UPDATE (``WHERE balance >= cost``), so two
concurrent requests can never take the balance below zero. If the condition
loses, the request is still served: the balance is drained to zero and the
shortfall is logged.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.exceptions import InsufficientBalanceError
from app.core.metrics import BILLED_COST, BILLED_TOKENS
from app.gateway.compactor import CHARS_PER_TOKEN
from app.gateway.types import ChatTurn, PricingTier
from app.models.account import Account
from app.models.usage_record import UsageRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BalanceDecision:
    free_tier: bool = False


def estimate_usage_tokens(
    system_prompt: str, history: list[ChatTurn], user_message: str, completion: str
) -> int:
    """Prompt and completion estimated separately, each rounded up."""
    prompt_chars = len(system_prompt) + len(user_message) + sum(len(t.content) for t in history)
    return math.ceil(prompt_chars / CHARS_PER_TOKEN) + math.ceil(len(completion) / CHARS_PER_TOKEN)


class BillingService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        rates: dict[PricingTier, float],
        floor_cost: float = 0.00001,
        minimum_balance: float = 0.01,
        free_tier_cap: int = 20,
        currency: str = "BDT",
    ):
        self._session_factory = session_factory
        self.rates = rates
        self.floor_cost = floor_cost
        self.minimum_balance = minimum_balance
        self.free_tier_cap = free_tier_cap
        self.currency = currency

    @classmethod
    def from_settings(cls, settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> BillingService:
        return cls(
            session_factory=session_factory,
            rates={
                PricingTier.PRO: settings.price_pro_per_million,
                PricingTier.FLASH: settings.price_flash_per_million,
                PricingTier.LITE: settings.price_lite_per_million,
            },
            floor_cost=settings.floor_cost,
            minimum_balance=settings.minimum_balance,
            free_tier_cap=settings.free_tier_request_cap,
            currency=settings.currency,
        )

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    def compute_cost(self, token_count: int, tier: PricingTier) -> float:
        rate = self.rates[tier]
        return max(token_count * rate / 1_000_000, self.floor_cost)

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    def check_balance(self, account: Account) -> BalanceDecision:
        """Decide whether ``account`` may generate. Raises InsufficientBalanceError."""
        if account.balance >= self.minimum_balance:
            return BalanceDecision(free_tier=False)
        if account.request_count < self.free_tier_cap:
            logger.info(
                "Free tier request %d/%d for account %s",
                account.request_count + 1,
                self.free_tier_cap,
                account.id,
            )
            return BalanceDecision(free_tier=True)
        raise InsufficientBalanceError(
            f"Insufficient balance. Minimum {self.minimum_balance} {self.currency} required."
        )

    def require_balance(self, account: Account, minimum: float) -> None:
        """Plain threshold check with no free tier (used for fixed-price calls)."""
        if account.balance < minimum:
            raise InsufficientBalanceError(f"Insufficient balance. Minimum {minimum} {self.currency} required.")

    # ------------------------------------------------------------------
    # Metering
    # ------------------------------------------------------------------

    async def meter(
        self,
        account_id: uuid.UUID,
        model_name: str,
        token_count: int,
        tier: PricingTier | None = None,
        free_tier: bool = False,
        cost: float | None = None,
    ) -> UsageRecord:
        """Deduct and append exactly one UsageRecord.

        ``cost`` overrides the token price for fixed-price calls; otherwise
        ``tier`` is required.
        """
        if free_tier:
            charged = 0.0
        elif cost is not None:
            charged = cost
        else:
            if tier is None:
                raise ValueError("tier is required when no fixed cost is given")
            charged = self.compute_cost(token_count, tier)

        async with self._session_factory() as session:
            if charged > 0:
                result = await session.execute(
                    update(Account)
                    .where(Account.id == account_id, Account.balance >= charged)
                    .values(balance=Account.balance - charged, request_count=Account.request_count + 1)
                )
                if result.rowcount == 0:
                    logger.warning(
                        "Balance of account %s below charge %.5f %s for %s; draining to zero",
                        account_id,
                        charged,
                        self.currency,
                        model_name,
                    )
                    await session.execute(
                        update(Account)
                        .where(Account.id == account_id)
                        .values(balance=0.0, request_count=Account.request_count + 1)
                    )
            else:
                await session.execute(
                    update(Account)
                    .where(Account.id == account_id)
                    .values(request_count=Account.request_count + 1)
                )

            record = UsageRecord(
                account_id=account_id,
                model_name=model_name,
                token_count=token_count,
                cost=charged,
                free_tier=free_tier,
            )
            session.add(record)
            await session.commit()

        BILLED_TOKENS.labels(model=model_name).inc(token_count)
        BILLED_COST.labels(model=model_name).inc(charged)
        logger.info(
            "Metered %s: %d tokens, %.5f %s%s",
            model_name,
            token_count,
            charged,
            self.currency,
            " (free tier)" if free_tier else "",
            extra={"account_id": account_id},
        )
        return record

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def summarize_usage(
        self,
        session: AsyncSession,
        account_id: uuid.UUID,
        start_date: date | None = None,
        end_date: date | None = None,
        recent_limit: int = 100,
    ) -> dict[str, Any]:
        """Totals, today, yesterday, optional date range and recent records for one account."""
        today_start = datetime.combine(datetime.now(timezone.utc).date(), time.min, tzinfo=timezone.utc)
        yesterday_start = today_start - timedelta(days=1)

        summary: dict[str, Any] = {
            "currency": self.currency,
            "total": await self._aggregate(session, account_id),
            "today": await self._aggregate(session, account_id, today_start),
            "yesterday": await self._aggregate(session, account_id, yesterday_start, today_start),
            "range": None,
        }
        if start_date or end_date:
            range_start = datetime.combine(start_date, time.min, tzinfo=timezone.utc) if start_date else None
            range_end = (
                datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=timezone.utc) if end_date else None
            )
            summary["range"] = await self._aggregate(session, account_id, range_start, range_end)

        result = await session.execute(
            select(UsageRecord)
            .where(UsageRecord.account_id == account_id)
            .order_by(UsageRecord.created_at.desc(), UsageRecord.id.desc())
            .limit(recent_limit)
        )
        summary["recent"] = list(result.scalars().all())
        return summary

    async def _aggregate(
        self,
        session: AsyncSession,
        account_id: uuid.UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[str, float | int]:
        query = select(
            func.coalesce(func.sum(UsageRecord.cost), 0.0),
            func.coalesce(func.sum(UsageRecord.token_count), 0),
            func.count(UsageRecord.id),
        ).where(UsageRecord.account_id == account_id)
        if start is not None:
            query = query.where(UsageRecord.created_at >= start)
        if end is not None:
            query = query.where(UsageRecord.created_at < end)
        cost, tokens, requests = (await session.execute(query)).one()
        return {"cost": float(cost), "tokens": int(tokens), "requests": int(requests)}
