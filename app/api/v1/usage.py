"""Usage report for the calling account."""

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import get_current_account, get_gateway
from app.core.exceptions import MalformedRequestError
from app.db.postgres import get_db
from app.gateway.gateway import ChatGateway
from app.models.account import Account
from app.schemas.usage import UsageRecordItem, UsageResponse, UsageTotals

router = APIRouter(prefix="/usage", tags=["usage"])


@router.get("", response_model=UsageResponse)
async def get_usage(
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    account: Account = Depends(get_current_account),
    gateway: ChatGateway = Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
):
    """Totals, today, yesterday, optional date range and the 100 most recent records."""
    if start_date and end_date and start_date > end_date:
        raise MalformedRequestError("start_date must not be after end_date")

    summary = await gateway.billing.summarize_usage(db, account.id, start_date, end_date)
    return UsageResponse(
        currency=summary["currency"],
        balance=account.balance,
        request_count=account.request_count,
        total=UsageTotals(**summary["total"]),
        today=UsageTotals(**summary["today"]),
        yesterday=UsageTotals(**summary["yesterday"]),
        range=UsageTotals(**summary["range"]) if summary["range"] else None,
        recent=[UsageRecordItem.model_validate(r) for r in summary["recent"]],
    )
