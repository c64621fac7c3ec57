from fastapi import Depends, Header, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import UnauthorizedError
from app.core.security import hash_service_key
from app.db.postgres import get_db
from app.gateway.gateway import ChatGateway
from app.models.account import Account


async def get_current_account(
    db: AsyncSession = Depends(get_db),
    authorization: str | None = Header(None, description="Bearer <service key>"),
) -> Account:
    if not authorization or not authorization.startswith("Bearer "):
        raise UnauthorizedError("Missing or invalid Authorization header. Use 'Bearer <your-api-key>'.")

    raw_key = authorization[7:].strip()
    if not raw_key:
        raise UnauthorizedError("Missing API key")

    result = await db.execute(
        select(Account).where(Account.service_key_hash == hash_service_key(raw_key), Account.is_active == True)  # noqa: E712
    )
    account = result.scalar_one_or_none()
    if not account:
        raise UnauthorizedError("Invalid API key")

    return account


def get_gateway(request: Request) -> ChatGateway:
    """The gateway built in the application lifespan."""
    return request.app.state.gateway
