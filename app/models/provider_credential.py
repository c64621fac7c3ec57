from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, LargeBinary, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class ProviderCredential(Base):
    """Operator-managed upstream key. The gateway only flips status and touches last_used_at."""

    __tablename__ = "provider_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    backend: Mapped[str] = mapped_column(String(20), nullable=False, index=True)  # flash | lite | pro
    secret: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)  # Fernet-encrypted
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)  # active | offline
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
