from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserAccount(Base):
    __tablename__ = "accounts_user"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    platform_role: Mapped[str] = mapped_column(String(32), nullable=False, default="member", server_default="member")
    email_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    plan_type: Mapped[str] = mapped_column(String(32), nullable=False, default="free", server_default="free")
    subscription_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    credit_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    credit_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    monthly_allocation: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    overage_allowed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    credit_floor: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    claimed_profiles_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    max_claimed_profiles: Mapped[int | None] = mapped_column(Integer, nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (CheckConstraint("credit_floor <= 0", name="ck_accounts_user_credit_floor"),)
