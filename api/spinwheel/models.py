from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Integer, String, Boolean, Float, ForeignKey, DateTime, Index
from datetime import datetime, timezone
from .db import Base

utcnow = lambda: datetime.now(timezone.utc)

# SpinCode.status values
ACTIVE = "active"
USED = "used"
DISABLED = "disabled"
EXPIRED = "expired"
CODE_STATUSES = (ACTIVE, USED, DISABLED, EXPIRED)


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    role: Mapped[str | None] = mapped_column(String(16), nullable=True, default="user")
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Prize(Base):
    __tablename__ = "prizes"
    __table_args__ = (Index("ix_prizes_active_order", "is_active", "order"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    color: Mapped[str] = mapped_column(String(16), nullable=False, default="#E11D48")
    probability: Mapped[float] = mapped_column(Float, nullable=False, default=10)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class SpinCode(Base):
    __tablename__ = "spin_codes"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=ACTIVE, index=True)
    note: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    # filled once, by the redemption update
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    used_by: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    used_by_username: Mapped[str | None] = mapped_column(String, nullable=True)
    prize: Mapped[str | None] = mapped_column(String, nullable=True)


class SpinLog(Base):
    __tablename__ = "spin_logs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    prize: Mapped[str] = mapped_column(String, nullable=False)
    used_by: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    used_by_username: Mapped[str] = mapped_column(String, nullable=False, index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
