from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as StrEnumBase

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from giftpool.db.session import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GiftStatusEnum(str, StrEnumBase):
    ACTIVE = "active"
    FUNDED = "funded"
    SETTLED = "settled"
    EXPIRED = "expired"


class ContributionStatusEnum(str, StrEnumBase):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SettlementMethodEnum(str, StrEnumBase):
    GIFT_CARD = "gift_card"
    CREDITS = "credits"


class AlertTierEnum(str, StrEnumBase):
    OK = "OK"
    LOW = "LOW"
    CRITICAL = "CRITICAL"


OPEN_GIFT_STATUSES = (GiftStatusEnum.ACTIVE.value, GiftStatusEnum.FUNDED.value)
SETTLEABLE_GIFT_STATUSES = OPEN_GIFT_STATUSES + (GiftStatusEnum.EXPIRED.value,)


class Gift(Base):
    __tablename__ = "gifts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organizer_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    target_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=GiftStatusEnum.ACTIVE.value, nullable=False)
    # Maintained only through atomic increments in the ledger.
    collected_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    contributions: Mapped[list["Contribution"]] = relationship(
        back_populates="gift",
        cascade="all, delete-orphan",
        order_by="Contribution.id",
    )
    settlement: Mapped["Settlement | None"] = relationship(back_populates="gift", uselist=False)

    __table_args__ = (
        CheckConstraint("collected_total >= 0", name="ck_gifts_collected_total_non_negative"),
    )


class Contribution(Base):
    __tablename__ = "contributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    gift_id: Mapped[int] = mapped_column(ForeignKey("gifts.id"), index=True, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    charged_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    fee_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    contributor_name: Mapped[str] = mapped_column(String(120), default="Anonymous", nullable=False)
    contributor_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    is_guest: Mapped[bool] = mapped_column(Boolean, default=True)
    message: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20),
        default=ContributionStatusEnum.COMPLETED.value,
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    gift: Mapped[Gift] = relationship(back_populates="contributions")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_contributions_amount_positive"),
    )


class Settlement(Base):
    __tablename__ = "settlements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # unique: the storage layer guarantees at most one settlement per gift
    gift_id: Mapped[int] = mapped_column(ForeignKey("gifts.id"), unique=True, index=True, nullable=False)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    payable_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    float_balance: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency_code: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    created_by: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    gift: Mapped[Gift] = relationship(back_populates="settlement")
    allocations: Mapped[list["SettlementAllocation"]] = relationship(
        back_populates="settlement",
        cascade="all, delete-orphan",
        order_by="SettlementAllocation.id",
    )

    __table_args__ = (
        CheckConstraint("payable_amount >= 0", name="ck_settlements_payable_non_negative"),
    )


class SettlementAllocation(Base):
    __tablename__ = "settlement_allocations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    settlement_id: Mapped[int] = mapped_column(ForeignKey("settlements.id"), index=True, nullable=False)
    contributor_name: Mapped[str] = mapped_column(String(120), nullable=False)
    contributor_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    settlement: Mapped[Settlement] = relationship(back_populates="allocations")


class BalanceAlertState(Base):
    __tablename__ = "balance_alert_state"

    tier: Mapped[str] = mapped_column(String(20), primary_key=True)
    alerted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
