"""
Contribution ledger.

Contributions are append-only rows; the running total on ``gifts`` is only
ever changed by a single conditional ``UPDATE ... SET collected_total =
collected_total + :amount`` issued in the same transaction as the insert. The
database serializes concurrent increments, so no update is lost regardless of
interleaving. The increment is the first statement of each write transaction,
which keeps SQLite from deadlocking two readers that both want to upgrade.

``record`` models a contribution whose charge is already captured. The card
capture flow lives outside this service: it calls ``open_pending`` before
charging and ``resolve`` with the capture outcome, and only a successful
capture moves the amount into the total.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from giftpool.core.audit import AuditAction, audit_log
from giftpool.core.errors import GiftClosed, GiftNotFound, InvalidContributionState
from giftpool.core.fees import FeeSchedule, fee_for_gross, gross_for_net
from giftpool.core.money import Amount, money, positive_amount
from giftpool.models.models import (
    OPEN_GIFT_STATUSES,
    Contribution,
    ContributionStatusEnum,
    Gift,
    GiftStatusEnum,
    utcnow,
)


logger = logging.getLogger("giftpool.ledger")


@dataclass(frozen=True)
class Contributor:
    name: str | None = None
    email: str | None = None
    user_id: int | None = None

    @property
    def display_name(self) -> str:
        name = (self.name or "").strip()
        return name or "Anonymous"

    @property
    def normalized_email(self) -> str | None:
        email = (self.email or "").strip().lower()
        return email or None


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ContributionLedger:
    def __init__(self, db: AsyncSession, fee_schedule: FeeSchedule | None = None) -> None:
        self._db = db
        self._fees = fee_schedule or FeeSchedule.from_settings()

    def _increment_total(self, gift_id: int, amount: Decimal, *conditions):
        # SQLite keeps Numeric as REAL; compare and store at cent precision
        new_total = func.round(Gift.collected_total + amount, 2)
        return (
            update(Gift)
            .where(Gift.id == gift_id, *conditions)
            .values(
                collected_total=new_total,
                status=case(
                    (
                        and_(
                            Gift.status.in_(OPEN_GIFT_STATUSES),
                            Gift.target_amount.is_not(None),
                            new_total >= func.round(Gift.target_amount, 2),
                        ),
                        GiftStatusEnum.FUNDED.value,
                    ),
                    else_=Gift.status,
                ),
            )
            .returning(Gift.collected_total, Gift.status)
            .execution_options(synchronize_session=False)
        )

    def _new_contribution(
        self,
        gift_id: int,
        amount: Decimal,
        contributor: Contributor,
        message: str | None,
        status: ContributionStatusEnum,
    ) -> Contribution:
        charged = gross_for_net(amount, self._fees)
        return Contribution(
            gift_id=gift_id,
            amount=amount,
            charged_amount=charged,
            fee_amount=fee_for_gross(charged, self._fees),
            contributor_name=contributor.display_name,
            contributor_email=contributor.normalized_email,
            user_id=contributor.user_id,
            is_guest=contributor.user_id is None,
            message=(message or "").strip() or None,
            status=status.value,
        )

    async def _raise_closed(self, gift_id: int, now: datetime) -> None:
        gift = await self._db.get(Gift, gift_id)
        if gift is None:
            raise GiftNotFound()
        deadline = as_utc(gift.deadline)
        if gift.status in OPEN_GIFT_STATUSES and deadline is not None and deadline <= now:
            await self._db.execute(
                update(Gift)
                .where(Gift.id == gift_id, Gift.status.in_(OPEN_GIFT_STATUSES))
                .values(status=GiftStatusEnum.EXPIRED.value)
                .execution_options(synchronize_session=False)
            )
            await self._db.commit()
            logger.info("Gift expired gift_id=%s deadline=%s", gift_id, deadline.isoformat())
            raise GiftClosed("Gift deadline has passed")
        raise GiftClosed()

    async def record(
        self,
        gift_id: int,
        amount: Amount,
        contributor: Contributor,
        message: str | None = None,
    ) -> Contribution:
        """Append a completed contribution and bump the gift total atomically."""
        value = positive_amount(amount)
        now = utcnow()
        try:
            result = await self._db.execute(
                self._increment_total(
                    gift_id,
                    value,
                    Gift.status.in_(OPEN_GIFT_STATUSES),
                    or_(Gift.deadline.is_(None), Gift.deadline > now),
                )
            )
            row = result.first()
            if row is None:
                await self._db.rollback()
                await self._raise_closed(gift_id, now)
            contribution = self._new_contribution(
                gift_id, value, contributor, message, ContributionStatusEnum.COMPLETED
            )
            self._db.add(contribution)
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise

        logger.info(
            "Contribution recorded gift_id=%s contribution_id=%s amount=%s total=%s status=%s guest=%s",
            gift_id,
            contribution.id,
            value,
            money(row.collected_total),
            row.status,
            contribution.is_guest,
        )
        return contribution

    async def open_pending(
        self,
        gift_id: int,
        amount: Amount,
        contributor: Contributor,
        message: str | None = None,
    ) -> Contribution:
        """Record a contribution whose card charge has not been captured yet.

        Pending rows never count toward the total until ``resolve`` completes them.
        """
        value = positive_amount(amount)
        gift = await self._db.get(Gift, gift_id)
        if gift is None:
            raise GiftNotFound()
        deadline = as_utc(gift.deadline)
        if gift.status not in OPEN_GIFT_STATUSES or (deadline is not None and deadline <= utcnow()):
            raise GiftClosed()
        contribution = self._new_contribution(gift_id, value, contributor, message, ContributionStatusEnum.PENDING)
        self._db.add(contribution)
        await self._db.commit()
        logger.info("Pending contribution opened gift_id=%s contribution_id=%s amount=%s", gift_id, contribution.id, value)
        return contribution

    async def resolve(self, contribution_id: int, succeeded: bool) -> Contribution:
        """Apply the charge-capture outcome to a pending contribution."""
        target = (
            ContributionStatusEnum.COMPLETED if succeeded else ContributionStatusEnum.FAILED
        ).value
        try:
            result = await self._db.execute(
                update(Contribution)
                .where(
                    Contribution.id == contribution_id,
                    Contribution.status == ContributionStatusEnum.PENDING.value,
                )
                .values(status=target)
                .returning(Contribution.gift_id, Contribution.amount)
                .execution_options(synchronize_session=False)
            )
            row = result.first()
            if row is None:
                await self._db.rollback()
                if await self._db.get(Contribution, contribution_id) is None:
                    raise InvalidContributionState("Contribution not found")
                raise InvalidContributionState()
            if succeeded:
                # a capture may land after the deadline; only a settled pool is closed
                bumped = await self._db.execute(
                    self._increment_total(
                        row.gift_id,
                        money(row.amount),
                        Gift.status != GiftStatusEnum.SETTLED.value,
                    )
                )
                if bumped.first() is None:
                    await self._db.rollback()
                    raise GiftClosed("Gift was settled before the charge was captured")
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise

        contribution = await self._db.get(Contribution, contribution_id, populate_existing=True)
        audit_log(
            AuditAction.CONTRIBUTION_RESOLVE,
            user_id=contribution.user_id,
            details={
                "gift_id": row.gift_id,
                "contribution_id": contribution_id,
                "amount": str(money(row.amount)),
                "status": target,
            },
            success=succeeded,
        )
        logger.info(
            "Contribution resolved contribution_id=%s gift_id=%s status=%s amount=%s",
            contribution_id,
            row.gift_id,
            target,
            money(row.amount),
        )
        return contribution

    async def total_for(self, gift_id: int) -> Decimal:
        result = await self._db.execute(
            select(func.coalesce(func.sum(Contribution.amount), 0)).where(
                Contribution.gift_id == gift_id,
                Contribution.status == ContributionStatusEnum.COMPLETED.value,
            )
        )
        return money(result.scalar_one())

    async def list_for(self, gift_id: int) -> list[Contribution]:
        """Completed contributions, oldest first."""
        result = await self._db.execute(
            select(Contribution)
            .where(
                Contribution.gift_id == gift_id,
                Contribution.status == ContributionStatusEnum.COMPLETED.value,
            )
            .order_by(Contribution.id)
        )
        return list(result.scalars().all())
