"""
Settlement decision engine.

Per gift the decision moves COLLECTING -> ELIGIBLE_CREDITS | ELIGIBLE_BOTH ->
SETTLED. Credits are always offered once something has been collected; a gift
card is offered only when a fresh float reading covers the surplus. An
unknown float never makes a gift card available.

Settling is a compare-and-swap on ``gifts.status`` backed by a UNIQUE
constraint on ``settlements.gift_id``: concurrent requests produce exactly one
row and the losers get ``AlreadySettled``. The total returned by the swap is
the payable amount, so a contribution racing the settlement is either
included in it or rejected by the ledger.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from giftpool.core.audit import AuditAction, audit_log
from giftpool.core.config import settings
from giftpool.core.errors import (
    AlreadySettled,
    GiftNotFound,
    NotGiftOrganizer,
    SettlementMethodUnavailable,
    SettlementNotFound,
    UpstreamUnavailable,
)
from giftpool.core.money import CENT, ZERO, money, round2
from giftpool.integrations.reloadly import FloatBalance, FloatBalanceGateway
from giftpool.models.models import (
    SETTLEABLE_GIFT_STATUSES,
    Contribution,
    Gift,
    GiftStatusEnum,
    Settlement,
    SettlementAllocation,
    SettlementMethodEnum,
)
from giftpool.services.ledger import ContributionLedger


logger = logging.getLogger("giftpool.settlement")


class DecisionState(str, Enum):
    COLLECTING = "COLLECTING"
    ELIGIBLE_CREDITS = "ELIGIBLE_CREDITS"
    ELIGIBLE_BOTH = "ELIGIBLE_BOTH"
    SETTLED = "SETTLED"


class GiftCardOverride(str, Enum):
    AUTO = "auto"
    SHOW = "show"
    HIDE = "hide"


@dataclass(frozen=True)
class SettlementOffer:
    gift_id: int
    state: DecisionState
    surplus: Decimal
    methods: tuple[SettlementMethodEnum, ...]
    float_balance: Decimal | None = None
    currency_code: str | None = None
    gift_card_hidden_reason: str | None = None


def decide_methods(
    surplus: Decimal,
    balance: FloatBalance | None,
    override: GiftCardOverride = GiftCardOverride.AUTO,
    min_gift_card_amount: Decimal = Decimal("1.00"),
) -> tuple[tuple[SettlementMethodEnum, ...], str | None]:
    """Which methods to show for ``surplus`` given a (possibly unknown) float."""
    surplus = round2(surplus)
    if surplus < CENT:
        return (), "Nothing has been collected yet"
    if balance is None:
        reason = "Gift card float balance is unavailable"
    elif override == GiftCardOverride.HIDE:
        reason = "Gift cards are disabled by an administrator"
    elif surplus < min_gift_card_amount:
        reason = f"Gift cards require at least {min_gift_card_amount:.2f}"
    elif override == GiftCardOverride.SHOW or round2(balance.amount) >= surplus:
        return (SettlementMethodEnum.GIFT_CARD, SettlementMethodEnum.CREDITS), None
    else:
        reason = f"Float balance ({balance.amount:.2f}) is lower than surplus ({surplus:.2f})"
    return (SettlementMethodEnum.CREDITS,), reason


def allocate_pro_rata(pool: Decimal, weights: list[Decimal]) -> list[Decimal]:
    """Split ``pool`` by ``weights`` in whole cents; shares always sum to ``pool``.

    Leftover cents go to the largest fractional remainders, earliest first on ties.
    """
    pool_cents = int(round2(pool) / CENT)
    total = sum(weights, ZERO)
    if pool_cents <= 0 or total <= ZERO:
        return [ZERO for _ in weights]
    raw = [Decimal(pool_cents) * weight / total for weight in weights]
    floors = [int(value) for value in raw]
    leftover = pool_cents - sum(floors)
    order = sorted(range(len(raw)), key=lambda i: (-(raw[i] - floors[i]), i))
    for i in order[:leftover]:
        floors[i] += 1
    return [Decimal(cents) * CENT for cents in floors]


def credit_allocations(contributions: list[Contribution], pool: Decimal) -> list[SettlementAllocation]:
    """Per-contributor credit shares, grouped by email (or name for guests without one)."""
    grouped: "OrderedDict[str, tuple[str, str | None, Decimal]]" = OrderedDict()
    for contribution in contributions:
        key = contribution.contributor_email or f"name:{contribution.contributor_name}"
        name, email, subtotal = grouped.get(
            key, (contribution.contributor_name, contribution.contributor_email, ZERO)
        )
        grouped[key] = (name, email, subtotal + money(contribution.amount))
    entries = list(grouped.values())
    shares = allocate_pro_rata(pool, [subtotal for _, _, subtotal in entries])
    return [
        SettlementAllocation(contributor_name=name, contributor_email=email, amount=share)
        for (name, email, _), share in zip(entries, shares)
        if share > ZERO
    ]


class SettlementEngine:
    def __init__(
        self,
        db: AsyncSession,
        gateway: FloatBalanceGateway,
        override: GiftCardOverride | str | None = None,
        min_gift_card_amount: Decimal | None = None,
        ledger: ContributionLedger | None = None,
    ) -> None:
        self._db = db
        self._gateway = gateway
        self._override = GiftCardOverride(override or settings.gift_card_override)
        self._min_gift_card_amount = round2(
            min_gift_card_amount if min_gift_card_amount is not None else settings.gift_card_min_amount
        )
        self._ledger = ledger or ContributionLedger(db)

    async def _load_gift(self, gift_id: int, requested_by: int | None = None) -> Gift:
        gift = await self._db.get(Gift, gift_id, populate_existing=True)
        if gift is None:
            raise GiftNotFound()
        if requested_by is not None and gift.organizer_id != requested_by:
            raise NotGiftOrganizer()
        return gift

    async def _try_balance(self, gift_id: int) -> FloatBalance | None:
        try:
            return await self._gateway.get_balance()
        except UpstreamUnavailable as exc:
            logger.warning("Float balance unavailable; offering credits only gift_id=%s error=%s", gift_id, exc)
            return None

    async def offer(self, gift_id: int, requested_by: int | None = None) -> SettlementOffer:
        gift = await self._load_gift(gift_id, requested_by)
        surplus = await self._ledger.total_for(gift_id)
        if gift.status == GiftStatusEnum.SETTLED.value:
            return SettlementOffer(gift_id=gift_id, state=DecisionState.SETTLED, surplus=surplus, methods=())
        if surplus < CENT:
            return SettlementOffer(
                gift_id=gift_id,
                state=DecisionState.COLLECTING,
                surplus=surplus,
                methods=(),
                gift_card_hidden_reason="Nothing has been collected yet",
            )

        balance = await self._try_balance(gift_id)
        methods, reason = decide_methods(surplus, balance, self._override, self._min_gift_card_amount)
        state = (
            DecisionState.ELIGIBLE_BOTH
            if SettlementMethodEnum.GIFT_CARD in methods
            else DecisionState.ELIGIBLE_CREDITS
        )
        logger.info(
            "Settlement offer gift_id=%s surplus=%s balance=%s override=%s methods=%s",
            gift_id,
            surplus,
            balance.amount if balance else None,
            self._override.value,
            ",".join(m.value for m in methods),
        )
        return SettlementOffer(
            gift_id=gift_id,
            state=state,
            surplus=surplus,
            methods=methods,
            float_balance=balance.amount if balance else None,
            currency_code=balance.currency_code if balance else gift.currency_code,
            gift_card_hidden_reason=reason,
        )

    async def _confirm_gift_card_funding(self, gift_id: int, surplus: Decimal) -> FloatBalance:
        if self._override == GiftCardOverride.HIDE:
            raise SettlementMethodUnavailable("Gift cards are disabled by an administrator")
        if surplus < self._min_gift_card_amount:
            raise SettlementMethodUnavailable(f"Gift cards require at least {self._min_gift_card_amount:.2f}")
        try:
            balance = await self._gateway.get_balance()
        except UpstreamUnavailable:
            raise SettlementMethodUnavailable("Gift card float balance could not be confirmed") from None
        if round2(balance.amount) < surplus:
            raise SettlementMethodUnavailable("Gift card float balance is lower than the amount to settle")
        return balance

    def _reject(self, gift_id: int, method: SettlementMethodEnum, requested_by: int, reason: str) -> None:
        audit_log(
            AuditAction.SETTLEMENT_REJECTED,
            user_id=requested_by,
            details={"gift_id": gift_id, "method": method.value, "reason": reason},
            success=False,
        )

    async def settle(
        self,
        gift_id: int,
        method: SettlementMethodEnum | str,
        requested_by: int,
    ) -> Settlement:
        method = SettlementMethodEnum(method)
        gift = await self._load_gift(gift_id, requested_by)
        if gift.status == GiftStatusEnum.SETTLED.value:
            self._reject(gift_id, method, requested_by, "already settled")
            raise AlreadySettled()

        surplus = await self._ledger.total_for(gift_id)
        if surplus < CENT:
            self._reject(gift_id, method, requested_by, "nothing collected")
            raise SettlementMethodUnavailable("Nothing has been collected yet")

        balance: FloatBalance | None = None
        if method == SettlementMethodEnum.GIFT_CARD:
            try:
                balance = await self._confirm_gift_card_funding(gift_id, surplus)
            except SettlementMethodUnavailable as exc:
                self._reject(gift_id, method, requested_by, exc.detail)
                raise

        try:
            swapped = await self._db.execute(
                update(Gift)
                .where(Gift.id == gift_id, Gift.status.in_(SETTLEABLE_GIFT_STATUSES))
                .values(status=GiftStatusEnum.SETTLED.value)
                .returning(Gift.collected_total, Gift.currency_code)
                .execution_options(synchronize_session=False)
            )
            row = swapped.first()
            if row is None:
                await self._db.rollback()
                self._reject(gift_id, method, requested_by, "lost settlement race")
                raise AlreadySettled()

            payable = money(row.collected_total)
            if balance is not None and payable > round2(balance.amount):
                # a contribution landed after the float check
                await self._db.rollback()
                self._reject(gift_id, method, requested_by, "surplus grew past float balance")
                raise SettlementMethodUnavailable("Gift card float balance is lower than the amount to settle")

            settlement = Settlement(
                gift_id=gift_id,
                method=method.value,
                payable_amount=payable,
                float_balance=round2(balance.amount) if balance is not None else None,
                currency_code=balance.currency_code if balance is not None else row.currency_code,
                created_by=requested_by,
            )
            settlement.allocations = (
                credit_allocations(await self._ledger.list_for(gift_id), payable)
                if method == SettlementMethodEnum.CREDITS
                else []
            )
            self._db.add(settlement)
            await self._db.commit()
        except IntegrityError:
            await self._db.rollback()
            self._reject(gift_id, method, requested_by, "duplicate settlement row")
            raise AlreadySettled() from None
        except Exception:
            await self._db.rollback()
            raise

        audit_log(
            AuditAction.SETTLEMENT_CREATE,
            user_id=requested_by,
            details={
                "gift_id": gift_id,
                "settlement_id": settlement.id,
                "method": method.value,
                "payable_amount": str(payable),
                "float_balance": str(settlement.float_balance) if settlement.float_balance is not None else None,
            },
        )
        logger.info(
            "Gift settled gift_id=%s settlement_id=%s method=%s payable=%s balance=%s",
            gift_id,
            settlement.id,
            method.value,
            payable,
            settlement.float_balance,
        )
        return settlement

    async def history(self, gift_id: int, requested_by: int | None = None) -> list[Settlement]:
        await self._load_gift(gift_id, requested_by)
        result = await self._db.execute(
            select(Settlement)
            .options(selectinload(Settlement.allocations))
            .where(Settlement.gift_id == gift_id)
            .order_by(Settlement.created_at.desc())
        )
        return list(result.scalars().all())

    async def get(self, gift_id: int, settlement_id: int, requested_by: int | None = None) -> Settlement:
        await self._load_gift(gift_id, requested_by)
        result = await self._db.execute(
            select(Settlement)
            .options(selectinload(Settlement.allocations))
            .where(Settlement.id == settlement_id, Settlement.gift_id == gift_id)
        )
        settlement = result.scalar_one_or_none()
        if settlement is None:
            raise SettlementNotFound()
        return settlement
