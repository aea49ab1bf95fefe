"""
Card processing fee model (2.9% + $0.30).

``gross_for_net`` gives the amount to charge so that exactly ``net`` is left
once the processor has taken its cut; ``net_for_gross`` goes the other way.
Credits payouts are not fee-reduced: contributors already paid the fee when
they were charged.
"""
from dataclasses import dataclass
from decimal import Decimal

from giftpool.core.config import settings
from giftpool.core.errors import InvalidAmount
from giftpool.core.money import ZERO, Amount, round2


@dataclass(frozen=True)
class FeeSchedule:
    percent: Decimal
    fixed: Decimal

    @classmethod
    def from_settings(cls) -> "FeeSchedule":
        return cls(percent=Decimal(settings.fee_percent), fixed=Decimal(settings.fee_fixed))


@dataclass(frozen=True)
class FeeBreakdown:
    net: Decimal
    total_charged: Decimal
    fee: Decimal


DEFAULT_SCHEDULE = FeeSchedule(percent=Decimal("0.029"), fixed=Decimal("0.30"))


def _non_negative(value: Amount) -> Decimal:
    amount = round2(value)
    if amount < ZERO:
        raise InvalidAmount("Amount must not be negative")
    return amount


def gross_for_net(net: Amount, schedule: FeeSchedule = DEFAULT_SCHEDULE) -> Decimal:
    amount = _non_negative(net)
    return round2((amount + schedule.fixed) / (Decimal(1) - schedule.percent))


def fee_for_gross(gross: Amount, schedule: FeeSchedule = DEFAULT_SCHEDULE) -> Decimal:
    amount = _non_negative(gross)
    return round2(amount * schedule.percent + schedule.fixed)


def net_for_gross(gross: Amount, schedule: FeeSchedule = DEFAULT_SCHEDULE) -> Decimal:
    amount = _non_negative(gross)
    return max(ZERO, round2(amount - fee_for_gross(amount, schedule)))


def quote(amount: Amount, fee_covered: bool, schedule: FeeSchedule = DEFAULT_SCHEDULE) -> FeeBreakdown:
    """What the contributor is charged and what the gift receives.

    With ``fee_covered`` the contributor pays the fee on top and the gift
    receives ``amount``; otherwise the fee comes out of ``amount``.
    """
    base = _non_negative(amount)
    if fee_covered:
        total = gross_for_net(base, schedule)
        return FeeBreakdown(net=base, total_charged=total, fee=round2(total - base))
    fee = fee_for_gross(base, schedule)
    return FeeBreakdown(net=max(ZERO, round2(base - fee)), total_charged=base, fee=fee)
