"""
Float balance alerting.

The tier of a balance is ``CRITICAL`` below the critical threshold, ``LOW``
below the low threshold and ``OK`` otherwise. One alert is sent per entry
into a tier; while the balance stays inside that tier repeated checks stay
quiet, and recovering above a threshold re-arms it.

Alert flags live in the ``balance_alert_state`` table rather than in process
memory, so every worker sees the same episode. Two workers racing the same
check may both alert; that is accepted.
"""
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from giftpool.core.audit import AuditAction, audit_log
from giftpool.core.config import settings
from giftpool.core.money import round2
from giftpool.integrations.reloadly import FloatBalance
from giftpool.integrations.slack import SlackNotifier
from giftpool.models.models import AlertTierEnum, BalanceAlertState


logger = logging.getLogger("giftpool.alerting")


@dataclass(frozen=True)
class Thresholds:
    low: Decimal
    critical: Decimal

    @classmethod
    def from_settings(cls) -> "Thresholds":
        return cls(low=round2(settings.balance_threshold_low), critical=round2(settings.balance_threshold_critical))


@dataclass(frozen=True)
class AlertState:
    low_alerted: bool = False
    critical_alerted: bool = False

    def is_alerted(self, tier: AlertTierEnum) -> bool:
        if tier == AlertTierEnum.CRITICAL:
            return self.critical_alerted
        if tier == AlertTierEnum.LOW:
            return self.low_alerted
        return False

    def with_flag(self, tier: AlertTierEnum, value: bool) -> "AlertState":
        if tier == AlertTierEnum.CRITICAL:
            return replace(self, critical_alerted=value)
        if tier == AlertTierEnum.LOW:
            return replace(self, low_alerted=value)
        return self


@dataclass(frozen=True)
class AlertDecision:
    tier: AlertTierEnum
    alert: AlertTierEnum | None
    state: AlertState


@dataclass(frozen=True)
class BalanceCheckResult:
    balance: FloatBalance
    tier: AlertTierEnum
    alerted: AlertTierEnum | None


DEFAULT_THRESHOLDS = Thresholds(low=Decimal("50.00"), critical=Decimal("10.00"))


def classify_tier(amount: Decimal, thresholds: Thresholds = DEFAULT_THRESHOLDS) -> AlertTierEnum:
    value = round2(amount)
    if value < thresholds.critical:
        return AlertTierEnum.CRITICAL
    if value < thresholds.low:
        return AlertTierEnum.LOW
    return AlertTierEnum.OK


def evaluate_balance(
    amount: Decimal,
    state: AlertState,
    thresholds: Thresholds = DEFAULT_THRESHOLDS,
) -> AlertDecision:
    """Decide whether this reading starts a new alert episode.

    Every tier the balance is currently below is marked as alerted, so a
    direct drop to CRITICAL does not produce a LOW alert on the way back up.
    """
    tier = classify_tier(amount, thresholds)
    alert = tier if tier != AlertTierEnum.OK and not state.is_alerted(tier) else None
    new_state = AlertState(
        low_alerted=tier in (AlertTierEnum.LOW, AlertTierEnum.CRITICAL),
        critical_alerted=tier == AlertTierEnum.CRITICAL,
    )
    return AlertDecision(tier=tier, alert=alert, state=new_state)


async def load_alert_state(db: AsyncSession) -> AlertState:
    result = await db.execute(select(BalanceAlertState))
    flags = {row.tier: row.alerted for row in result.scalars().all()}
    return AlertState(
        low_alerted=flags.get(AlertTierEnum.LOW.value, False),
        critical_alerted=flags.get(AlertTierEnum.CRITICAL.value, False),
    )


async def save_alert_state(db: AsyncSession, state: AlertState) -> None:
    result = await db.execute(select(BalanceAlertState))
    rows = {row.tier: row for row in result.scalars().all()}
    for tier in (AlertTierEnum.LOW, AlertTierEnum.CRITICAL):
        alerted = state.is_alerted(tier)
        row = rows.get(tier.value)
        if row is None:
            db.add(BalanceAlertState(tier=tier.value, alerted=alerted))
        elif row.alerted != alerted:
            row.alerted = alerted
    await db.commit()


class BalanceAlertService:
    def __init__(
        self,
        db: AsyncSession,
        fetch_balance: Callable[[], Awaitable[FloatBalance]],
        notifier: SlackNotifier,
        thresholds: Thresholds | None = None,
    ) -> None:
        self._db = db
        self._fetch_balance = fetch_balance
        self._notifier = notifier
        self._thresholds = thresholds or Thresholds.from_settings()

    @property
    def thresholds(self) -> Thresholds:
        return self._thresholds

    async def run(self) -> BalanceCheckResult:
        # UpstreamUnavailable propagates: an unknown balance never alerts
        balance = await self._fetch_balance()
        previous = await load_alert_state(self._db)
        decision = evaluate_balance(balance.amount, previous, self._thresholds)
        state = decision.state
        alerted: AlertTierEnum | None = None

        if decision.alert is not None:
            delivered = await self._notifier.send_balance_alert(decision.alert, balance.amount)
            if delivered:
                alerted = decision.alert
            elif self._notifier.enabled:
                # leave the flag clear so the next run retries the alert
                state = state.with_flag(decision.alert, previous.is_alerted(decision.alert))
            audit_log(
                AuditAction.BALANCE_ALERT,
                details={
                    "tier": decision.alert.value,
                    "balance": str(balance.amount),
                    "delivered": delivered,
                },
                success=delivered or not self._notifier.enabled,
            )

        await save_alert_state(self._db, state)
        logger.info(
            "Balance check balance=%s currency=%s tier=%s alerted=%s",
            balance.amount,
            balance.currency_code,
            decision.tier.value,
            alerted.value if alerted else None,
        )
        return BalanceCheckResult(balance=balance, tier=decision.tier, alerted=alerted)
