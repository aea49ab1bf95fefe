"""Slack incoming-webhook notifier for float balance alerts.

An empty ``SLACK_WEBHOOK_URL`` disables sending without raising.
"""
import asyncio
import logging
from decimal import Decimal

import httpx

from giftpool.core.config import settings
from giftpool.models.models import AlertTierEnum


logger = logging.getLogger("giftpool.slack")


TIER_MESSAGES = {
    AlertTierEnum.LOW: "Reloadly Balance Low: current float is ${balance}. Consider topping up soon.",
    AlertTierEnum.CRITICAL: "URGENT: Reloadly balance at ${balance}. Gift cards are now hidden from users!",
}


def format_alert(tier: AlertTierEnum, balance: Decimal) -> str:
    return TIER_MESSAGES[tier].format(balance=f"{balance:.2f}")


class SlackNotifier:
    def __init__(
        self,
        webhook_url: str | None = None,
        timeout: float | None = None,
        retries: int | None = None,
        backoff: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._webhook_url = (webhook_url if webhook_url is not None else settings.slack_webhook_url).strip()
        self._timeout = timeout if timeout is not None else settings.slack_timeout_seconds
        self._retries = retries if retries is not None else settings.slack_retries
        self._backoff = backoff
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self._webhook_url)

    async def send_balance_alert(self, tier: AlertTierEnum, balance: Decimal) -> bool:
        """Post one alert. Returns True only when Slack accepted it."""
        if not self.enabled:
            logger.info("Slack webhook not configured; alert tier=%s balance=%s not sent", tier.value, balance)
            return False
        text = format_alert(tier, balance)
        attempts = 0
        while True:
            try:
                async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                    response = await client.post(self._webhook_url, json={"text": text})
                if response.status_code < 400:
                    logger.info("Slack alert sent tier=%s balance=%s", tier.value, balance)
                    return True
                if response.status_code < 500 and response.status_code != 429:
                    logger.error(
                        "Slack rejected alert tier=%s status=%s body=%s",
                        tier.value,
                        response.status_code,
                        response.text[:200],
                    )
                    return False
                error: str = f"status={response.status_code}"
            except httpx.HTTPError as exc:
                error = str(exc) or type(exc).__name__
            attempts += 1
            if attempts > self._retries:
                logger.error("Slack alert failed tier=%s attempts=%s error=%s", tier.value, attempts, error)
                return False
            await asyncio.sleep(self._backoff * 2 ** (attempts - 1))


slack_notifier = SlackNotifier()
