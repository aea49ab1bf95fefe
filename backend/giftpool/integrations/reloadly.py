"""
Reloadly gift card API client, limited to what settlement needs: the float.

The float is the operator's prepaid balance used to fund issued gift cards.
OAuth2 client-credentials tokens are cached until shortly before expiry.
Every request is bounded by ``float_fetch_timeout_seconds``; transport errors,
timeouts and 5xx answers are retried with exponential backoff. Anything that
still fails surfaces as ``UpstreamUnavailable``, never as a zero balance.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol

import httpx

from giftpool.core.config import settings
from giftpool.core.errors import InvalidAmount, UpstreamUnavailable
from giftpool.core.money import round2


logger = logging.getLogger("giftpool.reloadly")

TOKEN_REFRESH_MARGIN_S = 60.0
ACCEPT_HEADER = "application/com.reloadly.giftcards-v1+json"


@dataclass(frozen=True)
class FloatBalance:
    amount: Decimal
    currency_code: str
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def age_seconds(self, now: datetime | None = None) -> float:
        now = now or datetime.now(timezone.utc)
        return max(0.0, (now - self.fetched_at).total_seconds())

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "amount": str(self.amount),
            "currency_code": self.currency_code,
            "fetched_at": self.fetched_at.isoformat(),
        }

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> "FloatBalance":
        return cls(
            amount=round2(data["amount"]),
            currency_code=str(data["currency_code"]),
            fetched_at=datetime.fromisoformat(data["fetched_at"]),
        )


class FloatBalanceGateway(Protocol):
    async def get_balance(self) -> FloatBalance: ...


class _RetryableStatus(Exception):
    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        super().__init__(f"upstream status {response.status_code}")


class ReloadlyClient:
    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        base_url: str | None = None,
        auth_url: str | None = None,
        audience: str | None = None,
        timeout: float | None = None,
        retries: int | None = None,
        backoff: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client_id = (client_id if client_id is not None else settings.reloadly_client_id).strip()
        self._client_secret = (
            client_secret if client_secret is not None else settings.reloadly_client_secret
        ).strip()
        self._base_url = (base_url or settings.reloadly_base_url).rstrip("/")
        self._auth_url = auth_url or settings.reloadly_auth_url
        self._audience = audience or settings.reloadly_audience
        self._timeout = timeout if timeout is not None else settings.float_fetch_timeout_seconds
        self._retries = retries if retries is not None else settings.float_fetch_retries
        self._backoff = backoff if backoff is not None else settings.float_fetch_backoff_seconds
        self._transport = transport
        self._token: str | None = None
        self._token_expires_monotonic = 0.0
        self._token_lock = asyncio.Lock()

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=httpx.Timeout(self._timeout), transport=self._transport)

    async def _send_with_retry(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        attempts = 0
        while True:
            try:
                async with self._http() as client:
                    response = await client.request(method, url, **kwargs)
                if response.status_code >= 500:
                    raise _RetryableStatus(response)
                return response
            except (httpx.TransportError, _RetryableStatus) as exc:
                attempts += 1
                if attempts > self._retries:
                    logger.warning(
                        "Reloadly request failed method=%s url=%s attempts=%s error=%s",
                        method,
                        url,
                        attempts,
                        exc,
                    )
                    raise UpstreamUnavailable("Gift card provider is unreachable") from exc
                await asyncio.sleep(self._backoff * 2 ** (attempts - 1))

    async def get_access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_monotonic - TOKEN_REFRESH_MARGIN_S:
            return self._token
        if not self._client_id or not self._client_secret:
            raise UpstreamUnavailable("Reloadly credentials are not configured")
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_monotonic - TOKEN_REFRESH_MARGIN_S:
                return self._token
            response = await self._send_with_retry(
                "POST",
                self._auth_url,
                json={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "grant_type": "client_credentials",
                    "audience": self._audience,
                },
            )
            data = _json_or_empty(response)
            if response.status_code >= 400:
                message = data.get("error_description") or data.get("message") or response.reason_phrase
                logger.warning("Reloadly auth failed status=%s message=%s", response.status_code, message)
                raise UpstreamUnavailable("Gift card provider authentication failed")
            token = data.get("access_token")
            if not token:
                raise UpstreamUnavailable("Gift card provider returned no access token")
            try:
                expires_in = float(data.get("expires_in") or 86400)
            except (TypeError, ValueError):
                expires_in = 86400.0
            self._token = str(token)
            self._token_expires_monotonic = time.monotonic() + expires_in
            return self._token

    async def get_balance(self) -> FloatBalance:
        token = await self.get_access_token()
        response = await self._send_with_retry(
            "GET",
            f"{self._base_url}/accounts/balance",
            headers={
                "Accept": ACCEPT_HEADER,
                "Authorization": f"Bearer {token}",
            },
        )
        if response.status_code == 401:
            # token revoked early; the next call fetches a fresh one
            self._token = None
        if response.status_code >= 400:
            logger.warning("Reloadly balance request rejected status=%s", response.status_code)
            raise UpstreamUnavailable("Gift card provider rejected the balance request")
        data = _json_or_empty(response)
        raw_amount = data.get("balance", data.get("float"))
        try:
            amount = round2(raw_amount)
        except InvalidAmount:
            logger.warning("Reloadly balance payload malformed keys=%s", sorted(data))
            raise UpstreamUnavailable("Gift card provider returned a malformed balance") from None
        currency = str(data.get("currencyCode") or data.get("currency") or "USD")
        balance = FloatBalance(amount=amount, currency_code=currency)
        logger.info("Reloadly float fetched amount=%s currency=%s", balance.amount, balance.currency_code)
        return balance


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


reloadly_client = ReloadlyClient()
