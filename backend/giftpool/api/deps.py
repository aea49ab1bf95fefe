from collections.abc import Awaitable, Callable
from typing import Annotated
import logging

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from giftpool.core.audit import AuditAction, audit_log
from giftpool.core.config import settings
from giftpool.core.errors import Unauthorized
from giftpool.core.security import bearer_token, decode_access_token, verify_shared_secret
from giftpool.db.session import get_db
from giftpool.integrations.reloadly import FloatBalance, FloatBalanceGateway
from giftpool.integrations.slack import SlackNotifier, slack_notifier
from giftpool.services.float_balance import CachedFloatBalanceGateway, float_gateway


DbSessionDep = Annotated[AsyncSession, Depends(get_db)]
logger = logging.getLogger("giftpool.auth")


def _user_id_from_token(token: str | None) -> int | None:
    if not token:
        return None
    payload = decode_access_token(token)
    if not payload or "sub" not in payload:
        return None
    try:
        return int(payload["sub"])
    except (TypeError, ValueError):
        return None


async def get_current_user_id(
    request: Request,
    authorization: str | None = Header(default=None),
) -> int:
    token = bearer_token(authorization)
    if not token:
        logger.info(
            "Auth token missing path=%s ip=%s",
            request.url.path,
            request.client.host if request.client else None,
        )
        raise Unauthorized("Not authenticated")
    user_id = _user_id_from_token(token)
    if user_id is None:
        logger.info("Auth token invalid path=%s", request.url.path)
        raise Unauthorized("Invalid token")
    return user_id


async def get_optional_user_id(authorization: str | None = Header(default=None)) -> int | None:
    return _user_id_from_token(bearer_token(authorization))


async def require_cron_secret(
    request: Request,
    authorization: str | None = Header(default=None),
) -> None:
    if not verify_shared_secret(bearer_token(authorization), settings.cron_secret):
        audit_log(
            AuditAction.CRON_UNAUTHORIZED,
            request=request,
            details={"path": request.url.path, "authorization": authorization},
            success=False,
        )
        raise Unauthorized()


def get_float_gateway() -> CachedFloatBalanceGateway:
    return float_gateway


def get_balance_fetcher() -> Callable[[], Awaitable[FloatBalance]]:
    """Uncached read for the cron check; it also refreshes the shared snapshot."""
    return float_gateway.refresh


def get_notifier() -> SlackNotifier:
    return slack_notifier


CurrentUserIdDep = Annotated[int, Depends(get_current_user_id)]
OptionalUserIdDep = Annotated[int | None, Depends(get_optional_user_id)]
FloatGatewayDep = Annotated[FloatBalanceGateway, Depends(get_float_gateway)]
BalanceFetcherDep = Annotated[Callable[[], Awaitable[FloatBalance]], Depends(get_balance_fetcher)]
NotifierDep = Annotated[SlackNotifier, Depends(get_notifier)]
