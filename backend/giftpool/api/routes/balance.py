import logging

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from giftpool.api.deps import (
    BalanceFetcherDep,
    DbSessionDep,
    FloatGatewayDep,
    NotifierDep,
    require_cron_secret,
)
from giftpool.core.errors import InvalidAmount, UpstreamUnavailable
from giftpool.core.money import ZERO, as_float, round2, to_decimal
from giftpool.schemas.settlement import (
    BalanceCheckPublic,
    FloatBalancePublic,
    GiftCardCapacity,
    ThresholdsPublic,
)
from giftpool.services.alerting import BalanceAlertService

logger = logging.getLogger("giftpool.float_balance")

router = APIRouter(tags=["float"])


@router.get("/gifts/{gift_id}/float-balance", response_model=GiftCardCapacity)
async def gift_card_capacity(
    gift_id: int,
    gateway: FloatGatewayDep,
    amount: str | None = Query(default=None),
):
    """Whether the float can pay a gift card of ``amount`` for this gift."""
    if amount is None:
        raise InvalidAmount("Query param 'amount' (number >= 0) is required")
    requested = round2(to_decimal(amount))
    if requested < ZERO:
        raise InvalidAmount("Query param 'amount' (number >= 0) is required")

    try:
        balance = await gateway.get_balance()
    except UpstreamUnavailable as exc:
        logger.warning("Gift card capacity unknown gift_id=%s requested=%s error=%s", gift_id, requested, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "canFulfillGiftCard": False},
        )

    can_fulfill = round2(balance.amount) >= requested
    logger.info(
        "Gift card capacity gift_id=%s requested=%s balance=%s can_fulfill=%s",
        gift_id,
        requested,
        balance.amount,
        can_fulfill,
    )
    return GiftCardCapacity(
        balance=as_float(balance.amount),
        currency_code=balance.currency_code,
        requested_amount=as_float(requested),
        can_fulfill_gift_card=can_fulfill,
    )


@router.get("/float/balance", response_model=FloatBalancePublic)
async def float_balance(gateway: FloatGatewayDep) -> FloatBalancePublic:
    balance = await gateway.get_balance()
    return FloatBalancePublic(
        balance=as_float(balance.amount),
        currency_code=balance.currency_code,
        fetched_at=balance.fetched_at,
    )


@router.get(
    "/cron/check-balance",
    response_model=BalanceCheckPublic,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_cron_secret)],
)
async def check_balance(
    db: DbSessionDep,
    fetch_balance: BalanceFetcherDep,
    notifier: NotifierDep,
) -> BalanceCheckPublic:
    service = BalanceAlertService(db, fetch_balance, notifier)
    result = await service.run()
    return BalanceCheckPublic(
        balance=as_float(result.balance.amount),
        tier=result.tier,
        alerted=result.alerted,
        thresholds=ThresholdsPublic(
            low=as_float(service.thresholds.low),
            critical=as_float(service.thresholds.critical),
        ),
    )
