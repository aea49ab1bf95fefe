import logging

from fastapi import APIRouter, Query, status
from fastapi.responses import RedirectResponse

from giftpool.api.deps import CurrentUserIdDep, DbSessionDep, FloatGatewayDep
from giftpool.core.config import settings
from giftpool.core.errors import UpstreamUnavailable
from giftpool.core.money import as_float, round2
from giftpool.schemas.settlement import SettlementCreate, SettlementOfferPublic, SettlementPublic
from giftpool.services.settlement import SettlementEngine, SettlementOffer

logger = logging.getLogger("giftpool.settlement")

router = APIRouter(prefix="/gifts/{gift_id}", tags=["settlements"])
redirect_router = APIRouter(tags=["settlements"])


def _serialize_offer(offer: SettlementOffer) -> SettlementOfferPublic:
    return SettlementOfferPublic(
        gift_id=offer.gift_id,
        state=offer.state,
        surplus=as_float(offer.surplus),
        methods=list(offer.methods),
        float_balance=as_float(offer.float_balance) if offer.float_balance is not None else None,
        currency_code=offer.currency_code,
        gift_card_hidden_reason=offer.gift_card_hidden_reason,
    )


@router.get("/settlement/options", response_model=SettlementOfferPublic)
async def settlement_options(
    gift_id: int,
    db: DbSessionDep,
    gateway: FloatGatewayDep,
    organizer_id: CurrentUserIdDep,
) -> SettlementOfferPublic:
    offer = await SettlementEngine(db, gateway).offer(gift_id, requested_by=organizer_id)
    return _serialize_offer(offer)


@router.post("/settlement", response_model=SettlementPublic, status_code=status.HTTP_201_CREATED)
async def settle_gift(
    gift_id: int,
    payload: SettlementCreate,
    db: DbSessionDep,
    gateway: FloatGatewayDep,
    organizer_id: CurrentUserIdDep,
) -> SettlementPublic:
    settlement = await SettlementEngine(db, gateway).settle(gift_id, payload.method, requested_by=organizer_id)
    return SettlementPublic.model_validate(settlement)


@router.get("/settlements", response_model=list[SettlementPublic])
async def list_settlements(
    gift_id: int,
    db: DbSessionDep,
    gateway: FloatGatewayDep,
    organizer_id: CurrentUserIdDep,
) -> list[SettlementPublic]:
    settlements = await SettlementEngine(db, gateway).history(gift_id, requested_by=organizer_id)
    return [SettlementPublic.model_validate(s) for s in settlements]


@router.get("/settlements/{settlement_id}", response_model=SettlementPublic)
async def get_settlement(
    gift_id: int,
    settlement_id: int,
    db: DbSessionDep,
    gateway: FloatGatewayDep,
    organizer_id: CurrentUserIdDep,
) -> SettlementPublic:
    settlement = await SettlementEngine(db, gateway).get(gift_id, settlement_id, requested_by=organizer_id)
    return SettlementPublic.model_validate(settlement)


@redirect_router.get("/settle", status_code=status.HTTP_307_TEMPORARY_REDIRECT)
async def settle_redirect(
    gateway: FloatGatewayDep,
    gift_id: int | None = Query(default=None, alias="giftId"),
) -> RedirectResponse:
    """Send the organizer to the gift-card flow when the float can pay anything at all."""
    base = settings.frontend_url.rstrip("/")
    try:
        balance = await gateway.get_balance()
    except UpstreamUnavailable as exc:
        logger.warning("Settle redirect falling back to credits gift_id=%s error=%s", gift_id, exc)
        balance = None

    if balance is not None and round2(balance.amount) >= round2(settings.gift_card_min_balance):
        path = "/settle/balance"
    else:
        path = "/settle/refund-credits"
    logger.info(
        "Settle redirect gift_id=%s balance=%s path=%s",
        gift_id,
        balance.amount if balance else None,
        path,
    )
    target = f"{base}{path}"
    if gift_id is not None:
        target = f"{target}?giftId={gift_id}"
    return RedirectResponse(target, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
