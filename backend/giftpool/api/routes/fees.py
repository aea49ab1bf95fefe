from fastapi import APIRouter

from giftpool.core.fees import FeeSchedule, quote
from giftpool.core.money import as_float
from giftpool.schemas.settlement import FeeQuotePublic, FeeQuoteRequest

router = APIRouter(prefix="/fees", tags=["fees"])


@router.post("/quote", response_model=FeeQuotePublic)
async def fee_quote(payload: FeeQuoteRequest) -> FeeQuotePublic:
    breakdown = quote(payload.amount, payload.fee_covered, FeeSchedule.from_settings())
    return FeeQuotePublic(
        net=as_float(breakdown.net),
        total_charged=as_float(breakdown.total_charged),
        fee=as_float(breakdown.fee),
    )
