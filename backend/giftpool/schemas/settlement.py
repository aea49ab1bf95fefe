from datetime import datetime
from decimal import Decimal

from pydantic import Field

from giftpool.models.models import AlertTierEnum, SettlementMethodEnum
from giftpool.schemas.base import CamelModel
from giftpool.services.settlement import DecisionState


class SettlementOfferPublic(CamelModel):
    gift_id: int
    state: DecisionState
    surplus: float
    methods: list[SettlementMethodEnum]
    float_balance: float | None = None
    currency_code: str | None = None
    gift_card_hidden_reason: str | None = None


class SettlementCreate(CamelModel):
    method: SettlementMethodEnum


class SettlementAllocationPublic(CamelModel):
    contributor_name: str
    contributor_email: str | None = None
    amount: float


class SettlementPublic(CamelModel):
    id: int
    gift_id: int
    method: SettlementMethodEnum
    payable_amount: float
    float_balance: float | None = None
    currency_code: str
    created_by: int
    created_at: datetime
    allocations: list[SettlementAllocationPublic] = []


class FloatBalancePublic(CamelModel):
    balance: float
    currency_code: str
    fetched_at: datetime


class GiftCardCapacity(CamelModel):
    balance: float
    currency_code: str
    requested_amount: float
    can_fulfill_gift_card: bool


class ThresholdsPublic(CamelModel):
    low: float
    critical: float


class BalanceCheckPublic(CamelModel):
    balance: float
    tier: AlertTierEnum
    alerted: AlertTierEnum | None = None
    thresholds: ThresholdsPublic


class FeeQuoteRequest(CamelModel):
    amount: Decimal = Field(ge=0)
    fee_covered: bool = True


class FeeQuotePublic(CamelModel):
    net: float
    total_charged: float
    fee: float
