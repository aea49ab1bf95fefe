from datetime import datetime
from decimal import Decimal

from pydantic import EmailStr, Field, field_validator

from giftpool.models.models import ContributionStatusEnum, GiftStatusEnum
from giftpool.schemas.base import CamelModel


class GiftCreate(CamelModel):
    title: str = Field(min_length=2, max_length=120)
    target_amount: Decimal | None = Field(default=None, gt=0)
    deadline: datetime | None = None
    currency_code: str = Field(default="USD", min_length=3, max_length=3)

    @field_validator("title")
    @classmethod
    def _title_strip(cls, value: str) -> str:
        return value.strip()

    @field_validator("currency_code")
    @classmethod
    def _currency_upper(cls, value: str) -> str:
        return value.upper()


class GiftPublic(CamelModel):
    id: int
    title: str
    organizer_id: int
    status: GiftStatusEnum
    target_amount: float | None
    collected_total: float
    collected_percent: float
    currency_code: str
    deadline: datetime | None
    created_at: datetime


class ContributionCreate(CamelModel):
    gift_id: int
    # kept loose here so missing/non-positive amounts are answered with 400 by the ledger
    amount: Decimal | None = None
    contributor_name: str | None = Field(default=None, max_length=120)
    contributor_email: EmailStr | None = None
    message: str | None = Field(default=None, max_length=1000)

    @field_validator("contributor_email", mode="before")
    @classmethod
    def _blank_email(cls, value: str | None) -> str | None:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class ContributionPublic(CamelModel):
    id: int
    gift_id: int
    amount: float
    contributor_name: str
    message: str | None = None
    is_guest: bool
    status: ContributionStatusEnum
    created_at: datetime


class ContributionReceipt(ContributionPublic):
    charged_amount: float
    fee_amount: float


class GiftProgress(CamelModel):
    total_contributions: float
    contributor_count: int


class ContributionCreated(CamelModel):
    success: bool = True
    contribution: ContributionReceipt
    gift_progress: GiftProgress
    message: str


class ContributionList(CamelModel):
    gift_id: int
    contributions: list[ContributionPublic]
    total_amount: float
    contributor_count: int
