import logging
from decimal import Decimal

from fastapi import APIRouter, Request, status

from giftpool.api.deps import CurrentUserIdDep, DbSessionDep, OptionalUserIdDep
from giftpool.core.audit import AuditAction, audit_log
from giftpool.core.errors import GiftNotFound
from giftpool.core.money import as_float, money, round2
from giftpool.models.models import Contribution, Gift
from giftpool.schemas.gift import (
    ContributionCreate,
    ContributionCreated,
    ContributionList,
    ContributionPublic,
    ContributionReceipt,
    GiftCreate,
    GiftProgress,
    GiftPublic,
)
from giftpool.services.ledger import ContributionLedger, Contributor, as_utc

logger = logging.getLogger("giftpool.gifts")

router = APIRouter(tags=["gifts"])


def _serialize_gift(gift: Gift) -> GiftPublic:
    collected = money(gift.collected_total)
    target = money(gift.target_amount) if gift.target_amount is not None else None
    percent = 0.0
    if target:
        percent = min(float(collected / target * 100), 100.0)
    return GiftPublic(
        id=gift.id,
        title=gift.title,
        organizer_id=gift.organizer_id,
        status=gift.status,
        target_amount=as_float(target) if target is not None else None,
        collected_total=as_float(collected),
        collected_percent=round(percent, 2),
        currency_code=gift.currency_code,
        deadline=as_utc(gift.deadline),
        created_at=gift.created_at,
    )


def _contributor_count(contributions: list[Contribution]) -> int:
    return len({c.contributor_email or f"name:{c.contributor_name}" for c in contributions})


@router.post("/gifts", response_model=GiftPublic, status_code=status.HTTP_201_CREATED)
async def create_gift(payload: GiftCreate, db: DbSessionDep, organizer_id: CurrentUserIdDep) -> GiftPublic:
    gift = Gift(
        organizer_id=organizer_id,
        title=payload.title,
        target_amount=round2(payload.target_amount) if payload.target_amount is not None else None,
        deadline=as_utc(payload.deadline),
        currency_code=payload.currency_code,
        collected_total=Decimal("0.00"),
    )
    db.add(gift)
    await db.commit()
    logger.info("Gift created gift_id=%s organizer_id=%s target=%s", gift.id, organizer_id, gift.target_amount)
    return _serialize_gift(gift)


@router.get("/gifts/{gift_id}", response_model=GiftPublic)
async def get_gift(gift_id: int, db: DbSessionDep) -> GiftPublic:
    gift = await db.get(Gift, gift_id)
    if gift is None:
        raise GiftNotFound()
    return _serialize_gift(gift)


@router.post("/contributions/create", response_model=ContributionCreated)
async def create_contribution(
    payload: ContributionCreate,
    request: Request,
    db: DbSessionDep,
    user_id: OptionalUserIdDep,
) -> ContributionCreated:
    ledger = ContributionLedger(db)
    contributor = Contributor(
        name=payload.contributor_name,
        email=str(payload.contributor_email) if payload.contributor_email else None,
        user_id=user_id,
    )
    contribution = await ledger.record(payload.gift_id, payload.amount, contributor, payload.message)
    recent = await ledger.list_for(payload.gift_id)
    total = await ledger.total_for(payload.gift_id)

    audit_log(
        AuditAction.CONTRIBUTION_RECORD,
        request=request,
        user_id=user_id,
        details={
            "gift_id": payload.gift_id,
            "contribution_id": contribution.id,
            "amount": str(contribution.amount),
            "guest": contribution.is_guest,
        },
    )
    return ContributionCreated(
        contribution=ContributionReceipt.model_validate(contribution),
        gift_progress=GiftProgress(
            total_contributions=as_float(total),
            contributor_count=_contributor_count(recent),
        ),
        message="Thank you for your contribution! The organizer will be notified.",
    )


@router.get("/gifts/{gift_id}/contributions", response_model=ContributionList)
async def list_contributions(gift_id: int, db: DbSessionDep) -> ContributionList:
    gift = await db.get(Gift, gift_id)
    if gift is None:
        raise GiftNotFound()
    ledger = ContributionLedger(db)
    contributions = await ledger.list_for(gift_id)
    total = await ledger.total_for(gift_id)
    return ContributionList(
        gift_id=gift_id,
        contributions=[ContributionPublic.model_validate(c) for c in reversed(contributions)],
        total_amount=as_float(total),
        contributor_count=_contributor_count(contributions),
    )
