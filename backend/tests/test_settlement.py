import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from giftpool.core.errors import AlreadySettled, GiftClosed, NotGiftOrganizer, SettlementMethodUnavailable
from giftpool.integrations.reloadly import FloatBalance
from giftpool.models.models import AlertTierEnum, Contribution, Gift, Settlement, SettlementMethodEnum
from giftpool.services.alerting import BalanceAlertService
from giftpool.services.ledger import ContributionLedger, Contributor
from giftpool.services.settlement import (
    DecisionState,
    GiftCardOverride,
    SettlementEngine,
    allocate_pro_rata,
    decide_methods,
)

from conftest import FakeGateway, FakeNotifier, make_gift


GIFT_CARD = SettlementMethodEnum.GIFT_CARD
CREDITS = SettlementMethodEnum.CREDITS


def _balance(amount: str) -> FloatBalance:
    return FloatBalance(amount=Decimal(amount), currency_code="USD")


async def _contribute(factory, gift_id: int, *amounts: str, email: str | None = None, name: str = "Ana"):
    for amount in amounts:
        async with factory() as db:
            await ContributionLedger(db).record(gift_id, amount, Contributor(name=name, email=email))


async def _settlement_count(factory, gift_id: int) -> int:
    async with factory() as db:
        result = await db.execute(select(func.count(Settlement.id)).where(Settlement.gift_id == gift_id))
        return result.scalar_one()


class TestDecideMethods:
    def test_covered_surplus_offers_both(self):
        methods, reason = decide_methods(Decimal("40.00"), _balance("100.00"))
        assert methods == (GIFT_CARD, CREDITS)
        assert reason is None

    def test_exactly_covered(self):
        methods, _ = decide_methods(Decimal("40.00"), _balance("40.00"))
        assert GIFT_CARD in methods

    def test_underfunded_float_offers_credits(self):
        methods, reason = decide_methods(Decimal("40.00"), _balance("25.00"))
        assert methods == (CREDITS,)
        assert "25.00" in reason

    def test_unknown_balance_offers_credits(self):
        methods, _ = decide_methods(Decimal("40.00"), None)
        assert methods == (CREDITS,)

    def test_nothing_collected(self):
        methods, _ = decide_methods(Decimal("0.00"), _balance("100.00"))
        assert methods == ()

    def test_below_gift_card_minimum(self):
        methods, _ = decide_methods(Decimal("0.50"), _balance("100.00"))
        assert methods == (CREDITS,)

    def test_hide_override(self):
        methods, _ = decide_methods(Decimal("40.00"), _balance("100.00"), GiftCardOverride.HIDE)
        assert methods == (CREDITS,)

    def test_show_override_ignores_shortfall(self):
        methods, _ = decide_methods(Decimal("40.00"), _balance("5.00"), GiftCardOverride.SHOW)
        assert methods == (GIFT_CARD, CREDITS)

    def test_show_override_never_applies_to_unknown_balance(self):
        methods, _ = decide_methods(Decimal("40.00"), None, GiftCardOverride.SHOW)
        assert methods == (CREDITS,)


class TestAllocateProRata:
    def test_shares_sum_to_pool(self):
        shares = allocate_pro_rata(Decimal("10.00"), [Decimal("1"), Decimal("1"), Decimal("1")])
        assert sum(shares) == Decimal("10.00")
        assert shares == [Decimal("3.34"), Decimal("3.33"), Decimal("3.33")]

    def test_proportional(self):
        shares = allocate_pro_rata(Decimal("40.00"), [Decimal("15"), Decimal("25")])
        assert shares == [Decimal("15.00"), Decimal("25.00")]

    def test_empty_pool(self):
        assert allocate_pro_rata(Decimal("0"), [Decimal("5")]) == [Decimal("0.00")]


@pytest.mark.anyio
async def test_offer_collecting_without_contributions(session_factory):
    gift_id = await make_gift(session_factory)
    gateway = FakeGateway("100.00")
    async with session_factory() as db:
        offer = await SettlementEngine(db, gateway).offer(gift_id)
    assert offer.state == DecisionState.COLLECTING
    assert offer.methods == ()
    assert gateway.calls == 0


@pytest.mark.anyio
async def test_offer_both_when_float_covers(session_factory):
    gift_id = await make_gift(session_factory)
    await _contribute(session_factory, gift_id, "15.00", "25.00")
    async with session_factory() as db:
        offer = await SettlementEngine(db, FakeGateway("100.00")).offer(gift_id, requested_by=1)
    assert offer.state == DecisionState.ELIGIBLE_BOTH
    assert offer.surplus == Decimal("40.00")
    assert offer.methods == (GIFT_CARD, CREDITS)
    assert offer.float_balance == Decimal("100.00")


@pytest.mark.anyio
async def test_offer_credits_only_when_float_short(session_factory):
    gift_id = await make_gift(session_factory)
    await _contribute(session_factory, gift_id, "40.00")
    async with session_factory() as db:
        offer = await SettlementEngine(db, FakeGateway("25.00")).offer(gift_id)
    assert offer.state == DecisionState.ELIGIBLE_CREDITS
    assert offer.methods == (CREDITS,)
    assert offer.gift_card_hidden_reason


@pytest.mark.anyio
async def test_offer_credits_only_when_upstream_down(session_factory):
    gift_id = await make_gift(session_factory)
    await _contribute(session_factory, gift_id, "40.00")
    async with session_factory() as db:
        offer = await SettlementEngine(db, FakeGateway(None)).offer(gift_id)
    assert offer.methods == (CREDITS,)
    assert offer.float_balance is None


@pytest.mark.anyio
async def test_offer_requires_organizer(session_factory):
    gift_id = await make_gift(session_factory, organizer_id=1)
    async with session_factory() as db:
        with pytest.raises(NotGiftOrganizer):
            await SettlementEngine(db, FakeGateway()).offer(gift_id, requested_by=2)


@pytest.mark.anyio
async def test_settle_gift_card(session_factory):
    gift_id = await make_gift(session_factory)
    await _contribute(session_factory, gift_id, "15.00", "25.00")
    async with session_factory() as db:
        settlement = await SettlementEngine(db, FakeGateway("100.00")).settle(gift_id, GIFT_CARD, requested_by=1)
    assert settlement.method == "gift_card"
    assert settlement.payable_amount == Decimal("40.00")
    assert settlement.float_balance == Decimal("100.00")

    async with session_factory() as db:
        gift = await db.get(Gift, gift_id)
        assert gift.status == "settled"
        offer = await SettlementEngine(db, FakeGateway("100.00")).offer(gift_id)
        assert offer.state == DecisionState.SETTLED
        assert offer.methods == ()


@pytest.mark.anyio
async def test_settle_credits_allocates_per_contributor(session_factory):
    gift_id = await make_gift(session_factory)
    await _contribute(session_factory, gift_id, "10.00", "5.00", email="ana@example.com", name="Ana")
    await _contribute(session_factory, gift_id, "25.00", email="ben@example.com", name="Ben")
    async with session_factory() as db:
        engine = SettlementEngine(db, FakeGateway(None))
        settlement = await engine.settle(gift_id, "credits", requested_by=1)
        stored = await engine.get(gift_id, settlement.id)
    assert settlement.payable_amount == Decimal("40.00")
    assert settlement.float_balance is None
    by_email = {a.contributor_email: a.amount for a in stored.allocations}
    assert by_email == {"ana@example.com": Decimal("15.00"), "ben@example.com": Decimal("25.00")}


@pytest.mark.anyio
async def test_gift_card_rejected_when_float_short(session_factory):
    gift_id = await make_gift(session_factory)
    await _contribute(session_factory, gift_id, "40.00")
    async with session_factory() as db:
        with pytest.raises(SettlementMethodUnavailable):
            await SettlementEngine(db, FakeGateway("25.00")).settle(gift_id, GIFT_CARD, requested_by=1)
    assert await _settlement_count(session_factory, gift_id) == 0


@pytest.mark.anyio
async def test_gift_card_rejected_when_balance_unknown_even_with_show(session_factory):
    gift_id = await make_gift(session_factory)
    await _contribute(session_factory, gift_id, "40.00")
    async with session_factory() as db:
        engine = SettlementEngine(db, FakeGateway(None), override=GiftCardOverride.SHOW)
        with pytest.raises(SettlementMethodUnavailable):
            await engine.settle(gift_id, GIFT_CARD, requested_by=1)
        gift = await db.get(Gift, gift_id, populate_existing=True)
        assert gift.status == "active"


@pytest.mark.anyio
async def test_settle_twice_raises_already_settled(session_factory):
    gift_id = await make_gift(session_factory)
    await _contribute(session_factory, gift_id, "40.00")
    async with session_factory() as db:
        await SettlementEngine(db, FakeGateway()).settle(gift_id, CREDITS, requested_by=1)
    async with session_factory() as db:
        with pytest.raises(AlreadySettled):
            await SettlementEngine(db, FakeGateway()).settle(gift_id, GIFT_CARD, requested_by=1)
    assert await _settlement_count(session_factory, gift_id) == 1


@pytest.mark.anyio
async def test_concurrent_settles_produce_one_settlement(session_factory):
    gift_id = await make_gift(session_factory)
    await _contribute(session_factory, gift_id, "40.00")

    async def attempt(method):
        async with session_factory() as db:
            return await SettlementEngine(db, FakeGateway("100.00")).settle(gift_id, method, requested_by=1)

    results = await asyncio.gather(attempt(GIFT_CARD), attempt(CREDITS), return_exceptions=True)
    settled = [r for r in results if isinstance(r, Settlement)]
    rejected = [r for r in results if isinstance(r, AlreadySettled)]
    assert len(settled) == 1
    assert len(rejected) == 1
    assert await _settlement_count(session_factory, gift_id) == 1


@pytest.mark.anyio
async def test_contribution_racing_settlement_is_included_or_rejected(session_factory):
    gift_id = await make_gift(session_factory)
    await _contribute(session_factory, gift_id, "20.00")

    async def contribute():
        async with session_factory() as db:
            return await ContributionLedger(db).record(gift_id, "15.00", Contributor(name="Late"))

    async def attempt(method):
        async with session_factory() as db:
            return await SettlementEngine(db, FakeGateway("100.00")).settle(gift_id, method, requested_by=1)

    results = await asyncio.gather(
        contribute(), attempt(GIFT_CARD), attempt(CREDITS), return_exceptions=True
    )
    recorded, *settle_results = results
    assert isinstance(recorded, (Contribution, GiftClosed))
    settled = [r for r in settle_results if isinstance(r, Settlement)]
    rejected = [r for r in settle_results if isinstance(r, AlreadySettled)]
    assert len(settled) == 1
    assert len(rejected) == 1
    assert await _settlement_count(session_factory, gift_id) == 1

    async with session_factory() as db:
        total = await ContributionLedger(db).total_for(gift_id)
    assert settled[0].payable_amount == total
    expected = Decimal("35.00") if isinstance(recorded, Contribution) else Decimal("20.00")
    assert total == expected


@pytest.mark.anyio
async def test_expired_gift_can_still_be_settled(session_factory):
    gift_id = await make_gift(session_factory)
    await _contribute(session_factory, gift_id, "20.00")
    async with session_factory() as db:
        gift = await db.get(Gift, gift_id)
        gift.status = "expired"
        await db.commit()
    async with session_factory() as db:
        settlement = await SettlementEngine(db, FakeGateway()).settle(gift_id, CREDITS, requested_by=1)
    assert settlement.payable_amount == Decimal("20.00")


@pytest.mark.anyio
async def test_nothing_collected_cannot_settle(session_factory):
    gift_id = await make_gift(session_factory)
    async with session_factory() as db:
        with pytest.raises(SettlementMethodUnavailable):
            await SettlementEngine(db, FakeGateway()).settle(gift_id, CREDITS, requested_by=1)


@pytest.mark.anyio
async def test_history_lists_settlement(session_factory):
    gift_id = await make_gift(session_factory)
    await _contribute(session_factory, gift_id, "40.00")
    async with session_factory() as db:
        engine = SettlementEngine(db, FakeGateway())
        settlement = await engine.settle(gift_id, CREDITS, requested_by=1)
        history = await engine.history(gift_id, requested_by=1)
    assert [s.id for s in history] == [settlement.id]


@pytest.mark.anyio
async def test_near_empty_float_alerts_and_offers_credits_only(session_factory):
    gift_id = await make_gift(session_factory)
    await _contribute(session_factory, gift_id, "20.00")
    gateway = FakeGateway("5.00")
    notifier = FakeNotifier()
    async with session_factory() as db:
        check = await BalanceAlertService(db, gateway.get_balance, notifier).run()
    async with session_factory() as db:
        offer = await SettlementEngine(db, gateway).offer(gift_id)

    assert check.tier == AlertTierEnum.CRITICAL
    assert check.alerted == AlertTierEnum.CRITICAL
    assert [tier for tier, _ in notifier.sent] == [AlertTierEnum.CRITICAL]
    assert offer.surplus == Decimal("20.00")
    assert offer.methods == (CREDITS,)
