"""
Batch application of pending actions per symbol.
"""
import asyncio
import pytest
from datetime import date
from decimal import Decimal

from ca_engine.db.models import CorporateActionStatus
from ca_engine.corporate_actions.lots import SqlLotHistoryProvider
from ca_engine.corporate_actions.service import CorporateActionEngine


class ShuffledOnceProvider(SqlLotHistoryProvider):
    """Returns lots newest first on the first call only"""

    def __init__(self, db):
        super().__init__(db)
        self.calls = 0

    async def lots_for_symbol(self, symbol_id, up_to):
        lots = await super().lots_for_symbol(symbol_id, up_to)
        self.calls += 1
        if self.calls == 1:
            return list(reversed(lots))
        return lots


@pytest.mark.asyncio
class TestBatchApplyPending:

    async def test_split_then_dividend(self, engine, instruments, acme_lots, action_attrs):
        # Created out of order; ex-date decides
        dividend = await engine.create_action(action_attrs("cash_dividend", ex_date=date(2024, 6, 1)))
        split = await engine.create_action(action_attrs("stock_split", ex_date=date(2024, 5, 1)))

        summary = await engine.batch_apply_pending(instruments["ACME"].id)

        assert summary.actions_processed == 2
        assert summary.actions_applied == 2
        assert summary.total_adjustments == 4
        assert summary.failures == []
        assert summary.cancelled is False

        split = await engine.get_action(split.id)
        dividend = await engine.get_action(dividend.id)
        assert split.status == CorporateActionStatus.APPLIED
        assert dividend.status == CorporateActionStatus.APPLIED
        assert split.applied_at < dividend.applied_at

        adjustments = await engine.adjustments_for(dividend.id)
        assert [a.total_dividend for a in adjustments] == [Decimal("100"), Decimal("50")]

    async def test_same_ex_date_in_creation_order(self, engine, instruments, acme_lots, action_attrs):
        first = await engine.create_action(action_attrs("stock_split"))
        second = await engine.create_action(action_attrs("cash_dividend"))

        summary = await engine.batch_apply_pending(instruments["ACME"].id)

        assert [result.corporate_action_id for result in summary.applied] == [first.id, second.id]

    async def test_failures_are_collected(self, engine, instruments, acme_lots, action_attrs):
        symbol_id = instruments["ACME"].id
        split = await engine.create_action(action_attrs("stock_split", ex_date=date(2024, 4, 1)))
        spinoff = await engine.create_action(action_attrs("spinoff", ex_date=date(2024, 5, 1)))
        future = await engine.create_action(action_attrs("stock_split", ex_date=date(2030, 1, 1)))
        dividend = await engine.create_action(action_attrs("cash_dividend", ex_date=date(2024, 6, 1)))

        summary = await engine.batch_apply_pending(symbol_id, applied_by="batch")

        assert summary.actions_processed == 4
        assert [f.corporate_action_id for f in summary.failures] == [spinoff.id, future.id]
        failed = {f.corporate_action_id: f for f in summary.failures}
        assert set(failed) == {spinoff.id, future.id}
        assert failed[spinoff.id].code == "unsupported_type"
        assert failed[future.id].code == "invalid_state"

        assert (await engine.get_action(split.id)).status == CorporateActionStatus.APPLIED
        assert (await engine.get_action(dividend.id)).status == CorporateActionStatus.APPLIED
        assert (await engine.get_action(spinoff.id)).status == CorporateActionStatus.PENDING
        assert [a.id for a in await engine.list_pending(symbol_id)] == [spinoff.id, future.id]

    async def test_rolled_back_failure_does_not_stop_batch(
        self, db_session, fixed_clock, instruments, acme_lots, action_attrs
    ):
        engine = CorporateActionEngine(
            db_session, lot_provider=ShuffledOnceProvider(db_session), clock=fixed_clock
        )
        split = await engine.create_action(action_attrs("stock_split", ex_date=date(2024, 5, 1)))
        dividend = await engine.create_action(action_attrs("cash_dividend", ex_date=date(2024, 6, 1)))
        split_id, dividend_id = split.id, dividend.id

        summary = await engine.batch_apply_pending(instruments["ACME"].id)

        assert summary.actions_processed == 2
        assert [f.corporate_action_id for f in summary.failures] == [split_id]
        assert summary.failures[0].code == "lot_ordering"
        assert summary.failures[0].action_type == "stock_split"
        assert [r.corporate_action_id for r in summary.applied] == [dividend_id]
        assert summary.total_adjustments == 2

        assert (await engine.get_action(split_id)).status == CorporateActionStatus.PENDING
        assert (await engine.get_action(dividend_id)).status == CorporateActionStatus.APPLIED
        assert await engine.adjustments_for(split_id) == []

    async def test_cancel_event_stops_before_next_action(self, engine, instruments, acme_lots, action_attrs):
        await engine.create_action(action_attrs("stock_split"))
        cancel_event = asyncio.Event()
        cancel_event.set()

        summary = await engine.batch_apply_pending(instruments["ACME"].id, cancel_event=cancel_event)

        assert summary.cancelled is True
        assert summary.actions_processed == 0
        assert len(await engine.list_pending()) == 1

    async def test_other_symbols_untouched(self, engine, instruments, acme_lots, action_attrs):
        other = await engine.create_action(action_attrs("stock_split", symbol_id=instruments["OTHER"].id))

        summary = await engine.batch_apply_pending(instruments["ACME"].id)

        assert summary.actions_processed == 0
        assert (await engine.get_action(other.id)).status == CorporateActionStatus.PENDING


@pytest.mark.asyncio
async def test_apply_due_runs_every_symbol(engine, instruments, acme_lots, make_lot, action_attrs):
    await make_lot(instruments["OTHER"], date(2024, 1, 2), "10", "10")
    await engine.create_action(action_attrs("stock_split"))
    await engine.create_action(action_attrs("cash_dividend", symbol_id=instruments["OTHER"].id))
    await engine.create_action(action_attrs("cash_dividend", ex_date=date(2024, 12, 1)))

    summaries = await engine.apply_due(date(2024, 7, 1), applied_by="beat")

    assert sorted(s.symbol_id for s in summaries) == sorted([instruments["ACME"].id, instruments["OTHER"].id])
    assert sum(s.total_adjustments for s in summaries) == 3
    # Not yet due
    assert len(await engine.list_pending()) == 1
