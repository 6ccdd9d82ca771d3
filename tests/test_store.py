"""
Corporate action and adjustment persistence.
"""
import pytest
from datetime import date, datetime, timezone
from decimal import Decimal
from sqlalchemy.exc import IntegrityError

from ca_engine.db.models import AdjustmentType, CorporateActionStatus
from ca_engine.corporate_actions.errors import ErrorCode, StateError, ValidationError
from ca_engine.corporate_actions.store import CorporateActionStore, TransactionAdjustmentStore


@pytest.mark.asyncio
class TestCorporateActionStore:

    async def test_create_persists_pending_with_defaults(self, db_session, action_attrs):
        store = CorporateActionStore(db_session)
        action = await store.create(action_attrs("cash_dividend", description=None))

        assert action.id
        assert action.status == CorporateActionStatus.PENDING
        assert action.dividend_amount == Decimal("0.50")
        assert action.dividend_currency == "USD"
        assert action.qualified_dividend is False
        assert action.source == "manual"
        assert action.applied_at is None

    async def test_sequence_numbers_increase(self, db_session, action_attrs):
        store = CorporateActionStore(db_session)
        first = await store.create(action_attrs("stock_split"))
        second = await store.create(action_attrs("cash_dividend"))

        assert second.sequence_number == first.sequence_number + 1

    async def test_sequence_collision_retries_with_next_number(self, db_session, action_attrs, monkeypatch):
        store = CorporateActionStore(db_session)
        first_attrs = action_attrs("stock_split")
        second_attrs = action_attrs("cash_dividend")
        first = await store.create(first_attrs)
        taken = first.sequence_number

        next_number = store._next_sequence_number
        calls = []

        async def stale_then_fresh():
            calls.append(1)
            if len(calls) == 1:
                return taken
            return await next_number()

        monkeypatch.setattr(store, "_next_sequence_number", stale_then_fresh)
        second = await store.create(second_attrs)

        assert len(calls) == 2
        assert second.sequence_number == taken + 1

    async def test_sequence_numbers_are_unique(self, db_session, action_attrs, monkeypatch):
        store = CorporateActionStore(db_session)
        first = await store.create(action_attrs("stock_split"))
        taken = first.sequence_number
        attrs = action_attrs("cash_dividend")

        async def always_taken():
            return taken

        monkeypatch.setattr(store, "_next_sequence_number", always_taken)

        with pytest.raises(IntegrityError):
            await store.create(attrs)

        assert len(await store.pending()) == 1

    async def test_create_rejects_invalid_attrs(self, db_session, action_attrs):
        store = CorporateActionStore(db_session)

        with pytest.raises(ValidationError) as exc_info:
            await store.create(action_attrs("stock_split", ratio_to=Decimal("0")))
        assert "ratio_to" in exc_info.value.errors

        with pytest.raises(ValidationError) as exc_info:
            await store.create({**action_attrs("stock_split"), "status": "applied"})
        assert "status" in exc_info.value.errors

        assert await store.pending() == []

    async def test_get_or_raise_missing(self, db_session):
        store = CorporateActionStore(db_session)

        with pytest.raises(StateError) as exc_info:
            await store.get_or_raise("does-not-exist")

        assert exc_info.value.not_found
        assert exc_info.value.code == ErrorCode.NOT_FOUND

    async def test_queries(self, db_session, instruments, action_attrs):
        store = CorporateActionStore(db_session)
        other = instruments["OTHER"].id
        may = await store.create(action_attrs("stock_split", ex_date=date(2024, 5, 1)))
        june = await store.create(action_attrs("cash_dividend", ex_date=date(2024, 6, 1)))
        elsewhere = await store.create(action_attrs("cash_dividend", symbol_id=other, ex_date=date(2024, 5, 15)))

        by_symbol = await store.by_symbol(instruments["ACME"].id)
        assert [a.id for a in by_symbol] == [june.id, may.id]

        in_range = await store.by_date_range(date(2024, 5, 1), date(2024, 5, 31))
        assert [a.id for a in in_range] == [elsewhere.id, may.id]

        pending = await store.pending()
        assert [a.id for a in pending] == [may.id, elsewhere.id, june.id]

        assert await store.pending_symbol_ids(as_of=date(2024, 5, 10)) == [instruments["ACME"].id]

    async def test_date_range_must_be_ordered(self, db_session):
        store = CorporateActionStore(db_session)
        with pytest.raises(ValidationError):
            await store.by_date_range(date(2024, 6, 1), date(2024, 5, 1))

    async def test_pending_ties_broken_by_creation_order(self, db_session, action_attrs):
        store = CorporateActionStore(db_session)
        first = await store.create(action_attrs("cash_dividend"))
        second = await store.create(action_attrs("stock_split"))

        assert [a.id for a in await store.pending()] == [first.id, second.id]

    async def test_transition_is_conditional(self, db_session, action_attrs):
        store = CorporateActionStore(db_session)
        action = await store.create(action_attrs("stock_split"))

        await store.transition(action, CorporateActionStatus.PENDING, CorporateActionStatus.APPLIED)
        await db_session.commit()

        with pytest.raises(StateError):
            await store.transition(action, CorporateActionStatus.PENDING, CorporateActionStatus.APPLIED)

        reloaded = await store.get(action.id, refresh=True)
        assert reloaded.status == CorporateActionStatus.APPLIED

    async def test_cancel(self, db_session, action_attrs):
        store = CorporateActionStore(db_session)
        action = await store.create(action_attrs("stock_split"))

        cancelled = await store.cancel(action, "Withdrawn by issuer")

        assert cancelled.status == CorporateActionStatus.CANCELLED
        assert cancelled.cancelled_at is not None
        assert cancelled.reversal_reason == "Withdrawn by issuer"
        assert await store.pending() == []

        with pytest.raises(StateError):
            await store.cancel(cancelled)


@pytest.mark.asyncio
class TestTransactionAdjustmentStore:

    def _attrs(self, action_id, transaction_id, **overrides):
        attrs = {
            "corporate_action_id": action_id,
            "original_transaction_id": transaction_id,
            "fifo_lot_order": 0,
            "adjustment_type": AdjustmentType.QUANTITY_PRICE,
            "reason": "2:1 stock split",
            "original_quantity": Decimal("100"),
            "original_price": Decimal("50"),
            "adjusted_quantity": Decimal("200"),
            "adjusted_price": Decimal("25"),
            "created_by": "tester",
        }
        attrs.update(overrides)
        return attrs

    @pytest.mark.parametrize("overrides,field", [
        ({"fifo_lot_order": -1}, "fifo_lot_order"),
        ({"adjusted_quantity": Decimal("-1")}, "adjusted_quantity"),
        ({"reason": None}, "reason"),
        ({"adjusted_price": Decimal("26")}, "adjusted_price"),
    ])
    async def test_validate(self, db_session, overrides, field):
        store = TransactionAdjustmentStore(db_session)

        with pytest.raises(ValidationError) as exc_info:
            store.validate(self._attrs("a", "t", **overrides))

        assert field in exc_info.value.errors

    async def test_cash_merger_rows_skip_basis_check(self, db_session):
        store = TransactionAdjustmentStore(db_session)
        store.validate(self._attrs(
            "a", "t",
            adjustment_type=AdjustmentType.MERGER_EXCHANGE,
            adjusted_quantity=Decimal("0"),
            adjusted_price=Decimal("0"),
            cash_received=Decimal("5000"),
        ))

    async def test_create_stages_without_flushing(self, db_session):
        store = TransactionAdjustmentStore(db_session)

        adjustment = store.create(self._attrs("a", "t"))

        assert adjustment in db_session.new
        assert adjustment.is_reversed is False
        db_session.expunge(adjustment)

    async def test_create_query_and_reverse(self, db_session, acme_lots, action_attrs):
        actions = CorporateActionStore(db_session)
        store = TransactionAdjustmentStore(db_session)
        action = await actions.create(action_attrs("stock_split"))

        await store.create_many([
            self._attrs(action.id, acme_lots[1].id, fifo_lot_order=1,
                        original_quantity=Decimal("50"), original_price=Decimal("60"),
                        adjusted_quantity=Decimal("100"), adjusted_price=Decimal("30")),
            self._attrs(action.id, acme_lots[0].id),
        ])
        await db_session.commit()

        rows = await store.by_corporate_action(action.id)
        assert [row.fifo_lot_order for row in rows] == [0, 1]
        assert len(await store.by_transaction(acme_lots[0].id)) == 1
        assert len(await store.active()) == 2

        reversed_at = datetime(2025, 1, 3, tzinfo=timezone.utc)
        count = await store.reverse_for_action(action.id, "Bad data", "tester", reversed_at)
        await db_session.commit()

        assert count == 2
        rows = await store.by_corporate_action(action.id)
        assert all(row.is_reversed for row in rows)
        assert rows[0].reversed_by == "tester"
        assert rows[0].reversal_reason == "Bad data"
        assert await store.active() == []
        assert len(await store.reversed()) == 2

        # Already-reversed rows are not touched again
        assert await store.reverse_for_action(action.id, "Again", "tester") == 0
