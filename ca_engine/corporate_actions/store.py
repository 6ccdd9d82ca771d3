from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, and_, func
from sqlalchemy.exc import IntegrityError
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional
import structlog

from ca_engine.core.config import settings
from ca_engine.core.database import utcnow
from ca_engine.db.models import (
    AdjustmentType,
    CorporateAction,
    CorporateActionStatus,
    TransactionAdjustment,
)
from ca_engine.corporate_actions.calculators import cost_basis_preserved
from ca_engine.corporate_actions.errors import ErrorCode, StateError, ValidationError
from ca_engine.corporate_actions.validation import validate_action_attrs


logger = structlog.get_logger("corporate_actions.store")


SEQUENCE_ATTEMPTS = 3

CREATE_FIELDS = frozenset({
    "action_type", "symbol_id", "ex_date", "record_date", "pay_date",
    "description", "source", "ratio_from", "ratio_to", "dividend_amount",
    "dividend_currency", "qualified_dividend", "merger_type", "new_symbol_id",
    "exchange_ratio", "cash_consideration",
})


class CorporateActionStore:
    """Persistence and lifecycle transitions for corporate actions"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, attrs: Mapping[str, Any]) -> CorporateAction:
        """Validate and persist a new action in pending status"""

        unknown = set(attrs) - CREATE_FIELDS
        if unknown:
            raise ValidationError({name: ["Unknown or read-only field"] for name in sorted(unknown)})

        # Explicit None would bypass column defaults (currency, source, qualified flag)
        values = {
            name: value for name, value in validate_action_attrs(attrs).items()
            if value is not None
        }

        for attempt in range(1, SEQUENCE_ATTEMPTS + 1):
            sequence_number = await self._next_sequence_number()
            action = CorporateAction(
                **values,
                status=CorporateActionStatus.PENDING,
                sequence_number=sequence_number,
            )
            self.db.add(action)
            try:
                await self.db.commit()
                break
            except IntegrityError:
                # Another writer took the number first
                await self.db.rollback()
                if attempt == SEQUENCE_ATTEMPTS:
                    raise
                logger.warning(
                    "Sequence number taken, retrying create",
                    sequence_number=sequence_number,
                    attempt=attempt,
                )

        logger.info(
            "Created corporate action",
            action_id=action.id,
            action_type=action.action_type.value,
            symbol_id=action.symbol_id,
            ex_date=action.ex_date.isoformat(),
        )
        return action

    async def _next_sequence_number(self) -> int:
        current = await self.db.scalar(
            select(func.coalesce(func.max(CorporateAction.sequence_number), 0))
        )
        return (current or 0) + 1

    async def get(self, action_id: str, refresh: bool = False) -> Optional[CorporateAction]:
        """Load an action; ``refresh`` reloads it from the database over the identity map"""
        stmt = select(CorporateAction).where(CorporateAction.id == action_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_raise(self, action_id: str, refresh: bool = False) -> CorporateAction:
        action = await self.get(action_id, refresh=refresh)
        if action is None:
            raise StateError(f"Corporate action {action_id} not found", code=ErrorCode.NOT_FOUND)
        return action

    async def by_symbol(self, symbol_id: str) -> List[CorporateAction]:
        result = await self.db.execute(
            select(CorporateAction)
            .where(CorporateAction.symbol_id == symbol_id)
            .order_by(CorporateAction.ex_date.desc(), CorporateAction.sequence_number.desc())
        )
        return list(result.scalars().all())

    async def by_date_range(self, start_date: date, end_date: date) -> List[CorporateAction]:
        """Actions with start_date <= ex_date <= end_date, newest first"""
        if start_date > end_date:
            raise ValidationError({"start_date": ["Start date must not be after end date"]})

        result = await self.db.execute(
            select(CorporateAction)
            .where(
                and_(
                    CorporateAction.ex_date >= start_date,
                    CorporateAction.ex_date <= end_date,
                )
            )
            .order_by(CorporateAction.ex_date.desc(), CorporateAction.sequence_number.desc())
        )
        return list(result.scalars().all())

    async def pending(
        self,
        symbol_id: Optional[str] = None,
        as_of: Optional[date] = None,
    ) -> List[CorporateAction]:
        """Pending actions, oldest ex-date first, ties in creation order"""

        stmt = select(CorporateAction).where(CorporateAction.status == CorporateActionStatus.PENDING)
        if symbol_id is not None:
            stmt = stmt.where(CorporateAction.symbol_id == symbol_id)
        if as_of is not None:
            stmt = stmt.where(CorporateAction.ex_date <= as_of)

        result = await self.db.execute(
            stmt.order_by(CorporateAction.ex_date.asc(), CorporateAction.sequence_number.asc())
        )
        return list(result.scalars().all())

    async def by_status(self, status: CorporateActionStatus) -> List[CorporateAction]:
        result = await self.db.execute(
            select(CorporateAction)
            .where(CorporateAction.status == status)
            .order_by(CorporateAction.ex_date.desc(), CorporateAction.sequence_number.desc())
        )
        return list(result.scalars().all())

    async def pending_symbol_ids(self, as_of: Optional[date] = None) -> List[str]:
        stmt = select(CorporateAction.symbol_id).where(
            CorporateAction.status == CorporateActionStatus.PENDING
        )
        if as_of is not None:
            stmt = stmt.where(CorporateAction.ex_date <= as_of)
        result = await self.db.execute(stmt.distinct().order_by(CorporateAction.symbol_id))
        return list(result.scalars().all())

    async def transition(
        self,
        action: CorporateAction,
        from_status: CorporateActionStatus,
        to_status: CorporateActionStatus,
        **values: Any,
    ) -> None:
        """Conditionally move an action between states. Does not commit.

        The WHERE on the current status makes a concurrent second writer
        match zero rows instead of overwriting the first one.
        """
        result = await self.db.execute(
            update(CorporateAction)
            .where(
                and_(
                    CorporateAction.id == action.id,
                    CorporateAction.status == from_status,
                )
            )
            .values(status=to_status, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StateError(
                f"Corporate action {action.id} is no longer {from_status.value}"
            )

    async def cancel(self, action: CorporateAction, reason: Optional[str] = None) -> CorporateAction:
        """Cancel a pending action"""

        if action.status != CorporateActionStatus.PENDING:
            raise StateError(
                f"Only pending corporate actions can be cancelled, {action.id} is {action.status.value}"
            )

        values: Dict[str, Any] = {"cancelled_at": utcnow()}
        if reason:
            values["reversal_reason"] = reason

        try:
            await self.transition(
                action, CorporateActionStatus.PENDING, CorporateActionStatus.CANCELLED, **values
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(action)
        logger.info("Cancelled corporate action", action_id=action.id, reason=reason)
        return action


class TransactionAdjustmentStore:
    """Append-mostly persistence of per-lot adjustments"""

    def __init__(self, db: AsyncSession, tolerance: Optional[Decimal] = None):
        self.db = db
        self.tolerance = tolerance if tolerance is not None else settings.COST_BASIS_TOLERANCE

    def validate(self, attrs: Mapping[str, Any]) -> None:
        errors: Dict[str, List[str]] = {}

        for field in ("corporate_action_id", "original_transaction_id", "adjustment_type", "reason"):
            if attrs.get(field) is None:
                errors.setdefault(field, []).append("Field is required")

        if attrs.get("fifo_lot_order") is None or attrs["fifo_lot_order"] < 0:
            errors.setdefault("fifo_lot_order", []).append("FIFO lot order must be zero or positive")

        for field in ("adjusted_quantity", "adjusted_price", "total_dividend", "cash_received"):
            value = attrs.get(field)
            if value is not None and value < 0:
                errors.setdefault(field, []).append("Cannot be negative")

        conserves_basis = (
            attrs.get("adjustment_type") in (AdjustmentType.QUANTITY_PRICE, AdjustmentType.MERGER_EXCHANGE)
            and attrs.get("cash_received") is None
        )
        if conserves_basis and not errors:
            if not cost_basis_preserved(
                attrs["original_quantity"],
                attrs["original_price"],
                attrs["adjusted_quantity"],
                attrs["adjusted_price"],
                self.tolerance,
            ):
                errors.setdefault("adjusted_price", []).append(
                    "Total cost basis must be preserved in quantity/price adjustments"
                )

        if errors:
            raise ValidationError(errors, message="Invalid transaction adjustment")

    def create(self, attrs: Mapping[str, Any]) -> TransactionAdjustment:
        """Stage one adjustment row. The caller owns the commit."""
        self.validate(attrs)
        adjustment = TransactionAdjustment(**attrs, is_reversed=False)
        self.db.add(adjustment)
        return adjustment

    async def create_many(self, attrs_list: List[Mapping[str, Any]]) -> List[TransactionAdjustment]:
        adjustments = [self.create(attrs) for attrs in attrs_list]
        await self.db.flush()
        return adjustments

    async def by_corporate_action(self, corporate_action_id: str) -> List[TransactionAdjustment]:
        result = await self.db.execute(
            select(TransactionAdjustment)
            .where(TransactionAdjustment.corporate_action_id == corporate_action_id)
            .order_by(TransactionAdjustment.fifo_lot_order.asc(), TransactionAdjustment.created_at.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def by_transaction(self, transaction_id: str) -> List[TransactionAdjustment]:
        result = await self.db.execute(
            select(TransactionAdjustment)
            .where(TransactionAdjustment.original_transaction_id == transaction_id)
            .order_by(TransactionAdjustment.created_at.asc())
        )
        return list(result.scalars().all())

    async def active(self) -> List[TransactionAdjustment]:
        result = await self.db.execute(
            select(TransactionAdjustment)
            .where(TransactionAdjustment.is_reversed.is_(False))
            .order_by(TransactionAdjustment.created_at.desc())
        )
        return list(result.scalars().all())

    async def reversed(self) -> List[TransactionAdjustment]:
        result = await self.db.execute(
            select(TransactionAdjustment)
            .where(TransactionAdjustment.is_reversed.is_(True))
            .order_by(TransactionAdjustment.reversed_at.desc())
        )
        return list(result.scalars().all())

    async def active_for_symbol(
        self,
        symbol_id: str,
        up_to: date,
        exclude_action_id: Optional[str] = None,
    ) -> List[TransactionAdjustment]:
        """Active adjustments of applied actions on a symbol, in the order they took effect"""

        stmt = (
            select(TransactionAdjustment)
            .join(CorporateAction, TransactionAdjustment.corporate_action_id == CorporateAction.id)
            .where(
                and_(
                    CorporateAction.symbol_id == symbol_id,
                    CorporateAction.status == CorporateActionStatus.APPLIED,
                    CorporateAction.ex_date <= up_to,
                    TransactionAdjustment.is_reversed.is_(False),
                )
            )
        )
        if exclude_action_id is not None:
            stmt = stmt.where(CorporateAction.id != exclude_action_id)

        result = await self.db.execute(
            stmt.order_by(
                CorporateAction.ex_date.asc(),
                CorporateAction.applied_at.asc(),
                CorporateAction.sequence_number.asc(),
                TransactionAdjustment.fifo_lot_order.asc(),
            )
        )
        return list(result.scalars().all())

    async def reverse_for_action(
        self,
        corporate_action_id: str,
        reason: Optional[str],
        reversed_by: str,
        reversed_at: Optional[datetime] = None,
    ) -> int:
        """Soft-void every active adjustment of an action. Does not commit."""
        result = await self.db.execute(
            update(TransactionAdjustment)
            .where(
                and_(
                    TransactionAdjustment.corporate_action_id == corporate_action_id,
                    TransactionAdjustment.is_reversed.is_(False),
                )
            )
            .values(
                is_reversed=True,
                reversed_at=reversed_at or utcnow(),
                reversed_by=reversed_by,
                reversal_reason=reason,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
