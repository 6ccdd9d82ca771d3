import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional, TypeVar
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from ca_engine.core.config import settings
from ca_engine.core.database import utcnow
from ca_engine.db.models import (
    CorporateAction,
    CorporateActionStatus,
    CorporateActionType,
)
from ca_engine.corporate_actions.calculators import (
    AdjustmentDraft,
    AffectedLot,
    compute_adjustments,
    ensure_supported,
    estimate_withholding,
    quantize,
)
from ca_engine.corporate_actions.errors import StateError, ValidationError
from ca_engine.corporate_actions.lots import (
    LotHistoryProvider,
    SqlLotHistoryProvider,
    SqlSymbolResolver,
    SymbolResolver,
    discover_affected_lots,
)
from ca_engine.corporate_actions.store import CorporateActionStore, TransactionAdjustmentStore


logger = structlog.get_logger("corporate_actions.applier")

T = TypeVar("T")


@dataclass
class ApplySummary:
    """Result of applying one corporate action"""
    corporate_action_id: str
    adjustments_created: int
    status: CorporateActionStatus = CorporateActionStatus.APPLIED


@dataclass
class PreviewSummary:
    """Dry-run result; nothing is persisted"""
    corporate_action_id: str
    action_type: CorporateActionType
    ex_date: date
    affected_transactions: int
    estimated_adjustments: int
    adjustments: List[AdjustmentDraft] = field(default_factory=list)
    total_dividend: Optional[Decimal] = None
    estimated_withholding: Optional[Decimal] = None


@dataclass
class ReversalSummary:
    """Result of reversing an applied corporate action"""
    corporate_action_id: str
    adjustments_reversed: int


class CorporateActionApplier:
    """Applies, previews and reverses corporate actions against historical lots.

    The applier is the only writer of action status and adjustment rows. It
    never touches the original transactions. Callers must not run two
    mutations for the same action (or the same symbol) concurrently.
    """

    def __init__(
        self,
        db: AsyncSession,
        lot_provider: Optional[LotHistoryProvider] = None,
        symbol_resolver: Optional[SymbolResolver] = None,
        clock: Optional[Callable[[], datetime]] = None,
        default_actor: Optional[str] = None,
        collaborator_timeout: Optional[float] = None,
        allow_future_ex_dates: Optional[bool] = None,
        tolerance: Optional[Decimal] = None,
    ):
        self.db = db
        self.actions = CorporateActionStore(db)
        self.adjustments = TransactionAdjustmentStore(db, tolerance)
        self.lot_provider = lot_provider or SqlLotHistoryProvider(db)
        self.symbol_resolver = symbol_resolver or SqlSymbolResolver(db)
        self.clock = clock or utcnow
        self.default_actor = default_actor or settings.DEFAULT_APPLIED_BY
        self.collaborator_timeout = (
            collaborator_timeout if collaborator_timeout is not None
            else settings.COLLABORATOR_TIMEOUT_SECONDS
        )
        self.allow_future_ex_dates = (
            allow_future_ex_dates if allow_future_ex_dates is not None
            else settings.ALLOW_FUTURE_EX_DATES
        )
        self._last_applied_at: Optional[datetime] = None

    async def apply_corporate_action(
        self,
        action: CorporateAction,
        applied_by: Optional[str] = None,
    ) -> ApplySummary:
        """Apply a pending corporate action to every lot held at its ex-date.

        Raises:
            StateError: the action is not pending, missing, or not yet effective.
            UnsupportedTypeError: spinoff and return of capital.
        """

        action = await self.actions.get_or_raise(action.id, refresh=True)
        action_id = action.id

        if action.status != CorporateActionStatus.PENDING:
            raise StateError(
                f"Corporate action {action_id} is already {action.status.value}"
            )

        ensure_supported(action)
        self._ensure_effective(action)

        actor = applied_by or self.default_actor
        logger.info(
            "Applying corporate action",
            action_id=action_id,
            action_type=action.action_type.value,
            symbol_id=action.symbol_id,
            ex_date=action.ex_date.isoformat(),
            applied_by=actor,
        )

        try:
            drafts = await self._compute(action)
            await self.adjustments.create_many(
                [draft.as_attrs(action_id, actor) for draft in drafts]
            )
            await self.actions.transition(
                action,
                CorporateActionStatus.PENDING,
                CorporateActionStatus.APPLIED,
                applied_by=actor,
                applied_at=self._next_applied_at(),
            )
            await self.db.commit()

        except Exception as e:
            await self.db.rollback()
            await self.db.refresh(action)
            logger.error("Failed to apply corporate action", action_id=action_id, error=str(e))
            raise

        await self.db.refresh(action)

        if not drafts:
            # Kept as applied so the action leaves the pending queue
            logger.warning(
                "Corporate action applied to zero lots",
                action_id=action_id,
                symbol_id=action.symbol_id,
            )

        logger.info(
            "Corporate action applied",
            action_id=action_id,
            adjustments_created=len(drafts),
        )

        return ApplySummary(
            corporate_action_id=action_id,
            adjustments_created=len(drafts),
            status=action.status,
        )

    async def preview_application(self, action: CorporateAction) -> PreviewSummary:
        """Compute what apply would produce, without persisting anything"""

        ensure_supported(action)
        drafts = await self._compute(action)

        total_dividend = None
        estimated_withholding = None
        if action.action_type == CorporateActionType.CASH_DIVIDEND:
            total_dividend = quantize(sum((d.total_dividend for d in drafts), Decimal("0")))
            estimated_withholding = quantize(sum(
                (
                    estimate_withholding(
                        d.total_dividend,
                        d.dividend_tax_status,
                        settings.QUALIFIED_WITHHOLDING_RATE,
                        settings.ORDINARY_WITHHOLDING_RATE,
                    )
                    for d in drafts
                ),
                Decimal("0"),
            ))

        logger.info(
            "Previewed corporate action",
            action_id=action.id,
            affected_transactions=len(drafts),
        )

        return PreviewSummary(
            corporate_action_id=action.id,
            action_type=action.action_type,
            ex_date=action.ex_date,
            affected_transactions=len(drafts),
            estimated_adjustments=len(drafts),
            adjustments=drafts,
            total_dividend=total_dividend,
            estimated_withholding=estimated_withholding,
        )

    async def reverse_application(
        self,
        corporate_action_id: str,
        reason: Optional[str],
        reversed_by: Optional[str] = None,
    ) -> ReversalSummary:
        """Soft-void every adjustment of an applied action.

        Pre-adjustment values are not recomputed: readers treat reversed rows
        as void and fall back to the original lot values.
        """

        action = await self.actions.get_or_raise(corporate_action_id, refresh=True)

        if action.status != CorporateActionStatus.APPLIED:
            raise StateError(
                f"Only applied corporate actions can be reversed, "
                f"{corporate_action_id} is {action.status.value}"
            )

        actor = reversed_by or self.default_actor

        try:
            reversed_at = self.clock()
            reversed_count = await self.adjustments.reverse_for_action(
                corporate_action_id, reason, actor, reversed_at
            )
            await self.actions.transition(
                action,
                CorporateActionStatus.APPLIED,
                CorporateActionStatus.REVERSED,
                reversal_reason=reason,
                reversed_at=reversed_at,
            )
            await self.db.commit()

        except Exception as e:
            await self.db.rollback()
            await self.db.refresh(action)
            logger.error("Failed to reverse corporate action", action_id=corporate_action_id, error=str(e))
            raise

        await self.db.refresh(action)

        logger.info(
            "Corporate action reversed",
            action_id=corporate_action_id,
            adjustments_reversed=reversed_count,
            reason=reason,
            reversed_by=actor,
        )

        return ReversalSummary(
            corporate_action_id=corporate_action_id,
            adjustments_reversed=reversed_count,
        )

    async def discover_lots(self, action: CorporateAction) -> List[AffectedLot]:
        """Lots held at the ex-date, with earlier applied actions folded in"""

        symbol_id = await self.resolve_symbol(action.symbol_id, "symbol_id")
        lots = await self._call_collaborator(
            self.lot_provider.lots_for_symbol(symbol_id, action.ex_date)
        )
        prior = await self.adjustments.active_for_symbol(
            symbol_id, action.ex_date, exclude_action_id=action.id
        )
        return discover_affected_lots(lots, action.ex_date, prior)

    async def _compute(self, action: CorporateAction) -> List[AdjustmentDraft]:
        lots = await self.discover_lots(action)
        drafts = compute_adjustments(action, lots)

        if action.action_type == CorporateActionType.MERGER and action.new_symbol_id:
            new_symbol_id = await self.resolve_symbol(action.new_symbol_id, "new_symbol_id")
            for draft in drafts:
                draft.new_symbol_id = new_symbol_id

        return drafts

    async def resolve_symbol(self, symbol_ref: str, field_name: str) -> str:
        resolved = await self._call_collaborator(self.symbol_resolver.resolve(symbol_ref))
        if resolved is None:
            raise ValidationError({field_name: [f"Unknown symbol {symbol_ref}"]})
        return resolved

    async def _call_collaborator(self, call: Awaitable[T]) -> T:
        # Timeouts and I/O errors propagate unmodified
        return await asyncio.wait_for(call, timeout=self.collaborator_timeout)

    def _ensure_effective(self, action: CorporateAction) -> None:
        if self.allow_future_ex_dates:
            return
        today = self.clock().date()
        if action.ex_date > today:
            raise StateError(
                f"Corporate action {action.id} has a future ex-date ({action.ex_date.isoformat()})"
            )

    def _next_applied_at(self) -> datetime:
        """Engine clock, forced strictly increasing across applications"""
        now = self.clock()
        if self._last_applied_at is not None and now <= self._last_applied_at:
            now = self._last_applied_at + timedelta(microseconds=1)
        self._last_applied_at = now
        return now
