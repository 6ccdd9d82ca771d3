import asyncio
from datetime import date
from typing import Any, Dict, List, Mapping, Optional
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from ca_engine.db.models import CorporateAction, TransactionAdjustment
from ca_engine.corporate_actions.applier import (
    ApplySummary,
    CorporateActionApplier,
    PreviewSummary,
    ReversalSummary,
)
from ca_engine.corporate_actions.errors import ValidationError
from ca_engine.corporate_actions.lots import LotHistoryProvider, SymbolResolver
from ca_engine.corporate_actions.scheduler import BatchScheduler, BatchSummary


logger = structlog.get_logger("corporate_actions.service")


class CorporateActionEngine:
    """Entry point for hosts embedding the corporate action engine.

    One engine instance is bound to one session; the session is the unit of
    work for every call.
    """

    def __init__(
        self,
        db: AsyncSession,
        lot_provider: Optional[LotHistoryProvider] = None,
        symbol_resolver: Optional[SymbolResolver] = None,
        **applier_options: Any,
    ):
        self.db = db
        self.applier = CorporateActionApplier(
            db,
            lot_provider=lot_provider,
            symbol_resolver=symbol_resolver,
            **applier_options,
        )
        self.scheduler = BatchScheduler(self.applier)
        self.actions = self.applier.actions
        self.adjustments = self.applier.adjustments

    async def create_action(self, attrs: Mapping[str, Any]) -> CorporateAction:
        """Validate, resolve symbol references and persist a pending action"""

        values: Dict[str, Any] = dict(attrs)
        errors: Dict[str, List[str]] = {}

        for field in ("symbol_id", "new_symbol_id"):
            symbol_ref = values.get(field)
            if not symbol_ref:
                continue
            try:
                values[field] = await self.applier.resolve_symbol(symbol_ref, field)
            except ValidationError as e:
                errors.update(e.errors)

        if errors:
            raise ValidationError(errors)

        return await self.actions.create(values)

    async def get_action(self, action_id: str) -> CorporateAction:
        return await self.actions.get_or_raise(action_id)

    async def list_by_symbol(self, symbol_id: str) -> List[CorporateAction]:
        return await self.actions.by_symbol(symbol_id)

    async def list_by_date_range(self, start_date: date, end_date: date) -> List[CorporateAction]:
        return await self.actions.by_date_range(start_date, end_date)

    async def list_pending(self, symbol_id: Optional[str] = None) -> List[CorporateAction]:
        return await self.actions.pending(symbol_id=symbol_id)

    async def apply_corporate_action(
        self,
        action: CorporateAction,
        applied_by: Optional[str] = None,
    ) -> ApplySummary:
        return await self.applier.apply_corporate_action(action, applied_by=applied_by)

    async def preview_application(self, action: CorporateAction) -> PreviewSummary:
        return await self.applier.preview_application(action)

    async def batch_apply_pending(
        self,
        symbol_id: str,
        applied_by: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BatchSummary:
        return await self.scheduler.batch_apply_pending(
            symbol_id, applied_by=applied_by, cancel_event=cancel_event
        )

    async def apply_due(self, as_of: date, applied_by: Optional[str] = None) -> List[BatchSummary]:
        return await self.scheduler.apply_due(as_of, applied_by=applied_by)

    async def reverse_application(
        self,
        corporate_action_id: str,
        reason: Optional[str],
        reversed_by: Optional[str] = None,
    ) -> ReversalSummary:
        return await self.applier.reverse_application(
            corporate_action_id, reason, reversed_by=reversed_by
        )

    async def cancel_action(self, action_id: str, reason: Optional[str] = None) -> CorporateAction:
        action = await self.actions.get_or_raise(action_id, refresh=True)
        return await self.actions.cancel(action, reason)

    async def adjustments_for(self, action_id: str) -> List[TransactionAdjustment]:
        await self.actions.get_or_raise(action_id)
        return await self.adjustments.by_corporate_action(action_id)
