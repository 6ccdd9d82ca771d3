import asyncio
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional
import structlog

from ca_engine.corporate_actions.applier import ApplySummary, CorporateActionApplier
from ca_engine.corporate_actions.errors import CorporateActionError


logger = structlog.get_logger("corporate_actions.scheduler")


@dataclass
class BatchFailure:
    corporate_action_id: str
    action_type: str
    ex_date: date
    code: str
    error: str


@dataclass
class BatchSummary:
    """Aggregate outcome of a batch run for one symbol.

    ``actions_processed`` counts every action attempted, whether it was
    applied or ended up in ``failures``.
    """
    symbol_id: str
    actions_processed: int = 0
    total_adjustments: int = 0
    failures: List[BatchFailure] = field(default_factory=list)
    applied: List[ApplySummary] = field(default_factory=list)
    cancelled: bool = False

    @property
    def actions_applied(self) -> int:
        return len(self.applied)


class BatchScheduler:
    """Applies the pending actions of a symbol in ex-date order"""

    def __init__(self, applier: CorporateActionApplier):
        self.applier = applier

    async def batch_apply_pending(
        self,
        symbol_id: str,
        applied_by: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        as_of: Optional[date] = None,
    ) -> BatchSummary:
        """Apply pending actions oldest ex-date first, ties in creation order.

        Each action commits on its own, so a failure does not undo earlier
        successes. Engine errors are collected in ``failures``; collaborator
        errors propagate. Setting ``cancel_event`` stops the run before the
        next action starts.
        """

        # A failed apply rolls back and expires every loaded instance, so only
        # plain values are kept and each action is re-read by id
        pending = [
            (action.id, action.action_type.value, action.ex_date)
            for action in await self.applier.actions.pending(symbol_id=symbol_id, as_of=as_of)
        ]
        summary = BatchSummary(symbol_id=symbol_id)

        logger.info(
            "Starting batch apply",
            symbol_id=symbol_id,
            pending_count=len(pending),
            as_of=as_of.isoformat() if as_of else None,
        )

        for action_id, action_type, ex_date in pending:
            if cancel_event is not None and cancel_event.is_set():
                summary.cancelled = True
                logger.warning(
                    "Batch apply cancelled",
                    symbol_id=symbol_id,
                    actions_processed=summary.actions_processed,
                    remaining=len(pending) - summary.actions_processed,
                )
                break

            summary.actions_processed += 1

            try:
                action = await self.applier.actions.get_or_raise(action_id, refresh=True)
                result = await self.applier.apply_corporate_action(action, applied_by=applied_by)
            except CorporateActionError as e:
                summary.failures.append(
                    BatchFailure(
                        corporate_action_id=action_id,
                        action_type=action_type,
                        ex_date=ex_date,
                        code=e.code.value,
                        error=e.message,
                    )
                )
                logger.warning(
                    "Corporate action failed in batch",
                    symbol_id=symbol_id,
                    action_id=action_id,
                    code=e.code.value,
                    error=e.message,
                )
                continue

            summary.applied.append(result)
            summary.total_adjustments += result.adjustments_created

        logger.info(
            "Batch apply completed",
            symbol_id=symbol_id,
            actions_processed=summary.actions_processed,
            total_adjustments=summary.total_adjustments,
            failures=len(summary.failures),
            cancelled=summary.cancelled,
        )
        return summary

    async def apply_due(
        self,
        as_of: date,
        applied_by: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[BatchSummary]:
        """Run a batch for every symbol with pending actions due by ``as_of``"""

        symbol_ids = await self.applier.actions.pending_symbol_ids(as_of=as_of)
        summaries = []
        for symbol_id in symbol_ids:
            if cancel_event is not None and cancel_event.is_set():
                break
            summaries.append(
                await self.batch_apply_pending(
                    symbol_id, applied_by=applied_by, cancel_event=cancel_event, as_of=as_of
                )
            )
        return summaries
