from celery import Celery
from celery.schedules import crontab
from datetime import date
import structlog

from ca_engine.core.config import settings
from ca_engine.core.database import AsyncSessionLocal
from ca_engine.corporate_actions.service import CorporateActionEngine


# Create Celery app
celery_app = Celery(
    "ca_engine_worker",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL,
    include=["ca_engine.corporate_actions.tasks"]
)

celery_app.conf.update(
    timezone="UTC",
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_track_started=True,
    result_expires=3600,
)

logger = structlog.get_logger("corporate_actions.tasks")


def _summary_payload(summary) -> dict:
    return {
        "symbol_id": summary.symbol_id,
        "actions_processed": summary.actions_processed,
        "total_adjustments": summary.total_adjustments,
        "cancelled": summary.cancelled,
        "failures": [
            {
                "corporate_action_id": failure.corporate_action_id,
                "code": failure.code,
                "error": failure.error,
            }
            for failure in summary.failures
        ],
    }


@celery_app.task(bind=True)
def batch_apply_pending_task(self, symbol_id: str, applied_by: str = None):
    """Apply every pending corporate action of one symbol"""

    import asyncio

    async def _batch_apply():
        try:
            async with AsyncSessionLocal() as db:
                engine = CorporateActionEngine(db)
                summary = await engine.batch_apply_pending(symbol_id, applied_by=applied_by)

                logger.info(
                    "Batch apply task completed",
                    task_id=self.request.id,
                    symbol_id=symbol_id,
                    actions_processed=summary.actions_processed,
                    failures=len(summary.failures),
                )
                return _summary_payload(summary)

        except Exception as e:
            logger.error(
                "Batch apply task failed",
                task_id=self.request.id,
                symbol_id=symbol_id,
                error=str(e)
            )
            raise

    return asyncio.run(_batch_apply())


@celery_app.task(bind=True)
def apply_due_actions_task(self, as_of_str: str = None):
    """Apply pending corporate actions due by ``as_of`` for every symbol"""

    import asyncio

    async def _apply_due():
        try:
            as_of = date.fromisoformat(as_of_str) if as_of_str else date.today()

            async with AsyncSessionLocal() as db:
                engine = CorporateActionEngine(db)
                summaries = await engine.apply_due(as_of, applied_by=settings.DEFAULT_APPLIED_BY)

                logger.info(
                    "Due corporate actions applied",
                    task_id=self.request.id,
                    as_of=as_of.isoformat(),
                    symbols=len(summaries),
                    total_adjustments=sum(s.total_adjustments for s in summaries),
                )
                return {
                    "status": "completed",
                    "as_of": as_of.isoformat(),
                    "batches": [_summary_payload(summary) for summary in summaries],
                }

        except Exception as e:
            logger.error(
                "Applying due corporate actions failed",
                task_id=self.request.id,
                error=str(e)
            )
            raise

    return asyncio.run(_apply_due())


# Daily run after the US market close
celery_app.conf.beat_schedule = {
    "apply-due-corporate-actions": {
        "task": "ca_engine.corporate_actions.tasks.apply_due_actions_task",
        "schedule": crontab(hour=settings.BATCH_APPLY_SCHEDULE_HOUR, minute=0),
    },
}
