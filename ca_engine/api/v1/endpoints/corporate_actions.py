from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import List, Optional
import structlog
from datetime import date

from ca_engine.api.dependencies import get_current_actor, get_engine
from ca_engine.api.v1.schemas.corporate_actions import (
    ApplyResponse,
    BatchResponse,
    CorporateActionCreate,
    CorporateActionResponse,
    PreviewResponse,
    ReasonRequest,
    ReversalResponse,
    TransactionAdjustmentResponse,
)
from ca_engine.db.models import CorporateActionStatus
from ca_engine.corporate_actions.errors import (
    CorporateActionError,
    StateError,
    UnsupportedTypeError,
    ValidationError,
)
from ca_engine.corporate_actions.service import CorporateActionEngine


router = APIRouter()
logger = structlog.get_logger("corporate_actions_api")


def http_error(error: CorporateActionError) -> HTTPException:
    """Map engine errors onto HTTP status codes"""

    if isinstance(error, ValidationError):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(error, StateError):
        status_code = status.HTTP_404_NOT_FOUND if error.not_found else status.HTTP_409_CONFLICT
    elif isinstance(error, UnsupportedTypeError):
        status_code = status.HTTP_400_BAD_REQUEST
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    return HTTPException(status_code=status_code, detail=error.to_dict())


@router.get("/", response_model=List[CorporateActionResponse])
async def list_corporate_actions(
    symbol_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    action_status: Optional[CorporateActionStatus] = Query(None, alias="status"),
    engine: CorporateActionEngine = Depends(get_engine),
):
    """List corporate actions by symbol, ex-date range or status"""

    try:
        if action_status == CorporateActionStatus.PENDING:
            return await engine.list_pending(symbol_id=symbol_id)

        if start_date is not None or end_date is not None:
            if start_date is None or end_date is None:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="Both start_date and end_date are required for a date range"
                )
            actions = await engine.list_by_date_range(start_date, end_date)
        elif symbol_id is not None:
            actions = await engine.list_by_symbol(symbol_id)
        elif action_status is not None:
            actions = await engine.actions.by_status(action_status)
        else:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Provide symbol_id, a date range or a status"
            )

    except CorporateActionError as e:
        raise http_error(e)

    if symbol_id is not None:
        actions = [action for action in actions if action.symbol_id == symbol_id]
    if action_status is not None:
        actions = [action for action in actions if action.status == action_status]
    return actions


@router.post("/", response_model=CorporateActionResponse, status_code=status.HTTP_201_CREATED)
async def create_corporate_action(
    action_data: CorporateActionCreate,
    actor: str = Depends(get_current_actor),
    engine: CorporateActionEngine = Depends(get_engine),
):
    """Declare a new corporate action in pending status"""

    try:
        action = await engine.create_action(action_data.model_dump(exclude_none=True))
    except CorporateActionError as e:
        logger.warning("Rejected corporate action", actor=actor, error=e.message)
        raise http_error(e)

    logger.info("Corporate action declared", actor=actor, action_id=action.id)
    return action


@router.post("/batch/{symbol_id}", response_model=BatchResponse)
async def batch_apply_pending(
    symbol_id: str,
    actor: str = Depends(get_current_actor),
    engine: CorporateActionEngine = Depends(get_engine),
):
    """Apply every pending action of a symbol in ex-date order"""

    summary = await engine.batch_apply_pending(symbol_id, applied_by=actor)
    return BatchResponse.model_validate(summary, from_attributes=True)


@router.get("/{action_id}", response_model=CorporateActionResponse)
async def get_corporate_action(
    action_id: str,
    engine: CorporateActionEngine = Depends(get_engine),
):
    try:
        return await engine.get_action(action_id)
    except CorporateActionError as e:
        raise http_error(e)


@router.get("/{action_id}/adjustments", response_model=List[TransactionAdjustmentResponse])
async def list_adjustments(
    action_id: str,
    engine: CorporateActionEngine = Depends(get_engine),
):
    """Adjustments written for an action, reversed ones included"""

    try:
        return await engine.adjustments_for(action_id)
    except CorporateActionError as e:
        raise http_error(e)


@router.post("/{action_id}/preview", response_model=PreviewResponse)
async def preview_corporate_action(
    action_id: str,
    engine: CorporateActionEngine = Depends(get_engine),
):
    """Compute the adjustments an apply would write, without writing them"""

    try:
        action = await engine.get_action(action_id)
        preview = await engine.preview_application(action)
    except CorporateActionError as e:
        raise http_error(e)

    return PreviewResponse.model_validate(preview, from_attributes=True)


@router.post("/{action_id}/apply", response_model=ApplyResponse)
async def apply_corporate_action(
    action_id: str,
    actor: str = Depends(get_current_actor),
    engine: CorporateActionEngine = Depends(get_engine),
):
    try:
        action = await engine.get_action(action_id)
        summary = await engine.apply_corporate_action(action, applied_by=actor)
    except CorporateActionError as e:
        logger.warning("Apply rejected", actor=actor, action_id=action_id, error=e.message)
        raise http_error(e)

    return ApplyResponse.model_validate(summary, from_attributes=True)


@router.post("/{action_id}/reverse", response_model=ReversalResponse)
async def reverse_corporate_action(
    action_id: str,
    request: ReasonRequest,
    actor: str = Depends(get_current_actor),
    engine: CorporateActionEngine = Depends(get_engine),
):
    try:
        summary = await engine.reverse_application(action_id, request.reason, reversed_by=actor)
    except CorporateActionError as e:
        raise http_error(e)

    return ReversalResponse.model_validate(summary, from_attributes=True)


@router.post("/{action_id}/cancel", response_model=CorporateActionResponse)
async def cancel_corporate_action(
    action_id: str,
    request: ReasonRequest,
    actor: str = Depends(get_current_actor),
    engine: CorporateActionEngine = Depends(get_engine),
):
    try:
        action = await engine.cancel_action(action_id, request.reason)
    except CorporateActionError as e:
        raise http_error(e)

    logger.info("Corporate action cancelled", actor=actor, action_id=action_id)
    return action
