from typing import List, Optional
from datetime import date, datetime
from decimal import Decimal
from pydantic import BaseModel, Field

from ca_engine.db.models import (
    AdjustmentType,
    CorporateActionStatus,
    CorporateActionType,
    DividendTaxStatus,
    MergerType,
)
from ca_engine.corporate_actions.validation import CorporateActionAttrs


class CorporateActionCreate(CorporateActionAttrs):
    """Schema for declaring a corporate action"""
    symbol_id: str
    action_type: CorporateActionType
    ex_date: date


class CorporateActionResponse(BaseModel):
    """Schema for corporate action response"""
    id: str
    symbol_id: str
    action_type: CorporateActionType
    status: CorporateActionStatus
    sequence_number: int
    ex_date: date
    record_date: Optional[date] = None
    pay_date: Optional[date] = None
    description: Optional[str] = None
    source: str
    ratio_from: Optional[Decimal] = None
    ratio_to: Optional[Decimal] = None
    dividend_amount: Optional[Decimal] = None
    dividend_currency: str
    qualified_dividend: bool
    merger_type: Optional[MergerType] = None
    new_symbol_id: Optional[str] = None
    exchange_ratio: Optional[Decimal] = None
    cash_consideration: Optional[Decimal] = None
    applied_by: Optional[str] = None
    applied_at: Optional[datetime] = None
    reversed_at: Optional[datetime] = None
    reversal_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class AdjustmentResponse(BaseModel):
    """Per-lot adjustment, persisted or previewed"""
    original_transaction_id: str
    fifo_lot_order: int
    adjustment_type: AdjustmentType
    reason: str
    original_quantity: Decimal
    original_price: Decimal
    adjusted_quantity: Decimal
    adjusted_price: Decimal
    dividend_per_share: Optional[Decimal] = None
    total_dividend: Optional[Decimal] = None
    dividend_tax_status: DividendTaxStatus
    new_symbol_id: Optional[str] = None
    cash_received: Optional[Decimal] = None
    realized_gain: Optional[Decimal] = None

    class Config:
        from_attributes = True


class TransactionAdjustmentResponse(AdjustmentResponse):
    id: str
    corporate_action_id: str
    is_reversed: bool
    reversed_at: Optional[datetime] = None
    reversed_by: Optional[str] = None
    reversal_reason: Optional[str] = None
    created_by: str
    created_at: datetime


class ReasonRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class ApplyResponse(BaseModel):
    corporate_action_id: str
    adjustments_created: int
    status: CorporateActionStatus

    class Config:
        from_attributes = True


class PreviewResponse(BaseModel):
    corporate_action_id: str
    action_type: CorporateActionType
    ex_date: date
    affected_transactions: int
    estimated_adjustments: int
    adjustments: List[AdjustmentResponse]
    total_dividend: Optional[Decimal] = None
    estimated_withholding: Optional[Decimal] = None

    class Config:
        from_attributes = True


class ReversalResponse(BaseModel):
    corporate_action_id: str
    adjustments_reversed: int

    class Config:
        from_attributes = True


class BatchFailureResponse(BaseModel):
    corporate_action_id: str
    action_type: str
    ex_date: date
    code: str
    error: str

    class Config:
        from_attributes = True


class BatchResponse(BaseModel):
    symbol_id: str
    actions_processed: int
    actions_applied: int
    total_adjustments: int
    failures: List[BatchFailureResponse]
    cancelled: bool

    class Config:
        from_attributes = True
