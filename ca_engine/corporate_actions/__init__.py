"""
Corporate action engine

This module provides:
- Validation and persistence of declared corporate actions
- Pure per-lot adjustment calculators shared by preview and apply
- The applier, batch scheduler and the CorporateActionEngine facade
"""

from ca_engine.corporate_actions.applier import (
    ApplySummary,
    CorporateActionApplier,
    PreviewSummary,
    ReversalSummary,
)
from ca_engine.corporate_actions.errors import (
    CorporateActionError,
    ErrorCode,
    LotOrderingError,
    StateError,
    UnsupportedTypeError,
    ValidationError,
)
from ca_engine.corporate_actions.lots import LotHistoryProvider, SymbolResolver
from ca_engine.corporate_actions.scheduler import BatchFailure, BatchScheduler, BatchSummary
from ca_engine.corporate_actions.service import CorporateActionEngine

__all__ = [
    "ApplySummary",
    "BatchFailure",
    "BatchScheduler",
    "BatchSummary",
    "CorporateActionApplier",
    "CorporateActionEngine",
    "CorporateActionError",
    "ErrorCode",
    "LotHistoryProvider",
    "LotOrderingError",
    "PreviewSummary",
    "ReversalSummary",
    "StateError",
    "SymbolResolver",
    "UnsupportedTypeError",
    "ValidationError",
]
