"""Create-time validation of corporate action attributes."""

from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional
from pydantic import BaseModel, field_validator
from pydantic import ValidationError as PydanticValidationError

from ca_engine.db.models import CorporateActionType, MergerType
from ca_engine.corporate_actions.errors import ValidationError


DECIMAL_FIELDS = (
    "ratio_from",
    "ratio_to",
    "dividend_amount",
    "exchange_ratio",
    "cash_consideration",
)
DESCRIPTION_MAX_LENGTH = 500


class CorporateActionAttrs(BaseModel):
    """Field types of a corporate action declaration.

    Every field is optional here; presence and per-type rules are checked by
    ``collect_errors`` so all problems are reported together.
    """
    action_type: Optional[CorporateActionType] = None
    symbol_id: Optional[str] = None
    ex_date: Optional[date] = None
    record_date: Optional[date] = None
    pay_date: Optional[date] = None
    description: Optional[str] = None
    source: Optional[str] = None
    ratio_from: Optional[Decimal] = None
    ratio_to: Optional[Decimal] = None
    dividend_amount: Optional[Decimal] = None
    dividend_currency: Optional[str] = None
    qualified_dividend: Optional[bool] = None
    merger_type: Optional[MergerType] = None
    new_symbol_id: Optional[str] = None
    exchange_ratio: Optional[Decimal] = None
    cash_consideration: Optional[Decimal] = None

    @field_validator(*DECIMAL_FIELDS, mode="before")
    @classmethod
    def float_through_str(cls, v):
        # 0.1 stays 0.1
        if isinstance(v, float):
            return str(v)
        return v


def _field_errors(exc: PydanticValidationError) -> Dict[str, List[str]]:
    errors: Dict[str, List[str]] = defaultdict(list)
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"]) or "attrs"
        errors[field].append(error["msg"])
    return dict(errors)


def normalize_attrs(attrs: Mapping[str, Any]) -> Dict[str, Any]:
    """Coerce enum, decimal and date fields; conversion errors become a ValidationError."""

    try:
        model = CorporateActionAttrs.model_validate(dict(attrs))
    except PydanticValidationError as e:
        raise ValidationError(_field_errors(e))

    normalized = dict(attrs)
    normalized.update(model.model_dump(include=set(attrs) & set(CorporateActionAttrs.model_fields)))
    return normalized


def collect_errors(attrs: Mapping[str, Any]) -> Dict[str, List[str]]:
    """Return field -> messages for every violated rule. Expects normalized attrs."""

    errors: Dict[str, List[str]] = defaultdict(list)

    def require(field: str, message: str) -> bool:
        if attrs.get(field) is None:
            errors[field].append(message)
            return False
        return True

    def positive(field: str, label: str) -> None:
        if attrs[field] <= 0:
            errors[field].append(f"{label} must be positive")

    def non_negative(field: str, label: str) -> None:
        if attrs[field] < 0:
            errors[field].append(f"{label} cannot be negative")

    require("action_type", "Action type is required")
    require("symbol_id", "Symbol is required")
    require("ex_date", "Ex-date is required")

    description = attrs.get("description")
    if description is not None and len(description) > DESCRIPTION_MAX_LENGTH:
        errors["description"].append(f"Description cannot exceed {DESCRIPTION_MAX_LENGTH} characters")

    currency = attrs.get("dividend_currency")
    if currency is not None and len(currency) != 3:
        errors["dividend_currency"].append("Currency must be a 3-letter code")

    action_type = attrs.get("action_type")

    if action_type == CorporateActionType.STOCK_SPLIT:
        if require("ratio_from", "Split ratio from is required for stock splits"):
            positive("ratio_from", "Split ratio from")
        if require("ratio_to", "Split ratio to is required for stock splits"):
            positive("ratio_to", "Split ratio to")

    elif action_type == CorporateActionType.CASH_DIVIDEND:
        if require("dividend_amount", "Dividend amount is required for cash dividends"):
            non_negative("dividend_amount", "Dividend amount")

    elif action_type == CorporateActionType.STOCK_DIVIDEND:
        has_ratio = attrs.get("ratio_from") is not None or attrs.get("ratio_to") is not None
        if has_ratio:
            if require("ratio_from", "Ratio from is required when a stock dividend ratio is given"):
                positive("ratio_from", "Ratio from")
            if require("ratio_to", "Ratio to is required when a stock dividend ratio is given"):
                positive("ratio_to", "Ratio to")
        elif require("dividend_amount", "Stock dividend needs a ratio or a dividend rate"):
            positive("dividend_amount", "Stock dividend rate")

    elif action_type == CorporateActionType.MERGER:
        merger_type = attrs.get("merger_type")
        require("merger_type", "Merger type is required for mergers")

        needs_ratio = merger_type in (MergerType.STOCK_FOR_STOCK, MergerType.MIXED_CONSIDERATION)
        needs_cash = merger_type in (MergerType.CASH_FOR_STOCK, MergerType.MIXED_CONSIDERATION)

        if needs_ratio:
            if require("exchange_ratio", "Exchange ratio is required for stock mergers"):
                positive("exchange_ratio", "Exchange ratio")
            require("new_symbol_id", "New symbol is required for stock mergers")
        if needs_cash:
            if require("cash_consideration", "Cash consideration is required for cash mergers"):
                non_negative("cash_consideration", "Cash consideration")

        # Reject stray non-positive values even when not required
        if not needs_ratio and attrs.get("exchange_ratio") is not None:
            positive("exchange_ratio", "Exchange ratio")

    return dict(errors)


def validate_action_attrs(attrs: Mapping[str, Any]) -> Dict[str, Any]:
    """Normalize and validate attributes for a new corporate action.

    Spinoff and return-of-capital declarations are accepted here; they are
    rejected only when applied.

    Raises:
        ValidationError: on any missing or out-of-range field.
    """
    normalized = normalize_attrs(attrs)
    errors = collect_errors(normalized)
    if errors:
        raise ValidationError(errors)
    return normalized
