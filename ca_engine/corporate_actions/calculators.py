"""
Pure adjustment calculators for corporate actions.

Every function here is side-effect free: it takes an action (any object with
the CorporateAction attributes) and the affected lots, and returns adjustment
drafts. Apply and preview both go through ``compute_adjustments`` so the two
paths cannot drift apart.

Formulas, for a lot of quantity ``q`` at price ``p``:

- stock split ``from:to``: ``q * to / from`` shares at ``p * from / to``
- cash dividend ``d``: ``total = q * d``; quantity and price unchanged
- stock dividend: split formula with factor ``to / from`` or ``1 + rate``
- stock-for-stock merger ``r``: ``q * r`` shares, basis carried over
- cash merger ``c``: lot closed, ``cash = q * c``, ``gain = cash - q * p``
- mixed merger: ``q * r`` shares plus ``q * c`` cash, gain recognised on the
  cash leg only, remaining basis carried to the new shares
"""
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Sequence

from ca_engine.db.models import (
    AdjustmentType,
    CorporateActionType,
    DividendTaxStatus,
    MergerType,
)
from ca_engine.corporate_actions.errors import UnsupportedTypeError


PRECISION = Decimal("0.0001")
HALF_UNIT = PRECISION / 2
ZERO = Decimal("0")
ONE = Decimal("1")

SUPPORTED_ACTION_TYPES = frozenset({
    CorporateActionType.STOCK_SPLIT,
    CorporateActionType.CASH_DIVIDEND,
    CorporateActionType.STOCK_DIVIDEND,
    CorporateActionType.MERGER,
})


def quantize(value: Decimal) -> Decimal:
    """Round to the stored fixed precision"""
    return value.quantize(PRECISION, rounding=ROUND_HALF_UP)


def format_decimal(value: Optional[Decimal]) -> str:
    if value is None:
        return "?"
    return format(value.normalize(), "f")


@dataclass(frozen=True)
class Lot:
    """A single acquisition record as returned by the lot-history provider"""
    transaction_id: str
    acquisition_date: date
    quantity: Decimal
    price: Decimal


@dataclass(frozen=True)
class AffectedLot:
    """A lot selected for an action, with its effective values at the ex-date"""
    transaction_id: str
    acquisition_date: date
    fifo_lot_order: int
    quantity: Decimal
    price: Decimal
    source_quantity: Decimal
    source_price: Decimal

    @property
    def cost_basis(self) -> Decimal:
        return self.quantity * self.price


@dataclass
class AdjustmentDraft:
    """Computed, not yet persisted, effect of an action on one lot"""
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
    dividend_tax_status: DividendTaxStatus = DividendTaxStatus.NOT_APPLICABLE
    new_symbol_id: Optional[str] = None
    cash_received: Optional[Decimal] = None
    realized_gain: Optional[Decimal] = None

    def as_attrs(self, corporate_action_id: str, created_by: str) -> Dict[str, Any]:
        return {
            "corporate_action_id": corporate_action_id,
            "original_transaction_id": self.original_transaction_id,
            "fifo_lot_order": self.fifo_lot_order,
            "adjustment_type": self.adjustment_type,
            "reason": self.reason,
            "original_quantity": self.original_quantity,
            "original_price": self.original_price,
            "adjusted_quantity": self.adjusted_quantity,
            "adjusted_price": self.adjusted_price,
            "dividend_per_share": self.dividend_per_share,
            "total_dividend": self.total_dividend,
            "dividend_tax_status": self.dividend_tax_status,
            "new_symbol_id": self.new_symbol_id,
            "cash_received": self.cash_received,
            "realized_gain": self.realized_gain,
            "created_by": created_by,
        }


def cost_basis_preserved(
    original_quantity: Decimal,
    original_price: Decimal,
    adjusted_quantity: Decimal,
    adjusted_price: Decimal,
    tolerance: Decimal = Decimal("0.0001"),
) -> bool:
    """Check q*p is conserved within a relative tolerance or the rounding error bound.

    Rounding quantity and price to ``PRECISION`` moves the product by at most
    half a unit of each, scaled by the other factor.
    """
    original_value = original_quantity * original_price
    adjusted_value = adjusted_quantity * adjusted_price
    diff = abs(original_value - adjusted_value)
    rounding_bound = HALF_UNIT * (abs(adjusted_quantity) + abs(adjusted_price)) + HALF_UNIT * HALF_UNIT
    return diff <= max(abs(original_value) * tolerance, rounding_bound)


def dividend_tax_status(action: Any) -> DividendTaxStatus:
    """Qualified iff the action is flagged qualified"""
    if action.qualified_dividend:
        return DividendTaxStatus.QUALIFIED
    return DividendTaxStatus.ORDINARY


def estimate_withholding(
    total_dividend: Decimal,
    tax_status: DividendTaxStatus,
    qualified_rate: Decimal,
    ordinary_rate: Decimal,
) -> Decimal:
    if tax_status == DividendTaxStatus.QUALIFIED:
        rate = qualified_rate
    elif tax_status == DividendTaxStatus.ORDINARY:
        rate = ordinary_rate
    else:
        rate = ZERO
    return quantize(total_dividend * rate)


def _split_reason(action: Any, label: str) -> str:
    ratio = f"{format_decimal(action.ratio_to)}:{format_decimal(action.ratio_from)}"
    reason = f"{ratio} {label}"
    if action.description:
        reason = f"{reason} - {action.description}"
    return reason[:500]


def _rescale(lot: AffectedLot, numerator: Decimal, denominator: Decimal) -> Dict[str, Decimal]:
    """Multiply quantity by numerator/denominator and price by the inverse"""
    return {
        "adjusted_quantity": quantize(lot.quantity * numerator / denominator),
        "adjusted_price": quantize(lot.price * denominator / numerator),
    }


def calculate_stock_split(action: Any, lots: Sequence[AffectedLot]) -> List[AdjustmentDraft]:
    reason = _split_reason(action, "stock split")
    return [
        AdjustmentDraft(
            original_transaction_id=lot.transaction_id,
            fifo_lot_order=lot.fifo_lot_order,
            adjustment_type=AdjustmentType.QUANTITY_PRICE,
            reason=reason,
            original_quantity=lot.quantity,
            original_price=lot.price,
            **_rescale(lot, action.ratio_to, action.ratio_from),
        )
        for lot in lots
    ]


def calculate_stock_dividend(action: Any, lots: Sequence[AffectedLot]) -> List[AdjustmentDraft]:
    if action.ratio_from is not None and action.ratio_to is not None:
        numerator, denominator = action.ratio_to, action.ratio_from
        reason = _split_reason(action, "stock dividend")
    else:
        numerator, denominator = ONE + action.dividend_amount, ONE
        reason = f"{format_decimal(action.dividend_amount)} per share stock dividend"
        if action.description:
            reason = f"{reason} - {action.description}"[:500]

    return [
        AdjustmentDraft(
            original_transaction_id=lot.transaction_id,
            fifo_lot_order=lot.fifo_lot_order,
            adjustment_type=AdjustmentType.QUANTITY_PRICE,
            reason=reason,
            original_quantity=lot.quantity,
            original_price=lot.price,
            **_rescale(lot, numerator, denominator),
        )
        for lot in lots
    ]


def calculate_cash_dividend(action: Any, lots: Sequence[AffectedLot]) -> List[AdjustmentDraft]:
    amount = action.dividend_amount
    tax_status = dividend_tax_status(action)
    currency = action.dividend_currency or "USD"
    reason = f"{currency} {format_decimal(amount)} dividend"
    if action.description:
        reason = f"{reason} - {action.description}"[:500]

    return [
        AdjustmentDraft(
            original_transaction_id=lot.transaction_id,
            fifo_lot_order=lot.fifo_lot_order,
            adjustment_type=AdjustmentType.CASH_RECEIPT,
            reason=reason,
            original_quantity=lot.quantity,
            original_price=lot.price,
            adjusted_quantity=lot.quantity,
            adjusted_price=lot.price,
            dividend_per_share=amount,
            total_dividend=quantize(lot.quantity * amount),
            dividend_tax_status=tax_status,
        )
        for lot in lots
    ]


def _merger_draft(action: Any, lot: AffectedLot, reason: str, **values: Any) -> AdjustmentDraft:
    return AdjustmentDraft(
        original_transaction_id=lot.transaction_id,
        fifo_lot_order=lot.fifo_lot_order,
        adjustment_type=AdjustmentType.MERGER_EXCHANGE,
        reason=reason,
        original_quantity=lot.quantity,
        original_price=lot.price,
        new_symbol_id=action.new_symbol_id,
        **values,
    )


def calculate_merger(action: Any, lots: Sequence[AffectedLot]) -> List[AdjustmentDraft]:
    """Record the exchange for each lot.

    Moving lots to the new symbol is left to the lot-history provider; the
    adjustment only carries the multiplier and ``new_symbol_id``.
    """
    merger_type = action.merger_type
    ratio = action.exchange_ratio
    cash_per_share = action.cash_consideration
    drafts = []

    if merger_type == MergerType.STOCK_FOR_STOCK:
        reason = f"Stock-for-stock merger: {format_decimal(ratio)} exchange ratio"
        for lot in lots:
            drafts.append(_merger_draft(action, lot, reason, **_rescale(lot, ratio, ONE)))

    elif merger_type == MergerType.CASH_FOR_STOCK:
        reason = f"Cash merger: {format_decimal(cash_per_share)} per share"
        for lot in lots:
            cash = quantize(lot.quantity * cash_per_share)
            drafts.append(_merger_draft(
                action, lot, reason,
                adjusted_quantity=ZERO,
                adjusted_price=ZERO,
                cash_received=cash,
                realized_gain=quantize(cash - lot.cost_basis),
            ))

    elif merger_type == MergerType.MIXED_CONSIDERATION:
        reason = (
            f"Mixed merger: {format_decimal(ratio)} ratio + "
            f"{format_decimal(cash_per_share)} cash per share"
        )
        for lot in lots:
            basis = lot.cost_basis
            cash = lot.quantity * cash_per_share
            basis_to_cash = min(cash, basis)
            new_quantity = lot.quantity * ratio
            remaining_basis = basis - basis_to_cash
            new_price = remaining_basis / new_quantity if new_quantity > 0 else ZERO
            drafts.append(_merger_draft(
                action, lot, reason,
                adjusted_quantity=quantize(new_quantity),
                adjusted_price=quantize(new_price),
                cash_received=quantize(cash),
                realized_gain=quantize(cash - basis_to_cash),
            ))

    else:
        raise UnsupportedTypeError("merger", f"merger type {merger_type} has no calculator")

    return drafts


_CALCULATORS = {
    CorporateActionType.STOCK_SPLIT: calculate_stock_split,
    CorporateActionType.CASH_DIVIDEND: calculate_cash_dividend,
    CorporateActionType.STOCK_DIVIDEND: calculate_stock_dividend,
    CorporateActionType.MERGER: calculate_merger,
}


def ensure_supported(action: Any) -> None:
    """Raise UnsupportedTypeError for declared types with no algorithm"""
    if action.action_type not in SUPPORTED_ACTION_TYPES:
        action_type = getattr(action.action_type, "value", action.action_type)
        raise UnsupportedTypeError(action_type)


def compute_adjustments(action: Any, lots: Sequence[AffectedLot]) -> List[AdjustmentDraft]:
    """Compute one adjustment draft per affected lot, in FIFO order"""
    ensure_supported(action)
    calculator = _CALCULATORS[action.action_type]
    return calculator(action, lots)
