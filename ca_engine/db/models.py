from sqlalchemy import String, Numeric, DateTime, Date, Boolean, Text, Enum, ForeignKey, Index, Integer
from sqlalchemy.orm import Mapped, mapped_column, relationship
from decimal import Decimal
from datetime import datetime, date
from typing import Optional, List
import enum

from ca_engine.core.database import Base


# Fixed precision for quantities, prices and cash amounts
AMOUNT = Numeric(18, 4)


class TransactionType(str, enum.Enum):
    """Transaction type enumeration"""
    BUY = "buy"
    SELL = "sell"
    DIVIDEND = "dividend"
    INTEREST = "interest"


class CorporateActionType(str, enum.Enum):
    """Corporate action type enumeration"""
    STOCK_SPLIT = "stock_split"
    CASH_DIVIDEND = "cash_dividend"
    STOCK_DIVIDEND = "stock_dividend"
    MERGER = "merger"
    SPINOFF = "spinoff"
    RETURN_OF_CAPITAL = "return_of_capital"


class CorporateActionStatus(str, enum.Enum):
    """Corporate action status enumeration"""
    PENDING = "pending"
    APPLIED = "applied"
    REVERSED = "reversed"
    CANCELLED = "cancelled"


class MergerType(str, enum.Enum):
    """Merger consideration enumeration"""
    STOCK_FOR_STOCK = "stock_for_stock"
    CASH_FOR_STOCK = "cash_for_stock"
    MIXED_CONSIDERATION = "mixed_consideration"


class AdjustmentType(str, enum.Enum):
    """Kind of effect an adjustment records on a lot"""
    QUANTITY_PRICE = "quantity_price"
    CASH_RECEIPT = "cash_receipt"
    MERGER_EXCHANGE = "merger_exchange"


class DividendTaxStatus(str, enum.Enum):
    """Tax classification of a dividend adjustment"""
    QUALIFIED = "qualified"
    ORDINARY = "ordinary"
    RETURN_OF_CAPITAL = "return_of_capital"
    NOT_APPLICABLE = "n/a"


class Instrument(Base):
    """Instrument model, resolved by the symbol resolver"""
    __tablename__ = "instruments"

    symbol: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Relationships
    transactions: Mapped[List["Transaction"]] = relationship("Transaction", back_populates="instrument")
    corporate_actions: Mapped[List["CorporateAction"]] = relationship(
        "CorporateAction",
        back_populates="instrument",
        foreign_keys="CorporateAction.symbol_id",
    )


class Transaction(Base):
    """Acquisition and disposal records, read as lots by the lot-history provider"""
    __tablename__ = "transactions"

    account_id: Mapped[Optional[str]] = mapped_column(String(36))
    instrument_id: Mapped[str] = mapped_column(String(36), ForeignKey("instruments.id"))

    # Transaction details
    transaction_type: Mapped[TransactionType] = mapped_column(Enum(TransactionType))
    transaction_date: Mapped[date] = mapped_column(Date)

    # Quantities and prices
    quantity: Mapped[Decimal] = mapped_column(AMOUNT)
    price: Mapped[Decimal] = mapped_column(AMOUNT)
    currency: Mapped[str] = mapped_column(String(3), default="USD")

    notes: Mapped[Optional[str]] = mapped_column(Text)

    # Relationships
    instrument: Mapped["Instrument"] = relationship("Instrument", back_populates="transactions")
    adjustments: Mapped[List["TransactionAdjustment"]] = relationship(
        "TransactionAdjustment", back_populates="original_transaction"
    )

    __table_args__ = (
        Index("idx_transaction_instrument_date", "instrument_id", "transaction_date"),
    )


class CorporateAction(Base):
    """Corporate action model"""
    __tablename__ = "corporate_actions"

    symbol_id: Mapped[str] = mapped_column(String(36), ForeignKey("instruments.id"))

    # Action details
    action_type: Mapped[CorporateActionType] = mapped_column(Enum(CorporateActionType))
    status: Mapped[CorporateActionStatus] = mapped_column(
        Enum(CorporateActionStatus), default=CorporateActionStatus.PENDING
    )
    ex_date: Mapped[date] = mapped_column(Date)
    record_date: Mapped[Optional[date]] = mapped_column(Date)
    pay_date: Mapped[Optional[date]] = mapped_column(Date)
    description: Mapped[Optional[str]] = mapped_column(String(500))
    source: Mapped[str] = mapped_column(String(100), default="manual")

    # Unique creation order, breaks ex_date ties
    sequence_number: Mapped[int] = mapped_column(Integer, default=0)

    # Split parameters (e.g. 1 -> 2 for a 2:1 split)
    ratio_from: Mapped[Optional[Decimal]] = mapped_column(AMOUNT)
    ratio_to: Mapped[Optional[Decimal]] = mapped_column(AMOUNT)

    # Dividend parameters
    dividend_amount: Mapped[Optional[Decimal]] = mapped_column(AMOUNT)
    dividend_currency: Mapped[Optional[str]] = mapped_column(String(3), default="USD")
    qualified_dividend: Mapped[bool] = mapped_column(Boolean, default=False)

    # Merger parameters
    merger_type: Mapped[Optional[MergerType]] = mapped_column(Enum(MergerType))
    new_symbol_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("instruments.id"))
    exchange_ratio: Mapped[Optional[Decimal]] = mapped_column(AMOUNT)
    cash_consideration: Mapped[Optional[Decimal]] = mapped_column(AMOUNT)

    # Audit trail
    applied_by: Mapped[Optional[str]] = mapped_column(String(100))
    applied_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    reversed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    reversal_reason: Mapped[Optional[str]] = mapped_column(String(500))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Relationships
    instrument: Mapped["Instrument"] = relationship(
        "Instrument", back_populates="corporate_actions", foreign_keys=[symbol_id]
    )
    adjustments: Mapped[List["TransactionAdjustment"]] = relationship(
        "TransactionAdjustment", back_populates="corporate_action"
    )

    __table_args__ = (
        Index("idx_corporate_action_symbol", "symbol_id"),
        Index("idx_corporate_action_ex_date", "ex_date"),
        Index("idx_corporate_action_status", "status"),
        Index("uq_corporate_action_sequence", "sequence_number", unique=True),
    )


class TransactionAdjustment(Base):
    """Per-lot effect of one applied corporate action"""
    __tablename__ = "transaction_adjustments"

    corporate_action_id: Mapped[str] = mapped_column(String(36), ForeignKey("corporate_actions.id"))
    original_transaction_id: Mapped[str] = mapped_column(String(36), ForeignKey("transactions.id"))

    # Classification
    adjustment_type: Mapped[AdjustmentType] = mapped_column(Enum(AdjustmentType))
    reason: Mapped[str] = mapped_column(String(500))
    fifo_lot_order: Mapped[int] = mapped_column(Integer)

    # Values the adjustment was computed from
    original_quantity: Mapped[Decimal] = mapped_column(AMOUNT)
    original_price: Mapped[Decimal] = mapped_column(AMOUNT)

    # Adjusted values
    adjusted_quantity: Mapped[Decimal] = mapped_column(AMOUNT)
    adjusted_price: Mapped[Decimal] = mapped_column(AMOUNT)

    # Dividend fields
    dividend_per_share: Mapped[Optional[Decimal]] = mapped_column(AMOUNT)
    total_dividend: Mapped[Optional[Decimal]] = mapped_column(AMOUNT)
    dividend_tax_status: Mapped[DividendTaxStatus] = mapped_column(
        Enum(DividendTaxStatus), default=DividendTaxStatus.NOT_APPLICABLE
    )

    # Merger fields
    new_symbol_id: Mapped[Optional[str]] = mapped_column(String(36))
    cash_received: Mapped[Optional[Decimal]] = mapped_column(AMOUNT)
    realized_gain: Mapped[Optional[Decimal]] = mapped_column(AMOUNT)

    # Reversal
    is_reversed: Mapped[bool] = mapped_column(Boolean, default=False)
    reversed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    reversed_by: Mapped[Optional[str]] = mapped_column(String(100))
    reversal_reason: Mapped[Optional[str]] = mapped_column(String(500))

    created_by: Mapped[str] = mapped_column(String(100), default="system")

    # Relationships
    corporate_action: Mapped["CorporateAction"] = relationship("CorporateAction", back_populates="adjustments")
    original_transaction: Mapped["Transaction"] = relationship("Transaction", back_populates="adjustments")

    __table_args__ = (
        Index("idx_adjustment_action_lot", "corporate_action_id", "fifo_lot_order"),
        Index("idx_adjustment_transaction", "original_transaction_id"),
    )
