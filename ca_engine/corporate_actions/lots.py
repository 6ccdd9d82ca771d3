"""
Lot-history and symbol collaborators, and lot discovery.

The collaborators are external: the engine only reads from them. The default
SQL implementations read the host application's ``transactions`` and
``instruments`` tables.
"""
from abc import ABC, abstractmethod
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, or_
import structlog

from ca_engine.db.models import Instrument, Transaction, TransactionAdjustment, TransactionType
from ca_engine.corporate_actions.calculators import AffectedLot, Lot, ZERO
from ca_engine.corporate_actions.errors import LotOrderingError


logger = structlog.get_logger("corporate_actions.lots")


class LotHistoryProvider(ABC):
    """Source of acquisition lots for a symbol"""

    @abstractmethod
    async def lots_for_symbol(self, symbol_id: str, up_to: date) -> Sequence[Lot]:
        """Return all lots acquired on or before ``up_to``, oldest first.

        The returned order is authoritative for FIFO lot numbering.
        """


class SymbolResolver(ABC):
    """Resolves symbol references to stable symbol ids"""

    @abstractmethod
    async def resolve(self, symbol_ref: str) -> Optional[str]:
        """Return the stable id for ``symbol_ref`` or None when unknown"""


class SqlLotHistoryProvider(LotHistoryProvider):
    """Reads buy transactions as lots"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def lots_for_symbol(self, symbol_id: str, up_to: date) -> List[Lot]:
        result = await self.db.execute(
            select(Transaction)
            .where(
                and_(
                    Transaction.instrument_id == symbol_id,
                    Transaction.transaction_type == TransactionType.BUY,
                    Transaction.transaction_date <= up_to,
                )
            )
            .order_by(Transaction.transaction_date.asc(), Transaction.created_at.asc(), Transaction.id.asc())
        )
        return [
            Lot(
                transaction_id=txn.id,
                acquisition_date=txn.transaction_date,
                quantity=txn.quantity,
                price=txn.price,
            )
            for txn in result.scalars().all()
        ]


class SqlSymbolResolver(SymbolResolver):
    """Resolves an instrument id or ticker symbol against the instruments table"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve(self, symbol_ref: str) -> Optional[str]:
        if not symbol_ref:
            return None
        result = await self.db.execute(
            select(Instrument.id).where(
                or_(Instrument.id == symbol_ref, Instrument.symbol == symbol_ref)
            )
        )
        return result.scalars().first()


def ensure_fifo_order(lots: Sequence[Lot]) -> None:
    """Fail loudly if the provider broke its ascending-date contract"""
    for previous, current in zip(lots, lots[1:]):
        if current.acquisition_date < previous.acquisition_date:
            raise LotOrderingError(
                f"Lot {current.transaction_id} acquired {current.acquisition_date} "
                f"is listed after lot {previous.transaction_id} acquired {previous.acquisition_date}"
            )


def discover_affected_lots(
    lots: Sequence[Lot],
    ex_date: date,
    prior_adjustments: Iterable[TransactionAdjustment] = (),
) -> List[AffectedLot]:
    """Select lots held at the ex-date and number them in FIFO order.

    ``prior_adjustments`` are active adjustments of earlier applied actions on
    the same symbol, oldest first. The last one per lot wins, so a dividend
    declared after a split pays on the post-split quantity. Lots whose
    effective quantity dropped to zero (closed by a cash merger) are skipped.
    """
    ensure_fifo_order(lots)

    latest: Dict[str, TransactionAdjustment] = {}
    for adjustment in prior_adjustments:
        latest[adjustment.original_transaction_id] = adjustment

    affected = []
    for order, lot in enumerate(lot for lot in lots if lot.acquisition_date <= ex_date):
        quantity, price = lot.quantity, lot.price
        prior = latest.get(lot.transaction_id)
        if prior is not None:
            quantity, price = prior.adjusted_quantity, prior.adjusted_price
        if quantity <= ZERO:
            continue
        affected.append(
            AffectedLot(
                transaction_id=lot.transaction_id,
                acquisition_date=lot.acquisition_date,
                fifo_lot_order=order,
                quantity=quantity,
                price=price,
                source_quantity=lot.quantity,
                source_price=lot.price,
            )
        )

    return affected
