"""
Test configuration and shared fixtures for the corporate action engine test suite.
"""
import pytest
import pytest_asyncio
import os
from datetime import datetime, date, timezone
from decimal import Decimal
from typing import AsyncGenerator, Callable, Dict
import httpx
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from faker import Faker

# Set test environment before importing engine modules
os.environ.setdefault("ENVIRONMENT", "test")
if os.path.exists(".env.test"):
    from dotenv import load_dotenv
    load_dotenv(".env.test")

# Override database URL for tests to ensure SQLite
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from jose import jwt

from ca_engine.main import create_application
from ca_engine.core.config import settings
from ca_engine.core.database import Base, get_db
from ca_engine.db.models import Instrument, Transaction, TransactionType
from ca_engine.corporate_actions.service import CorporateActionEngine


# Configure Faker for consistent test data
fake = Faker()
fake.seed_instance(42)

# Every ex-date used in the tests is before this
FIXED_NOW = datetime(2025, 1, 2, 21, 0, tzinfo=timezone.utc)


def create_test_engine(database_url: str = "sqlite+aiosqlite:///:memory:"):
    """Create a test database engine optimized for SQLite."""
    return create_async_engine(
        database_url,
        poolclass=StaticPool,
        connect_args={
            "check_same_thread": False,
        },
        echo=False
    )


@pytest_asyncio.fixture
async def test_engine():
    """Fresh in-memory database per test."""
    engine = create_test_engine()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async_session_maker = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    return lambda: FIXED_NOW


@pytest.fixture
def engine(db_session, fixed_clock) -> CorporateActionEngine:
    """Engine over the default SQL collaborators with a frozen clock."""
    return CorporateActionEngine(db_session, clock=fixed_clock)


@pytest_asyncio.fixture
async def client(db_session) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with dependency overrides."""
    app = create_application()

    app.dependency_overrides[get_db] = lambda: db_session

    async with AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> Dict[str, str]:
    token = jwt.encode({"sub": "analyst@example.com"}, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return {"Authorization": f"Bearer {token}"}


# ============================================================================
# Data Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def instruments(db_session: AsyncSession) -> Dict[str, Instrument]:
    """ACME (the subject of most actions), NEWCO (merger target) and an idle OTHER."""
    created = {}
    for symbol in ("ACME", "NEWCO", "OTHER"):
        instrument = Instrument(symbol=symbol, name=fake.company(), currency="USD")
        db_session.add(instrument)
        created[symbol] = instrument

    await db_session.commit()
    return created


@pytest.fixture
def make_lot(db_session: AsyncSession):
    """Factory for buy transactions."""
    async def _make_lot(
        instrument: Instrument,
        transaction_date: date,
        quantity: str,
        price: str,
        transaction_type: TransactionType = TransactionType.BUY,
    ) -> Transaction:
        transaction = Transaction(
            account_id=fake.uuid4(),
            instrument_id=instrument.id,
            transaction_type=transaction_type,
            transaction_date=transaction_date,
            quantity=Decimal(quantity),
            price=Decimal(price),
        )
        db_session.add(transaction)
        await db_session.commit()
        return transaction

    return _make_lot


@pytest_asyncio.fixture
async def acme_lots(instruments, make_lot) -> list[Transaction]:
    """Two lots held through mid-2024 and one bought after."""
    acme = instruments["ACME"]
    return [
        await make_lot(acme, date(2024, 1, 10), "100", "50.00"),
        await make_lot(acme, date(2024, 2, 15), "50", "60.00"),
        await make_lot(acme, date(2024, 9, 1), "10", "80.00"),
    ]


@pytest.fixture
def action_attrs(instruments) -> Callable[..., dict]:
    """Attribute factory for valid actions of each type, on ACME by default."""
    def _action_attrs(action_type: str, **overrides) -> dict:
        defaults = {
            "stock_split": {"ratio_from": Decimal("1"), "ratio_to": Decimal("2")},
            "cash_dividend": {"dividend_amount": Decimal("0.50")},
            "stock_dividend": {"ratio_from": Decimal("10"), "ratio_to": Decimal("11")},
            "merger": {
                "merger_type": "stock_for_stock",
                "exchange_ratio": Decimal("1.5"),
                "new_symbol_id": instruments["NEWCO"].id,
            },
            "spinoff": {},
            "return_of_capital": {},
        }[action_type]
        attrs = {
            "action_type": action_type,
            "symbol_id": instruments["ACME"].id,
            "ex_date": date(2024, 6, 1),
            "description": fake.sentence(nb_words=6),
            **defaults,
        }
        attrs.update(overrides)
        return attrs

    return _action_attrs


# ============================================================================
# Test Utilities
# ============================================================================

@pytest.fixture
def assert_decimal_equal():
    """Utility for comparing decimal values with tolerance."""
    def _assert_decimal_equal(actual: Decimal, expected: Decimal, tolerance: Decimal = Decimal("0.0001")):
        """Assert that two decimal values are equal within tolerance."""
        diff = abs(Decimal(actual) - Decimal(expected))
        assert diff <= tolerance, f"Expected {expected}, got {actual}, difference: {diff}"

    return _assert_decimal_equal
