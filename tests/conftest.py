"""
Pytest configuration and fixtures
"""

import os
import tempfile

# Settings are read at import time; keep the app off the real database and
# without background jobs during tests
_TMP_DIR = tempfile.mkdtemp(prefix="gateway-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_TMP_DIR, 'app.db')}")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool
from typing import AsyncGenerator

from models import Base, IntegrationRule, OrgUnit
from models.base import AuthType, DeliveryMode, RetryStrategy, TransformMode
from gateway.store import DeliveryStore

# Override with a PostgreSQL URL to run against the production dialect
TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL")


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create test database engine"""
    url = TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"
    engine = create_async_engine(
        url,
        echo=False,
        poolclass=NullPool,  # Disable connection pooling for tests
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables after test
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def store(session_factory) -> DeliveryStore:
    return DeliveryStore(session_factory)


@pytest_asyncio.fixture
async def org_tree(db_session):
    """
    Org 1 hierarchy:

        1 (org)
        ├── 10 (region)
        │   ├── 100 (clinic)
        │   └── 101 (clinic)
        └── 11 (region)
    """
    db_session.add_all([
        OrgUnit(id=1, org_id=1, parent_id=None, name="Acme Health"),
        OrgUnit(id=10, org_id=1, parent_id=1, name="North"),
        OrgUnit(id=11, org_id=1, parent_id=1, name="South"),
        OrgUnit(id=100, org_id=1, parent_id=10, name="North Clinic A"),
        OrgUnit(id=101, org_id=1, parent_id=10, name="North Clinic B"),
    ])
    await db_session.commit()
    return {"org": 1, "regions": [10, 11], "clinics": [100, 101]}


@pytest.fixture
def make_rule(db_session):
    """Insert an IntegrationRule with sensible defaults"""

    async def _make_rule(**overrides) -> IntegrationRule:
        values = dict(
            name="Appointment webhook",
            org_id=1,
            org_unit_id=1,
            event_type="APPOINTMENT_CONFIRMATION",
            target_url="https://hooks.example.com/events",
            http_method="POST",
            auth_type=AuthType.NONE,
            transform_mode=TransformMode.SIMPLE,
            delivery_mode=DeliveryMode.IMMEDIATE,
            timeout_ms=5000,
            retry_count=3,
            retry_strategy=RetryStrategy.FIXED,
            is_active=True,
        )
        values.update(overrides)
        rule = IntegrationRule(**values)
        db_session.add(rule)
        await db_session.commit()
        await db_session.refresh(rule)
        return rule

    return _make_rule


@pytest.fixture
def sample_payload():
    """Appointment event payload"""
    return {
        "patientRid": "P-1001",
        "patient": {"name": "  Asha Rao ", "phone": "9876543210", "gender": "F"},
        "appointmentDateTime": "2024-01-15T10:00:00Z",
        "status": "CONFIRMED",
        "items": [{"code": "cbc"}, {"code": "lft"}],
    }
