"""
Centralized Test Configuration.
"""

from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from labops.app.core.tenant_context import TenantContext
from labops.app.db.session import Base
from labops.app.domain.geo import geohash
from labops.app.models.logistics_enums import StopType
from labops.app.repositories.logistics import LogisticsRepository
from labops.app.services.events import InMemoryEventPublisher
from labops.app.services.governance import GovernanceService

# Register every table on Base.metadata
from labops.app.models import audit_log, custody_event, lab_case, pickup_request, route, route_stop  # noqa: F401

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Clinic registered at 40.0, -75.0; points roughly 20 m and 150 m north of it
CLINIC_GEO_HASH = geohash.encode(40.0, -75.0)
NEAR_CLINIC_GEO_HASH = geohash.encode(40.00018, -75.0)
FAR_FROM_CLINIC_GEO_HASH = geohash.encode(40.00135, -75.0)
LAB_GEO_HASH = geohash.encode(40.05, -75.1)


@pytest.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        """Enable foreign keys; let SQLAlchemy emit BEGIN so SAVEPOINT works."""
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    
    yield engine
    
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def db_session(engine):
    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    async with session_factory() as session:
        yield session


@pytest.fixture
def lab_a():
    return TenantContext(lab_id="lab-a", user_id="dispatcher-1", role_id="Dispatcher")


@pytest.fixture
def lab_b():
    return TenantContext(lab_id="lab-b", user_id="dispatcher-9", role_id="Dispatcher")


@pytest.fixture
def publisher():
    return InMemoryEventPublisher()


@pytest.fixture
def service(db_session, publisher):
    return GovernanceService(db_session, publisher)


@pytest.fixture
def now():
    return datetime.now(timezone.utc)


@pytest.fixture
async def delivery_route(db_session, lab_a):
    """
    Scheduled route for lab-a with two delivery stops carrying three cases.
    
    Returns a dict of ids.
    """
    repository = LogisticsRepository(db_session)
    case_1 = await repository.create_case(lab_a, clinic_id="clinic-1", case_number="C-1001", unit_ids=["u-1"])
    case_2 = await repository.create_case(lab_a, clinic_id="clinic-1", case_number="C-1002")
    case_3 = await repository.create_case(lab_a, clinic_id="clinic-2", case_number="C-1003")
    route = await repository.create_route(
        lab_a,
        route_date=date.today() + timedelta(days=1),
        driver_id="driver-7",
        vehicle_id="van-3",
        driver_name="Dana Driver",
        origin_geo_hash=LAB_GEO_HASH,
        origin_address="1 Lab Way",
    )
    stop_1 = await repository.add_stop(
        lab_a, route, "clinic-1", StopType.DELIVERY, 1,
        clinic_geo_hash=CLINIC_GEO_HASH,
        case_ids=[case_1.id, case_2.id],
    )
    stop_2 = await repository.add_stop(
        lab_a, route, "clinic-2", StopType.DELIVERY, 2,
        clinic_geo_hash=geohash.encode(40.02, -75.03),
        case_ids=[case_3.id],
    )
    await db_session.commit()
    return {
        "route_id": route.id,
        "stop_ids": [stop_1.id, stop_2.id],
        "case_ids": [case_1.id, case_2.id, case_3.id],
    }
