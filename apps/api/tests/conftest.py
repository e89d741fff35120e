"""
Test configuration and fixtures.

Provides:
- A fresh database per test (SQLite file by default, DATABASE_URL to override)
- Tenant / staff / catalog / client fixtures
- JWT session minting for authenticated tests
- HTTPX AsyncClient with proper headers
"""
import os
import tempfile
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Generator

# Configure before the app (and its engine) is imported
_TEST_DB_DIR = tempfile.mkdtemp(prefix="salon_agenda_tests_")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TEST_DB_DIR}/test.db")
os.environ["TESTING"] = "1"

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.orm import Session

from salon_agenda.main import app
from salon_agenda.core.deps import get_db, COOKIE_NAME, CSRF_HEADER, CSRF_HEADER_VALUE
from salon_agenda.core.rate_limit import limiter
from salon_agenda.core.security import create_session_token
from salon_agenda.db.base import Base
from salon_agenda.db.enums import Role
from salon_agenda.db.models import Cabin, Client, Service, TeamMember, Tenant, User
from salon_agenda.db.session import engine, SessionLocal

from helpers import ALL_WEEK_9_TO_5, TENANT_TZ


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Fresh schema per test.

    Services commit for real (booking atomicity depends on it), so each
    test starts from empty tables instead of a rolled-back savepoint.
    """
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def reset_rate_limits():
    limiter.reset()
    yield


@pytest.fixture(scope="function")
def booking_day() -> date:
    """A tenant-local day inside the public booking window, past any lead time."""
    return datetime.now(timezone.utc).astimezone(TENANT_TZ).date() + timedelta(days=3)


@pytest.fixture(scope="function")
def test_tenant(db: Session) -> Tenant:
    """Tenant open every day 09:00-17:00 in America/Guatemala."""
    tenant = Tenant(
        id=uuid.uuid4(),
        name="Spa Luna",
        slug=f"spa-luna-{uuid.uuid4().hex[:8]}",
        timezone="America/Guatemala",
        business_hours=ALL_WEEK_9_TO_5,
        phone="+502 2222-0000",
    )
    db.add(tenant)
    db.commit()
    return tenant


@pytest.fixture(scope="function")
def other_tenant(db: Session) -> Tenant:
    tenant = Tenant(
        id=uuid.uuid4(),
        name="Otro Salon",
        slug=f"otro-{uuid.uuid4().hex[:8]}",
        timezone="America/Guatemala",
        business_hours=ALL_WEEK_9_TO_5,
    )
    db.add(tenant)
    db.commit()
    return tenant


@pytest.fixture(scope="function")
def owner_user(db: Session, test_tenant: Tenant) -> User:
    user = User(
        id=uuid.uuid4(),
        tenant_id=test_tenant.id,
        email=f"owner-{uuid.uuid4().hex[:8]}@test.com",
        display_name="Owner",
        role=Role.OWNER.value,
    )
    db.add(user)
    db.commit()
    return user


@pytest.fixture(scope="function")
def staff_user(db: Session, test_tenant: Tenant) -> User:
    user = User(
        id=uuid.uuid4(),
        tenant_id=test_tenant.id,
        email=f"staff-{uuid.uuid4().hex[:8]}@test.com",
        display_name="Front Desk",
        role=Role.STAFF.value,
    )
    db.add(user)
    db.commit()
    return user


@pytest.fixture(scope="function")
def facial(db: Session, test_tenant: Tenant) -> Service:
    """60-minute service."""
    service = Service(
        id=uuid.uuid4(), tenant_id=test_tenant.id, name="Limpieza facial",
        duration=60, price=Decimal("250.00"),
    )
    db.add(service)
    db.commit()
    return service


@pytest.fixture(scope="function")
def manicure(db: Session, test_tenant: Tenant) -> Service:
    """30-minute service."""
    service = Service(
        id=uuid.uuid4(), tenant_id=test_tenant.id, name="Manicure",
        duration=30, price=Decimal("120.00"),
    )
    db.add(service)
    db.commit()
    return service


@pytest.fixture(scope="function")
def test_client_record(db: Session, test_tenant: Tenant) -> Client:
    client = Client(
        id=uuid.uuid4(), tenant_id=test_tenant.id, name="Ana Lopez", phone="+50255551234",
    )
    db.add(client)
    db.commit()
    return client


@pytest.fixture(scope="function")
def specialist(db: Session, test_tenant: Tenant) -> TeamMember:
    member = TeamMember(id=uuid.uuid4(), tenant_id=test_tenant.id, name="Maria")
    db.add(member)
    db.commit()
    return member


@pytest.fixture(scope="function")
def cabin(db: Session, test_tenant: Tenant) -> Cabin:
    room = Cabin(id=uuid.uuid4(), tenant_id=test_tenant.id, name="Cabina 1")
    db.add(room)
    db.commit()
    return room


# =============================================================================
# Auth Fixtures
# =============================================================================

@dataclass
class TestAuth:
    """Test authentication context."""
    user: User
    tenant: Tenant
    token: str
    cookie_name: str = COOKIE_NAME


def _auth_for(user: User, tenant: Tenant) -> TestAuth:
    token = create_session_token(
        user_id=user.id,
        tenant_id=tenant.id,
        role=user.role,
        token_version=user.token_version,
    )
    return TestAuth(user=user, tenant=tenant, token=token)


@pytest.fixture(scope="function")
def owner_auth(owner_user: User, test_tenant: Tenant) -> TestAuth:
    return _auth_for(owner_user, test_tenant)


@pytest.fixture(scope="function")
def staff_auth(staff_user: User, test_tenant: Tenant) -> TestAuth:
    return _auth_for(staff_user, test_tenant)


# =============================================================================
# Client Fixtures
# =============================================================================

def _override_db(db: Session):
    def override_get_db():
        yield db
    app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated AsyncClient for public endpoints."""
    _override_db(db)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def authed_client(
    db: Session,
    owner_auth: TestAuth,
) -> AsyncGenerator[AsyncClient, None]:
    """Owner AsyncClient with session cookie and CSRF header."""
    _override_db(db)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        cookies={owner_auth.cookie_name: owner_auth.token},
        headers={CSRF_HEADER: CSRF_HEADER_VALUE},
    ) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def staff_client(
    db: Session,
    staff_auth: TestAuth,
) -> AsyncGenerator[AsyncClient, None]:
    """Non-owner staff AsyncClient."""
    _override_db(db)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        cookies={staff_auth.cookie_name: staff_auth.token},
        headers={CSRF_HEADER: CSRF_HEADER_VALUE},
    ) as c:
        yield c
    app.dependency_overrides.clear()
