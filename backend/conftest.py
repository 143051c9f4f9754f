"""Shared fixtures for the GymOps API tests.

Every test gets its own SQLite database file, a session factory bound to it,
an httpx AsyncClient over the ASGI app with get_db pointed at that database,
and small factories for tenants, branches, plans and members.
"""

import os
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Configure settings BEFORE importing application modules; database.py builds
# its engine from DATABASE_URL at import time.
os.environ.setdefault("DATABASE_URL", "sqlite:///./gymops_test_unused.sqlite")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-gymops-tests")
os.environ.setdefault("DEFAULT_LOCALE", "en")

from auth import create_access_token, create_super_admin_token, get_password_hash
from database import Base, get_db
from main import app
from models import (
    BillingStatus, Branch, DurationType, Member, MemberStatus, MembershipPlan,
    PlanScope, Tenant, User, UserRole, TENANT_SCOPE_KEY,
)

TEST_PASSWORD = "correct-horse-battery"
# bcrypt is slow on purpose; hash once per run
TEST_PASSWORD_HASH = get_password_hash(TEST_PASSWORD)


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def tenant_token(user: User) -> str:
    return create_access_token(
        data={"sub": user.username, "user_id": user.id},
        tenant_id=user.tenant_id,
        expires_delta=timedelta(minutes=30),
    )


@dataclass
class TenantContext:
    tenant: Tenant
    admin: User
    staff: User
    branch: Branch

    @property
    def headers(self) -> Dict[str, str]:
        return bearer(tenant_token(self.admin))

    @property
    def staff_headers(self) -> Dict[str, str]:
        return bearer(tenant_token(self.staff))


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def db_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'gymops_test.sqlite'}",
        connect_args={"check_same_thread": False, "timeout": 15},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_tenant(session_factory):
    """Create a tenant with an admin, a staff user and a default branch."""
    async def _make(slug: str = "iron-gym", billing_status: BillingStatus = BillingStatus.ACTIVE,
                    is_active: bool = True, timezone: str = "Europe/Istanbul") -> TenantContext:
        now = datetime.utcnow()
        async with session_factory() as session:
            tenant = Tenant(
                name=f"{slug} fitness",
                slug=slug,
                owner_email=f"owner@{slug}.test",
                default_currency="TRY",
                timezone=timezone,
                is_active=is_active,
                billing_status=billing_status,
                billing_status_updated_at=now,
                trial_started_at=now,
                trial_ends_at=now + timedelta(days=7),
            )
            session.add(tenant)
            await session.flush()

            admin = User(
                tenant_id=tenant.id,
                username=f"{slug}-admin",
                email=f"admin@{slug}.test",
                hashed_password=TEST_PASSWORD_HASH,
                full_name="Gym Admin",
                role=UserRole.ADMIN,
                is_active=True,
            )
            staff = User(
                tenant_id=tenant.id,
                username=f"{slug}-staff",
                email=f"staff@{slug}.test",
                hashed_password=TEST_PASSWORD_HASH,
                full_name="Front Desk",
                role=UserRole.STAFF,
                is_active=True,
            )
            branch = Branch(tenant_id=tenant.id, name="Main Branch", is_default=True, is_active=True)
            session.add_all([admin, staff, branch])
            await session.commit()
            return TenantContext(tenant=tenant, admin=admin, staff=staff, branch=branch)

    return _make


@pytest.fixture()
def make_branch(session_factory):
    async def _make(tenant_id: int, name: str, archived: bool = False) -> Branch:
        async with session_factory() as session:
            branch = Branch(
                tenant_id=tenant_id,
                name=name,
                is_default=False,
                is_active=not archived,
                archived_at=datetime.utcnow() if archived else None,
            )
            session.add(branch)
            await session.commit()
            return branch

    return _make


@pytest.fixture()
def make_plan(session_factory):
    """Insert a plan directly, bypassing the uniqueness engine."""
    async def _make(tenant_id: int, name: str, branch_id: Optional[int] = None,
                    archived: bool = False, duration_type: DurationType = DurationType.MONTHS,
                    duration_value: int = 1) -> MembershipPlan:
        scope = PlanScope.BRANCH if branch_id is not None else PlanScope.TENANT
        async with session_factory() as session:
            plan = MembershipPlan(
                tenant_id=tenant_id,
                scope=scope,
                branch_id=branch_id,
                scope_key=str(branch_id) if branch_id is not None else TENANT_SCOPE_KEY,
                name=name,
                normalized_name=name.strip().casefold(),
                duration_type=duration_type,
                duration_value=duration_value,
                price=500.0,
                currency="TRY",
                auto_renew=False,
                archived_at=datetime.utcnow() if archived else None,
            )
            session.add(plan)
            await session.commit()
            return plan

    return _make


@pytest.fixture()
def make_member(session_factory):
    async def _make(tenant_id: int, branch_id: int, plan_id: int,
                    status: MemberStatus = MemberStatus.ACTIVE,
                    end_date: Optional[date] = None) -> Member:
        async with session_factory() as session:
            member = Member(
                tenant_id=tenant_id,
                branch_id=branch_id,
                membership_plan_id=plan_id,
                first_name="Ayse",
                last_name="Yilmaz",
                status=status,
                membership_start_date=date.today() - timedelta(days=10),
                membership_end_date=end_date or date.today() + timedelta(days=20),
            )
            session.add(member)
            await session.commit()
            return member

    return _make


@pytest_asyncio.fixture()
async def super_admin_headers(session_factory) -> Dict[str, str]:
    async with session_factory() as session:
        admin = User(
            tenant_id=None,
            username="platform-root",
            email="root@platform.test",
            hashed_password=TEST_PASSWORD_HASH,
            full_name="Platform Root",
            role=UserRole.ADMIN,
            is_active=True,
            is_super_admin=True,
        )
        session.add(admin)
        await session.commit()
    return bearer(create_super_admin_token(data={"sub": "platform-root"}))
