"""
Root test configuration and fixtures.

Provides:
- db_engine / db_session: fresh in-memory async SQLite database per test
- seed: factory for tenants, roles, memberships, billing and catalog rows
- process-wide singletons (settings, gate table, snapshot cache) reset
  around every test
"""

import os
import uuid
from datetime import datetime, timedelta
from typing import AsyncGenerator, Dict, Iterable, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tenant_authz.config.permission_gates import reset_permission_gate_table
from tenant_authz.config.settings import reset_settings
from tenant_authz.core.clock import utcnow
from tenant_authz.models.base import Base
from tenant_authz.iam.cache import reset_local_snapshot_cache
from tenant_authz.models import (
    AddOn,
    Agency,
    AgencyMembership,
    AgencySettings,
    EntitlementFeature,
    EntitlementOverride,
    FeatureValueType,
    OverrideScope,
    Permission,
    PlanFeature,
    Role,
    RolePermission,
    RoleScope,
    SubAccount,
    SubAccountMembership,
    SubAccountSettings,
    Subscription,
    SubscriptionStatus,
)

# Set test environment
os.environ.setdefault("ENV", "test")

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Drop process-wide caches so each test reads its own environment."""
    reset_settings()
    reset_permission_gate_table()
    reset_local_snapshot_cache()
    yield
    reset_settings()
    reset_permission_gate_table()
    reset_local_snapshot_cache()


@pytest_asyncio.fixture
async def db_engine():
    """In-memory SQLite engine with every table created."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    SessionLocal = sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    async with SessionLocal() as session:
        yield session
        await session.rollback()


# =============================================================================
# Seed factory
# =============================================================================


class Seeder:
    """Creates and flushes rows; ids are random unless given."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self._permissions: Dict[str, Permission] = {}

    async def _add(self, obj):
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def agency(self, name: str = "Acme Agency") -> Agency:
        return await self._add(Agency(id=str(uuid.uuid4()), name=name))

    async def subaccount(self, agency: Agency, name: str = "Acme Client") -> SubAccount:
        return await self._add(SubAccount(id=str(uuid.uuid4()), agency_id=agency.id, name=name))

    async def agency_settings(self, agency: Agency, inherit: Optional[bool]) -> AgencySettings:
        return await self._add(
            AgencySettings(agency_id=agency.id, entitlements_inherit_to_subaccounts=inherit)
        )

    async def subaccount_settings(self, subaccount: SubAccount, inherit: Optional[bool]) -> SubAccountSettings:
        return await self._add(
            SubAccountSettings(subaccount_id=subaccount.id, entitlements_inherit_from_agency=inherit)
        )

    async def permission(self, key: str, category: str = "General") -> Permission:
        if key not in self._permissions:
            self._permissions[key] = await self._add(
                Permission(
                    id=str(uuid.uuid4()),
                    key=key,
                    name=key.split(".")[-1].title(),
                    category=category,
                )
            )
        return self._permissions[key]

    async def role(
        self,
        agency: Optional[Agency],
        keys: Iterable[str] = (),
        scope: RoleScope = RoleScope.AGENCY,
        is_system: bool = False,
        name: Optional[str] = None,
    ) -> Role:
        role = await self._add(
            Role(
                id=str(uuid.uuid4()),
                agency_id=agency.id if agency else None,
                name=name or f"role-{uuid.uuid4().hex[:6]}",
                scope=scope.value,
                is_system=is_system,
            )
        )
        for key in keys:
            await self.grant(role, key)
        return role

    async def grant(self, role: Role, key: str, granted: bool = True) -> RolePermission:
        permission = await self.permission(key)
        return await self._add(
            RolePermission(
                id=str(uuid.uuid4()),
                role_id=role.id,
                permission_id=permission.id,
                granted=granted,
            )
        )

    async def agency_member(self, user_id: str, agency: Agency, role: Role, active: bool = True) -> AgencyMembership:
        return await self._add(
            AgencyMembership(
                id=str(uuid.uuid4()),
                user_id=user_id,
                agency_id=agency.id,
                role_id=role.id,
                is_active=active,
            )
        )

    async def subaccount_member(
        self,
        user_id: str,
        subaccount: SubAccount,
        role: Role,
        active: bool = True,
    ) -> SubAccountMembership:
        return await self._add(
            SubAccountMembership(
                id=str(uuid.uuid4()),
                user_id=user_id,
                subaccount_id=subaccount.id,
                role_id=role.id,
                is_active=active,
            )
        )

    async def subscription(
        self,
        agency: Agency,
        price_id: str = "price_base",
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        period_end: Optional[datetime] = None,
        trial_ended_at: Optional[datetime] = None,
    ) -> Subscription:
        return await self._add(
            Subscription(
                id=str(uuid.uuid4()),
                agency_id=agency.id,
                price_id=price_id,
                status=status.value,
                current_period_end_date=period_end or utcnow() + timedelta(days=30),
                trial_ended_at=trial_ended_at,
            )
        )

    async def addon(
        self,
        agency: Agency,
        price_id: str,
        active: bool = True,
        created_at: Optional[datetime] = None,
    ) -> AddOn:
        return await self._add(
            AddOn(
                id=str(uuid.uuid4()),
                agency_id=agency.id,
                price_id=price_id,
                active=active,
                created_at=created_at or utcnow(),
            )
        )

    async def feature(
        self,
        key: str,
        value_type: FeatureValueType = FeatureValueType.BOOLEAN,
        **kwargs,
    ) -> EntitlementFeature:
        kwargs.setdefault("name", key.split(".")[-1].replace("_", " ").title())
        return await self._add(EntitlementFeature(key=key, value_type=value_type.value, **kwargs))

    async def plan_feature(self, plan_id: str, feature_key: str, **kwargs) -> PlanFeature:
        return await self._add(
            PlanFeature(id=str(uuid.uuid4()), plan_id=plan_id, feature_key=feature_key, **kwargs)
        )

    async def override(
        self,
        agency: Agency,
        feature_key: str,
        subaccount: Optional[SubAccount] = None,
        starts_at: Optional[datetime] = None,
        ends_at: Optional[datetime] = None,
        **kwargs,
    ) -> EntitlementOverride:
        return await self._add(
            EntitlementOverride(
                id=str(uuid.uuid4()),
                scope=(OverrideScope.SUBACCOUNT if subaccount else OverrideScope.AGENCY).value,
                agency_id=agency.id,
                subaccount_id=subaccount.id if subaccount else None,
                feature_key=feature_key,
                starts_at=starts_at or utcnow() - timedelta(days=1),
                ends_at=ends_at,
                **kwargs,
            )
        )

    async def entitled_agency(self, feature_keys: Iterable[str] = ("org.agency.account",)) -> Agency:
        """Agency with an active base plan enabling the given boolean features."""
        agency = await self.agency()
        price_id = f"price_{uuid.uuid4().hex[:8]}"
        await self.subscription(agency, price_id=price_id)
        for key in feature_keys:
            if await self.session.get(EntitlementFeature, key) is None:
                await self.feature(key)
            await self.plan_feature(price_id, key, is_enabled=True)
        return agency


@pytest.fixture
def seed(db_session) -> Seeder:
    return Seeder(db_session)
