"""
Access snapshot store.

Per-(user, scope key) cache of {role_id, permission_keys, permission_hash, version}.

Two tiers composed as decorators over a common interface:
- PersistedAccessSnapshotSource: access_context_snapshots row, rebuilt from
  live membership + role grants when missing or inactive
- CachedAccessSnapshotSource: process-wide short-TTL map in front of any source

Read path:
    1. local cache hit -> return
    2. persisted active row -> cache, return
    3. active role for the scope -> compute keys + hash, upsert with a
       bumped version, cache, return
    4. no active role -> None ("no access", not an error)

Invalidation deletes rows (never patches them); the next read rebuilds.
Versions come from access_snapshot_versions, which survives deletion, so a
rebuild after invalidation always reports a higher version.

Writes are flushed, not committed; the caller owns the transaction.
"""

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_authz.core.clock import ensure_utc, utcnow
from tenant_authz.core.scope_key import ScopeLevel, agency_scope_key, subaccount_scope_key
from tenant_authz.iam.cache import LocalSnapshotCache, get_local_snapshot_cache, local_cache_key
from tenant_authz.iam.permission_keys import normalize_permission_keys
from tenant_authz.iam.role_permissions import get_granted_permission_keys_for_role
from tenant_authz.models.access_snapshot import AccessContextSnapshot, AccessSnapshotVersion
from tenant_authz.models.base import generate_uuid
from tenant_authz.models.membership import AgencyMembership, SubAccountMembership

logger = logging.getLogger(__name__)


def compute_permission_hash(keys: Iterable[str]) -> str:
    """sha256 hex of the compact JSON list of trimmed, de-duplicated, sorted keys."""
    normalized = normalize_permission_keys(keys)
    payload = json.dumps(normalized, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SnapshotRequest:
    """Identifies one snapshot and carries the ids needed to rebuild it."""
    user_id: str
    level: ScopeLevel
    agency_id: Optional[str] = None
    subaccount_id: Optional[str] = None

    @property
    def scope_key(self) -> str:
        if self.level == ScopeLevel.SUBACCOUNT:
            return subaccount_scope_key(self.subaccount_id)
        return agency_scope_key(self.agency_id)


@dataclass(frozen=True)
class AccessSnapshot:
    user_id: str
    scope_key: str
    scope: str  # ScopeLevel value
    role_id: Optional[str]
    permission_keys: Tuple[str, ...]
    permission_hash: str
    version: int
    updated_at: Optional[datetime]

    def has_key(self, permission_key: str) -> bool:
        return permission_key.strip() in self.permission_keys

    def to_dict(self) -> dict:
        return {
            "role_id": self.role_id,
            "permission_keys": list(self.permission_keys),
            "permission_hash": self.permission_hash,
        }


@dataclass(frozen=True)
class AccessSnapshotVersionInfo:
    user_id: str
    scope_key: str
    scope: str
    permission_hash: str
    permission_version: int
    updated_at: Optional[datetime]

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "scope_key": self.scope_key,
            "scope": self.scope,
            "permission_hash": self.permission_hash,
            "permission_version": self.permission_version,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------

class AccessSnapshotSource(ABC):
    """Interface shared by the persisted source and the caching decorator."""

    @abstractmethod
    async def read(self, request: SnapshotRequest) -> Optional[AccessSnapshot]:
        ...

    @abstractmethod
    async def invalidate(self, user_id: str, scope_key: str) -> None:
        ...

    @abstractmethod
    async def invalidate_by_role_id(self, role_id: str) -> List[Tuple[str, str]]:
        """Invalidate every snapshot built from role_id; returns (user_id, scope_key) pairs."""
        ...


_SNAPSHOT_COLUMNS = (
    AccessContextSnapshot.role_id,
    AccessContextSnapshot.permission_keys,
    AccessContextSnapshot.permission_hash,
    AccessContextSnapshot.version,
    AccessContextSnapshot.updated_at,
    AccessContextSnapshot.active,
    AccessContextSnapshot.scope,
)


class PersistedAccessSnapshotSource(AccessSnapshotSource):
    """access_context_snapshots table, rebuilt from live membership data on miss."""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _insert(self):
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise RuntimeError(f"Snapshot upsert not supported for database dialect {dialect!r}")
        return insert

    async def _get_active_role_id(self, request: SnapshotRequest) -> Optional[str]:
        if request.level == ScopeLevel.SUBACCOUNT:
            if not request.subaccount_id:
                return None
            stmt = select(SubAccountMembership.role_id).where(
                SubAccountMembership.user_id == request.user_id,
                SubAccountMembership.subaccount_id == request.subaccount_id,
                SubAccountMembership.is_active.is_(True),
            )
        else:
            if not request.agency_id:
                return None
            stmt = select(AgencyMembership.role_id).where(
                AgencyMembership.user_id == request.user_id,
                AgencyMembership.agency_id == request.agency_id,
                AgencyMembership.is_active.is_(True),
            )
        result = await self.session.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def _bump_version(self, user_id: str, scope_key: str, now: datetime) -> int:
        insert = self._insert()
        stmt = insert(AccessSnapshotVersion).values(
            user_id=user_id,
            scope_key=scope_key,
            version=1,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[AccessSnapshotVersion.user_id, AccessSnapshotVersion.scope_key],
            set_={"version": AccessSnapshotVersion.version + 1, "updated_at": now},
        )
        await self.session.execute(stmt)
        return await self.session.scalar(
            select(AccessSnapshotVersion.version).where(
                AccessSnapshotVersion.user_id == user_id,
                AccessSnapshotVersion.scope_key == scope_key,
            )
        )

    async def _upsert(
        self,
        request: SnapshotRequest,
        role_id: str,
        keys: List[str],
        permission_hash: str,
    ) -> AccessSnapshot:
        now = utcnow()
        scope_key = request.scope_key
        version = await self._bump_version(request.user_id, scope_key, now)

        values = {
            "scope": request.level.value,
            "role_id": role_id,
            "permission_keys": keys,
            "permission_hash": permission_hash,
            "version": version,
            "active": True,
            "updated_at": now,
        }
        insert = self._insert()
        stmt = insert(AccessContextSnapshot).values(
            id=generate_uuid(),
            user_id=request.user_id,
            scope_key=scope_key,
            created_at=now,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[AccessContextSnapshot.user_id, AccessContextSnapshot.scope_key],
            set_=values,
        )
        await self.session.execute(stmt)
        await self.session.flush()

        logger.info(
            "Access snapshot rebuilt",
            extra={
                "user_id": request.user_id,
                "scope_key": scope_key,
                "role_id": role_id,
                "version": version,
                "permission_count": len(keys),
            },
        )
        return AccessSnapshot(
            user_id=request.user_id,
            scope_key=scope_key,
            scope=request.level.value,
            role_id=role_id,
            permission_keys=tuple(keys),
            permission_hash=permission_hash,
            version=version,
            updated_at=now,
        )

    async def read(self, request: SnapshotRequest) -> Optional[AccessSnapshot]:
        scope_key = request.scope_key
        result = await self.session.execute(
            select(*_SNAPSHOT_COLUMNS).where(
                AccessContextSnapshot.user_id == request.user_id,
                AccessContextSnapshot.scope_key == scope_key,
            )
        )
        row = result.first()
        if row is not None and row.active:
            return AccessSnapshot(
                user_id=request.user_id,
                scope_key=scope_key,
                scope=row.scope,
                role_id=row.role_id,
                permission_keys=tuple(row.permission_keys or ()),
                permission_hash=row.permission_hash,
                version=row.version,
                updated_at=ensure_utc(row.updated_at),
            )

        role_id = await self._get_active_role_id(request)
        if not role_id:
            return None

        keys = await get_granted_permission_keys_for_role(self.session, role_id)
        return await self._upsert(request, role_id, keys, compute_permission_hash(keys))

    async def invalidate(self, user_id: str, scope_key: str) -> None:
        await self.session.execute(
            delete(AccessContextSnapshot).where(
                AccessContextSnapshot.user_id == user_id,
                AccessContextSnapshot.scope_key == scope_key,
            )
        )
        await self.session.flush()

    async def invalidate_by_role_id(self, role_id: str) -> List[Tuple[str, str]]:
        result = await self.session.execute(
            select(AccessContextSnapshot.user_id, AccessContextSnapshot.scope_key).where(
                AccessContextSnapshot.role_id == role_id
            )
        )
        pairs = [(user_id, scope_key) for user_id, scope_key in result.all()]
        if pairs:
            await self.session.execute(
                delete(AccessContextSnapshot).where(AccessContextSnapshot.role_id == role_id)
            )
            await self.session.flush()
        return pairs


class CachedAccessSnapshotSource(AccessSnapshotSource):
    """Local TTL cache decorator around another snapshot source."""

    def __init__(self, inner: AccessSnapshotSource, cache: LocalSnapshotCache):
        self.inner = inner
        self.cache = cache

    async def read(self, request: SnapshotRequest) -> Optional[AccessSnapshot]:
        key = local_cache_key(request.user_id, request.scope_key)
        hit = self.cache.get(key)
        if hit is not None:
            logger.debug("Access snapshot cache hit", extra={"cache_key": key})
            return hit

        snapshot = await self.inner.read(request)
        if snapshot is not None:
            self.cache.set(key, snapshot)
        return snapshot

    async def invalidate(self, user_id: str, scope_key: str) -> None:
        self.cache.delete(local_cache_key(user_id, scope_key))
        await self.inner.invalidate(user_id, scope_key)

    async def invalidate_by_role_id(self, role_id: str) -> List[Tuple[str, str]]:
        pairs = await self.inner.invalidate_by_role_id(role_id)
        for user_id, scope_key in pairs:
            self.cache.delete(local_cache_key(user_id, scope_key))
        return pairs


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class AccessSnapshotService:
    """
    Entry point for reading and invalidating access snapshots.

    Usage:
        snapshots = AccessSnapshotService(session)
        snap = await snapshots.get_agency_access_snapshot(user_id, agency_id)
        if snap and snap.has_key("org.billing.account.view"):
            ...
    """

    def __init__(
        self,
        session: AsyncSession,
        cache: Optional[LocalSnapshotCache] = None,
        source: Optional[AccessSnapshotSource] = None,
    ):
        self.session = session
        self.source = source or CachedAccessSnapshotSource(
            PersistedAccessSnapshotSource(session),
            cache if cache is not None else get_local_snapshot_cache(),
        )

    async def get_agency_access_snapshot(self, user_id: str, agency_id: str) -> Optional[AccessSnapshot]:
        return await self.source.read(
            SnapshotRequest(user_id=user_id, level=ScopeLevel.AGENCY, agency_id=agency_id)
        )

    async def get_subaccount_access_snapshot(self, user_id: str, subaccount_id: str) -> Optional[AccessSnapshot]:
        return await self.source.read(
            SnapshotRequest(user_id=user_id, level=ScopeLevel.SUBACCOUNT, subaccount_id=subaccount_id)
        )

    async def get_access_snapshot_for_user(
        self,
        user_id: str,
        scope: ScopeLevel,
        agency_id: str,
        subaccount_id: Optional[str] = None,
    ) -> Optional[AccessSnapshot]:
        """Subaccount level without a subaccount id yields None."""
        scope = ScopeLevel(scope)
        if scope == ScopeLevel.SUBACCOUNT and not subaccount_id:
            return None
        return await self.source.read(
            SnapshotRequest(
                user_id=user_id,
                level=scope,
                agency_id=agency_id,
                subaccount_id=subaccount_id,
            )
        )

    async def get_access_snapshot_version_for_user(
        self,
        user_id: str,
        scope: ScopeLevel,
        agency_id: str,
        subaccount_id: Optional[str] = None,
    ) -> Optional[AccessSnapshotVersionInfo]:
        snapshot = await self.get_access_snapshot_for_user(user_id, scope, agency_id, subaccount_id)
        if snapshot is None:
            return None
        return AccessSnapshotVersionInfo(
            user_id=user_id,
            scope_key=snapshot.scope_key,
            scope=snapshot.scope,
            permission_hash=snapshot.permission_hash,
            permission_version=snapshot.version,
            updated_at=snapshot.updated_at,
        )

    async def invalidate_access_snapshot(self, user_id: str, scope_key: str) -> None:
        await self.source.invalidate(user_id, scope_key)
        logger.info(
            "Access snapshot invalidated",
            extra={"user_id": user_id, "scope_key": scope_key},
        )

    async def invalidate_access_snapshots_by_role_id(self, role_id: str) -> int:
        """
        Invalidate every snapshot built from role_id.

        Must be called after any change to the role's grants.

        Returns:
            Number of (user, scope key) snapshots invalidated
        """
        pairs = await self.source.invalidate_by_role_id(role_id)
        logger.info(
            "Access snapshots invalidated by role",
            extra={"role_id": role_id, "count": len(pairs)},
        )
        return len(pairs)
