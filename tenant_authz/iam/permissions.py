"""
Scoped permission checks with entitlement gating.

Raw grants come from the access snapshot store. Keys that fall under a gate,
or under a paid namespace, are only honoured while the tenant's current
entitlements satisfy the gate; entitlement gating overrides raw grants at
read time.

Also provides the entitled permission catalog used by role administration.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_authz.config.permission_gates import PermissionGateTable
from tenant_authz.core.scope import AgencyScope, SubAccountScope, TenantScope
from tenant_authz.core.scope_key import ScopeLevel
from tenant_authz.entitlements.models import EffectiveEntitlement
from tenant_authz.entitlements.resolver import EntitlementResolver
from tenant_authz.iam.access_snapshot import AccessSnapshot, AccessSnapshotService
from tenant_authz.iam.bundles import CatalogPermission
from tenant_authz.iam.gates import is_permission_assignable, requires_entitlement_check
from tenant_authz.iam.permission_keys import is_valid_permission_key
from tenant_authz.models.role import Permission
from tenant_authz.models.tenancy import SubAccount

logger = logging.getLogger(__name__)

# Catalog namespaces offered to roles at each level
AGENCY_SCOPE_NAMESPACES = (
    "org.agency.",
    "org.billing.",
    "org.apps.",
    "org.experimental.",
    "iam.",
    "crm.",
    "fi.",
    "co.",
)
SUBACCOUNT_SCOPE_NAMESPACES = (
    "org.subaccount.",
    "iam.",
    "crm.",
    "fi.",
    "co.",
)


def scope_namespaces(level: ScopeLevel) -> Tuple[str, ...]:
    if ScopeLevel(level) == ScopeLevel.SUBACCOUNT:
        return SUBACCOUNT_SCOPE_NAMESPACES
    return AGENCY_SCOPE_NAMESPACES


@dataclass(frozen=True)
class PermissionValidationResult:
    valid: bool
    invalid_keys: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {"valid": self.valid, "invalid_keys": list(self.invalid_keys)}


class PermissionService:
    """
    Permission lookups for one user request.

    Entitlements are resolved at most once per scope per service instance.
    """

    def __init__(
        self,
        session: AsyncSession,
        snapshots: Optional[AccessSnapshotService] = None,
        resolver: Optional[EntitlementResolver] = None,
        gate_table: Optional[PermissionGateTable] = None,
    ):
        self.session = session
        self.snapshots = snapshots or AccessSnapshotService(session)
        self.resolver = resolver or EntitlementResolver(session)
        self.gate_table = gate_table
        self._entitlements: Dict[TenantScope, Dict[str, EffectiveEntitlement]] = {}

    async def get_entitlements(self, scope: TenantScope) -> Dict[str, EffectiveEntitlement]:
        if scope not in self._entitlements:
            self._entitlements[scope] = await self.resolver.resolve_effective_entitlements(scope)
        return self._entitlements[scope]

    async def _filter_entitled(self, keys: Iterable[str], scope: TenantScope) -> List[str]:
        keys = list(keys)
        gated = [k for k in keys if requires_entitlement_check(k, self.gate_table)]
        if not gated:
            return keys

        entitlements = await self.get_entitlements(scope)
        denied = {k for k in gated if not is_permission_assignable(k, entitlements, self.gate_table)}
        if denied:
            logger.debug(
                "Granted keys dropped by entitlement gating",
                extra={"agency_id": scope.agency_id, "denied_keys": sorted(denied)},
            )
        return [k for k in keys if k not in denied]

    async def _subaccount_agency_id(self, subaccount_id: str) -> Optional[str]:
        return await self.session.scalar(
            select(SubAccount.agency_id).where(SubAccount.id == subaccount_id)
        )

    # ------------------------------------------------------------------
    # Scoped keys
    # ------------------------------------------------------------------

    async def get_agency_permission_keys(self, user_id: str, agency_id: str) -> List[str]:
        snapshot = await self.snapshots.get_agency_access_snapshot(user_id, agency_id)
        if snapshot is None:
            return []
        return await self._filter_entitled(snapshot.permission_keys, AgencyScope(agency_id))

    async def get_subaccount_permission_keys(
        self,
        user_id: str,
        subaccount_id: str,
        agency_id: Optional[str] = None,
    ) -> List[str]:
        agency_id = agency_id or await self._subaccount_agency_id(subaccount_id)
        if agency_id is None:
            return []
        snapshot = await self.snapshots.get_subaccount_access_snapshot(user_id, subaccount_id)
        if snapshot is None:
            return []
        return await self._filter_entitled(
            snapshot.permission_keys, SubAccountScope(agency_id, subaccount_id)
        )

    async def _holds(self, snapshot: Optional[AccessSnapshot], key: str, scope: TenantScope) -> bool:
        if snapshot is None or not snapshot.has_key(key):
            return False
        if not requires_entitlement_check(key, self.gate_table):
            return True
        entitlements = await self.get_entitlements(scope)
        return is_permission_assignable(key, entitlements, self.gate_table)

    async def has_agency_permission(self, user_id: str, agency_id: str, permission_key: str) -> bool:
        key = permission_key.strip()
        snapshot = await self.snapshots.get_agency_access_snapshot(user_id, agency_id)
        return await self._holds(snapshot, key, AgencyScope(agency_id))

    async def has_subaccount_permission(
        self,
        user_id: str,
        subaccount_id: str,
        permission_key: str,
        agency_id: Optional[str] = None,
    ) -> bool:
        key = permission_key.strip()
        agency_id = agency_id or await self._subaccount_agency_id(subaccount_id)
        if agency_id is None:
            return False
        snapshot = await self.snapshots.get_subaccount_access_snapshot(user_id, subaccount_id)
        return await self._holds(snapshot, key, SubAccountScope(agency_id, subaccount_id))

    # ------------------------------------------------------------------
    # Entitled catalog (role administration)
    # ------------------------------------------------------------------

    async def get_entitled_permissions(
        self,
        agency_id: str,
        level: ScopeLevel,
    ) -> Dict[str, List[CatalogPermission]]:
        """
        Permission catalog rows assignable to a role at this level.

        Filtered to the level's namespaces and to keys assignable under the
        agency's current entitlements. Grouped by category, sorted by
        category then key.
        """
        namespaces = scope_namespaces(level)
        entitlements = await self.get_entitlements(AgencyScope(agency_id))

        result = await self.session.execute(
            select(Permission).order_by(Permission.category, Permission.key)
        )
        grouped: Dict[str, List[CatalogPermission]] = {}
        for perm in result.scalars().all():
            if not perm.key.startswith(namespaces):
                continue
            if not is_permission_assignable(perm.key, entitlements, self.gate_table):
                continue
            grouped.setdefault(perm.category, []).append(
                CatalogPermission(
                    id=perm.id,
                    key=perm.key,
                    name=perm.name,
                    description=perm.description,
                    category=perm.category,
                )
            )
        return grouped

    async def get_entitled_permission_keys(self, agency_id: str, level: ScopeLevel) -> List[str]:
        grouped = await self.get_entitled_permissions(agency_id, level)
        return [p.key for perms in grouped.values() for p in perms]

    async def validate_permission_keys(
        self,
        agency_id: str,
        level: ScopeLevel,
        permission_keys: Iterable[str],
    ) -> PermissionValidationResult:
        """Check that every key is well-formed and entitled for this agency and level."""
        entitled = set(await self.get_entitled_permission_keys(agency_id, level))
        invalid = []
        for key in permission_keys:
            normalized = key.strip()
            if not is_valid_permission_key(normalized) or normalized not in entitled:
                invalid.append(key)
        return PermissionValidationResult(valid=not invalid, invalid_keys=tuple(invalid))
