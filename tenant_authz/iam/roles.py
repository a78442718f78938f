"""
Role grant mutation.

Every change to a role's grants is followed by snapshot invalidation for
that role. The invalidation is not transactional with the grant change;
the local cache TTL bounds the staleness window.

LOCKED BUSINESS RULES:
- System roles cannot be edited or deleted
- A role still assigned to any membership cannot be deleted
- Only keys entitled for the owning agency and role level may be granted
"""

import logging
from typing import Iterable, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_authz.core.scope_key import ScopeLevel
from tenant_authz.iam.access_snapshot import AccessSnapshotService
from tenant_authz.iam.permissions import PermissionService
from tenant_authz.models.base import generate_uuid
from tenant_authz.models.membership import AgencyMembership, SubAccountMembership
from tenant_authz.models.role import Permission, Role, RolePermission

logger = logging.getLogger(__name__)


class RoleServiceError(Exception):
    """Base exception for role service."""
    pass


class RoleNotFoundError(RoleServiceError):
    """Raised when role is not found."""
    pass


class SystemRoleError(RoleServiceError):
    """Raised when attempting to modify a system role."""
    pass


class RoleInUseError(RoleServiceError):
    """Raised when deleting a role that memberships still reference."""

    def __init__(self, role_id: str, membership_count: int):
        self.role_id = role_id
        self.membership_count = membership_count
        super().__init__(f"Role {role_id} is assigned to {membership_count} membership(s)")


class PermissionNotAssignableError(RoleServiceError):
    """Raised when a grant would include keys the agency is not entitled to."""

    def __init__(self, invalid_keys: Iterable[str]):
        self.invalid_keys = list(invalid_keys)
        super().__init__(f"Permissions not assignable: {', '.join(self.invalid_keys)}")


class RoleService:
    """
    Service for editing and deleting custom roles.

    Usage:
        service = RoleService(session)
        await service.update_role_permissions(role_id, ["crm.customers.contact.read"])
        await session.commit()
    """

    def __init__(
        self,
        session: AsyncSession,
        snapshots: Optional[AccessSnapshotService] = None,
        permissions: Optional[PermissionService] = None,
    ):
        self.session = session
        self.snapshots = snapshots or AccessSnapshotService(session)
        self.permissions = permissions or PermissionService(session, snapshots=self.snapshots)

    async def _get_role(self, role_id: str) -> Role:
        role = await self.session.get(Role, role_id)
        if role is None:
            raise RoleNotFoundError(f"Role not found: {role_id}")
        return role

    async def update_role_permissions(self, role_id: str, permission_keys: Iterable[str]) -> List[str]:
        """
        Replace a role's grants with exactly permission_keys.

        Args:
            role_id: Role to update
            permission_keys: Complete new set of granted keys

        Returns:
            Sorted list of granted keys

        Raises:
            RoleNotFoundError: If the role does not exist
            SystemRoleError: If the role is a system role
            PermissionNotAssignableError: If any key is malformed or not entitled
        """
        role = await self._get_role(role_id)
        if role.is_system:
            raise SystemRoleError(f"System role cannot be edited: {role_id}")
        if not role.agency_id:
            raise SystemRoleError(f"Platform-wide role cannot be edited: {role_id}")

        keys = sorted({k.strip() for k in permission_keys if k and k.strip()})
        validation = await self.permissions.validate_permission_keys(
            role.agency_id, ScopeLevel(role.scope), keys
        )
        if not validation.valid:
            raise PermissionNotAssignableError(validation.invalid_keys)

        permission_ids: List[str] = []
        if keys:
            result = await self.session.execute(
                select(Permission.id).where(Permission.key.in_(keys))
            )
            permission_ids = list(result.scalars().all())

        await self.session.execute(delete(RolePermission).where(RolePermission.role_id == role_id))
        for permission_id in permission_ids:
            self.session.add(
                RolePermission(
                    id=generate_uuid(),
                    role_id=role_id,
                    permission_id=permission_id,
                    granted=True,
                )
            )
        await self.session.flush()

        logger.info(
            "Role grants replaced",
            extra={"role_id": role_id, "agency_id": role.agency_id, "permission_count": len(keys)},
        )

        await self.snapshots.invalidate_access_snapshots_by_role_id(role_id)
        return keys

    async def delete_role(self, role_id: str) -> None:
        """
        Delete a custom role.

        Raises:
            RoleNotFoundError: If the role does not exist
            SystemRoleError: If the role is a system role
            RoleInUseError: If any membership (active or not) still references it
        """
        role = await self._get_role(role_id)
        if role.is_system:
            raise SystemRoleError(f"System role cannot be deleted: {role_id}")

        agency_count = await self.session.scalar(
            select(func.count()).select_from(AgencyMembership).where(AgencyMembership.role_id == role_id)
        )
        subaccount_count = await self.session.scalar(
            select(func.count()).select_from(SubAccountMembership).where(SubAccountMembership.role_id == role_id)
        )
        in_use = (agency_count or 0) + (subaccount_count or 0)
        if in_use:
            raise RoleInUseError(role_id, in_use)

        await self.session.execute(delete(RolePermission).where(RolePermission.role_id == role_id))
        await self.session.execute(delete(Role).where(Role.id == role_id))
        await self.session.flush()

        logger.info("Role deleted", extra={"role_id": role_id, "agency_id": role.agency_id})

        await self.snapshots.invalidate_access_snapshots_by_role_id(role_id)
