"""
Role permission loader.

Resolves the permission keys a role grants from the role -> permission grant
table. A role with no grants (or an unknown role) yields an empty list;
absence of grants is a valid state, not an error.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_authz.iam.permission_keys import normalize_permission_keys
from tenant_authz.models.role import Permission, RolePermission

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoleGrant:
    """One grant row as shown in role administration."""
    key: str
    granted: bool
    description: Optional[str] = None


async def get_granted_permission_keys_for_role(
    session: AsyncSession,
    role_id: Optional[str],
) -> List[str]:
    """
    Return sorted, de-duplicated keys for rows with granted = True.

    Args:
        session: Async database session
        role_id: Role id; None or empty yields []
    """
    if not role_id:
        return []

    result = await session.execute(
        select(Permission.key)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .where(RolePermission.role_id == role_id, RolePermission.granted.is_(True))
    )
    return normalize_permission_keys(result.scalars().all())


async def fetch_role_permissions_by_role_ids(
    session: AsyncSession,
    role_ids: Iterable[str],
) -> Dict[str, List[RoleGrant]]:
    """
    Grant rows (granted or not) for several roles, each list sorted by key.
    Roles without rows map to an empty list.
    """
    role_ids = list(dict.fromkeys(r for r in role_ids if r))
    out: Dict[str, List[RoleGrant]] = {role_id: [] for role_id in role_ids}
    if not role_ids:
        return out

    result = await session.execute(
        select(RolePermission.role_id, RolePermission.granted, Permission.key, Permission.description)
        .join(Permission, Permission.id == RolePermission.permission_id)
        .where(RolePermission.role_id.in_(role_ids))
        .order_by(RolePermission.role_id, Permission.key)
    )
    for role_id, granted, key, description in result.all():
        out[role_id].append(RoleGrant(key=key, granted=bool(granted), description=description))
    return out
