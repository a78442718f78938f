"""
Permission bundles: group granular permissions into Read/Write/Manage levels.

Used by role administration to offer a simplified editor. Levels nest
(manage includes write includes read), so switching a group to "write"
never revokes a "read" capability.

Grouping:
    core.billing.payment_methods.read  -> core.billing.payment_methods
    iam.authZ.roles.update             -> iam.authZ.roles
    crm.customers.view                 -> crm.customers
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Collection, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple


class BundleLevel(str, Enum):
    NONE = "none"
    READ = "read"
    WRITE = "write"
    MANAGE = "manage"
    CUSTOM = "custom"


READ_ACTIONS = frozenset({"view", "read", "list", "get"})
WRITE_ACTIONS = frozenset({
    "create",
    "update",
    "delete",
    "invite",
    "remove",
    "assign",
    "revoke",
    "install",
    "uninstall",
    "consume",
    "close",
    "run",
    "simulate",
    "toggle",
})
MANAGE_ACTIONS = frozenset({"manage", "admin", "owner", "configure"})


@dataclass(frozen=True)
class CatalogPermission:
    """Permission catalog entry as handed to role administration."""
    id: str
    key: str
    name: str = ""
    description: Optional[str] = None
    category: str = "General"


@dataclass(frozen=True)
class PermissionBundleGroup:
    id: str
    label: str
    all_ids: Tuple[str, ...]
    ids_by_level: Mapping[BundleLevel, Tuple[str, ...]]
    available: Mapping[BundleLevel, bool]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "all_ids": list(self.all_ids),
            "ids_by_level": {level.value: list(ids) for level, ids in self.ids_by_level.items()},
            "available": {level.value: flag for level, flag in self.available.items()},
        }


@dataclass(frozen=True)
class PermissionBundleCategory:
    category_label: str
    groups: Tuple[PermissionBundleGroup, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "category_label": self.category_label,
            "groups": [g.to_dict() for g in self.groups],
        }


def titleize(value: str) -> str:
    """snake_case / kebab-case -> Title Case"""
    words = value.replace("-", " ").replace("_", " ").split(" ")
    return " ".join(w[:1].upper() + w[1:] for w in words)


def infer_bundle_group_id(permission_key: str) -> str:
    """First three segments when the key has more than three, else the first two."""
    parts = permission_key.split(".")
    if len(parts) <= 3:
        return ".".join(parts[:2])
    return ".".join(parts[:3])


def infer_bundle_group_label(group_id: str) -> str:
    """'iam.authZ.roles' -> 'Roles', 'crm.customers' -> 'Customers'"""
    parts = group_id.split(".")
    if len(parts) > 2:
        resource = parts[2]
    elif len(parts) > 1:
        resource = parts[1]
    else:
        resource = group_id
    return titleize(resource)


def action_of(permission_key: str) -> str:
    return permission_key.split(".")[-1]


def _sorted_ids(perms: Iterable[CatalogPermission]) -> Tuple[str, ...]:
    return tuple(p.id for p in sorted(perms, key=lambda p: p.key))


def _build_group(group_id: str, perms: Sequence[CatalogPermission]) -> PermissionBundleGroup:
    read: List[CatalogPermission] = []
    write: List[CatalogPermission] = []
    for perm in perms:
        action = action_of(perm.key)
        # manage actions only count toward the manage level
        if action in MANAGE_ACTIONS:
            continue
        if action in READ_ACTIONS:
            read.append(perm)
        elif action in WRITE_ACTIONS:
            write.append(perm)

    all_ids = _sorted_ids(perms)
    ids_by_level = {
        BundleLevel.NONE: (),
        BundleLevel.READ: _sorted_ids(read),
        BundleLevel.WRITE: _sorted_ids(read + write),
        # manage = every permission in the group, "other" actions included
        BundleLevel.MANAGE: all_ids,
    }
    available = {
        BundleLevel.NONE: True,
        BundleLevel.READ: bool(ids_by_level[BundleLevel.READ]),
        BundleLevel.WRITE: bool(ids_by_level[BundleLevel.WRITE]),
        BundleLevel.MANAGE: bool(ids_by_level[BundleLevel.MANAGE]),
    }
    return PermissionBundleGroup(
        id=group_id,
        label=infer_bundle_group_label(group_id),
        all_ids=all_ids,
        ids_by_level=ids_by_level,
        available=available,
    )


def build_permission_bundles(
    catalog: Mapping[str, Sequence[CatalogPermission]],
) -> List[PermissionBundleCategory]:
    """
    Build bundles from an already entitlement-filtered catalog.

    Args:
        catalog: category label -> permissions, e.g. the output of
            PermissionService.get_entitled_permissions()

    Returns:
        One PermissionBundleCategory per input category (input order kept),
        groups sorted by id.
    """
    categories: List[PermissionBundleCategory] = []
    for category_label, perms in catalog.items():
        by_group: Dict[str, List[CatalogPermission]] = {}
        for perm in perms:
            by_group.setdefault(infer_bundle_group_id(perm.key), []).append(perm)

        groups = tuple(
            _build_group(group_id, by_group[group_id]) for group_id in sorted(by_group)
        )
        categories.append(PermissionBundleCategory(category_label=category_label, groups=groups))
    return categories


def infer_group_level(group: PermissionBundleGroup, selected_ids: Collection[str]) -> BundleLevel:
    """
    Which level the current selection represents for one group.

    Only ids belonging to the group are considered. The selection must equal
    a level's id set exactly; manage is tried first, then write, then read.
    Anything else is CUSTOM, meaning the granular editor is required.
    """
    group_ids = set(group.all_ids)
    selected = {i for i in selected_ids if i in group_ids}
    if not selected:
        return BundleLevel.NONE

    for level in (BundleLevel.MANAGE, BundleLevel.WRITE, BundleLevel.READ):
        ids = group.ids_by_level[level]
        if ids and selected == set(ids):
            return level
    return BundleLevel.CUSTOM
