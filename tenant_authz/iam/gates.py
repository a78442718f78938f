"""
Permission-entitlement gate evaluation.

Decides whether a permission key may be assigned (and, at read time,
exercised) given a tenant's effective entitlements.

CRITICAL: Keys under a paid namespace (fi., co.) with no matching gate are
never assignable. A new paid permission without a gate must deny, not leak.
"""

from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

from tenant_authz.config.permission_gates import (
    PermissionGate,
    PermissionGateTable,
    get_permission_gate_table,
)
from tenant_authz.entitlements.models import EffectiveEntitlement

# Reserved top-level module prefixes for paid add-ons
PAID_NAMESPACE_PREFIXES = ("fi.", "co.")

Entitlements = Mapping[str, EffectiveEntitlement]


def is_paid_namespace_key(permission_key: str) -> bool:
    return permission_key.startswith(PAID_NAMESPACE_PREFIXES)


def _is_positive_quantity(ent: EffectiveEntitlement) -> bool:
    if not ent.is_enabled:
        return False
    if ent.is_unlimited:
        return True

    int_limit = ent.max_int if ent.max_int is not None else ent.included_int
    if (int_limit or 0) > 0:
        return True

    dec_limit = ent.max_dec if ent.max_dec is not None else ent.included_dec
    if dec_limit is None:
        return False
    try:
        dec_limit = Decimal(dec_limit)
    except (InvalidOperation, TypeError, ValueError):
        return False
    return dec_limit.is_finite() and dec_limit > 0


def is_entitlement_satisfied(ent: Optional[EffectiveEntitlement]) -> bool:
    """
    Boolean features need is_enabled; quantity features also need
    is_unlimited or a positive cap/allowance.
    """
    if ent is None:
        return False
    if ent.is_boolean:
        return ent.is_enabled
    return _is_positive_quantity(ent)


def is_gate_satisfied(gate: PermissionGate, entitlements: Entitlements) -> bool:
    if gate.require_all:
        if not all(is_entitlement_satisfied(entitlements.get(k)) for k in gate.require_all):
            return False

    groups = [g for g in gate.require_any_all if g]
    if groups:
        if not any(all(is_entitlement_satisfied(entitlements.get(k)) for k in group) for group in groups):
            return False

    if gate.require_any:
        return any(is_entitlement_satisfied(entitlements.get(k)) for k in gate.require_any)

    return True


def get_gate_for_permission_key(
    permission_key: str,
    table: Optional[PermissionGateTable] = None,
) -> Optional[PermissionGate]:
    if table is None:
        table = get_permission_gate_table()
    return table.get_gate_for_permission_key(permission_key)


def is_unmapped_key_assignable(permission_key: str) -> bool:
    """
    Default for keys no gate covers.

    Paid namespace -> deny. Everything else -> allow.
    """
    if is_paid_namespace_key(permission_key):
        return False
    return True


def is_permission_assignable(
    permission_key: str,
    entitlements: Entitlements,
    table: Optional[PermissionGateTable] = None,
) -> bool:
    """Returns True if permission_key can be assigned under the given entitlements."""
    permission_key = permission_key.strip()
    gate = get_gate_for_permission_key(permission_key, table)
    if gate is None:
        return is_unmapped_key_assignable(permission_key)
    return is_gate_satisfied(gate, entitlements)


def requires_entitlement_check(
    permission_key: str,
    table: Optional[PermissionGateTable] = None,
) -> bool:
    """True when holding the key also depends on the tenant's entitlements."""
    permission_key = permission_key.strip()
    if is_paid_namespace_key(permission_key):
        return True
    return get_gate_for_permission_key(permission_key, table) is not None
