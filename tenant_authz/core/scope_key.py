"""
Canonical cache/storage keys for tenant scopes.

Agency and subaccount keys carry distinct prefixes so snapshots for the
two levels can never collide, even if ids overlap.

Usage:
    from tenant_authz.core.scope_key import agency_scope_key

    key = agency_scope_key("ag_123")  # "agency:ag_123"
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ScopeLevel(str, Enum):
    """Tenancy level a scope key refers to."""
    AGENCY = "AGENCY"
    SUBACCOUNT = "SUBACCOUNT"


AGENCY_PREFIX = "agency:"
SUBACCOUNT_PREFIX = "subaccount:"


@dataclass(frozen=True)
class ParsedScopeKey:
    level: ScopeLevel
    tenant_id: str


def agency_scope_key(agency_id: str) -> str:
    return f"{AGENCY_PREFIX}{agency_id}"


def subaccount_scope_key(subaccount_id: str) -> str:
    return f"{SUBACCOUNT_PREFIX}{subaccount_id}"


def parse_scope_key(value: Optional[str]) -> Optional[ParsedScopeKey]:
    """Inverse of the key builders. Returns None for anything malformed."""
    if not value:
        return None
    if value.startswith(AGENCY_PREFIX):
        tenant_id = value[len(AGENCY_PREFIX):]
        level = ScopeLevel.AGENCY
    elif value.startswith(SUBACCOUNT_PREFIX):
        tenant_id = value[len(SUBACCOUNT_PREFIX):]
        level = ScopeLevel.SUBACCOUNT
    else:
        return None
    if not tenant_id:
        return None
    return ParsedScopeKey(level=level, tenant_id=tenant_id)
