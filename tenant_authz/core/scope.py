"""
Tenant scope value objects.

A scope is either an agency or a subaccount under an agency. The
subaccount-belongs-to-agency invariant is verified against the store by the
resolvers that accept a SubAccountScope; constructing one checks nothing.
"""

from dataclasses import dataclass
from typing import Optional, Union

from tenant_authz.core.scope_key import ScopeLevel, agency_scope_key, subaccount_scope_key
from tenant_authz.models.entitlement import MeteringScope


@dataclass(frozen=True)
class AgencyScope:
    agency_id: str

    @property
    def level(self) -> ScopeLevel:
        return ScopeLevel.AGENCY

    @property
    def subaccount_id(self) -> Optional[str]:
        return None

    @property
    def scope_key(self) -> str:
        return agency_scope_key(self.agency_id)

    @property
    def metering_scope(self) -> MeteringScope:
        return MeteringScope.AGENCY


@dataclass(frozen=True)
class SubAccountScope:
    agency_id: str
    subaccount_id: str

    @property
    def level(self) -> ScopeLevel:
        return ScopeLevel.SUBACCOUNT

    @property
    def scope_key(self) -> str:
        return subaccount_scope_key(self.subaccount_id)

    @property
    def metering_scope(self) -> MeteringScope:
        return MeteringScope.SUBACCOUNT


TenantScope = Union[AgencyScope, SubAccountScope]


def scope_for(agency_id: str, subaccount_id: Optional[str] = None) -> TenantScope:
    if subaccount_id:
        return SubAccountScope(agency_id=agency_id, subaccount_id=subaccount_id)
    return AgencyScope(agency_id=agency_id)
