"""
Database models.

Importing this package registers every table on tenant_authz.models.base.Base.
"""

from tenant_authz.models.access_snapshot import AccessContextSnapshot, AccessSnapshotVersion
from tenant_authz.models.billing import AddOn, Subscription, SubscriptionStatus
from tenant_authz.models.entitlement import (
    EnforcementMode,
    EntitlementFeature,
    EntitlementOverride,
    FeatureValueType,
    MeterAggregation,
    MeteringScope,
    MeteringType,
    OverageMode,
    OverrideScope,
    PlanFeature,
    UsagePeriod,
)
from tenant_authz.models.feature_preference import FeaturePreference
from tenant_authz.models.membership import AgencyMembership, SubAccountMembership
from tenant_authz.models.role import Permission, Role, RolePermission, RoleScope
from tenant_authz.models.tenancy import Agency, AgencySettings, SubAccount, SubAccountSettings

__all__ = [
    "AccessContextSnapshot",
    "AccessSnapshotVersion",
    "AddOn",
    "Agency",
    "AgencyMembership",
    "AgencySettings",
    "EnforcementMode",
    "EntitlementFeature",
    "EntitlementOverride",
    "FeaturePreference",
    "FeatureValueType",
    "MeterAggregation",
    "MeteringScope",
    "MeteringType",
    "OverageMode",
    "OverrideScope",
    "Permission",
    "PlanFeature",
    "Role",
    "RolePermission",
    "RoleScope",
    "SubAccount",
    "SubAccountMembership",
    "SubAccountSettings",
    "Subscription",
    "SubscriptionStatus",
    "UsagePeriod",
]
