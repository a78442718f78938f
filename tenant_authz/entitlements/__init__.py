"""
Entitlement resolution.

Plan ids come from the agency's subscription and active add-ons; their plan
features are merged, then agency and subaccount overrides are layered on top.
"""

from tenant_authz.entitlements.models import (
    EffectiveEntitlement,
    FeatureInfo,
    OverrideTerms,
    PlanFeatureTerms,
)
from tenant_authz.entitlements.normalize import apply_override, normalize_entitlement
from tenant_authz.entitlements.resolver import EntitlementResolver, merge_plan_features
from tenant_authz.entitlements.subscription import (
    SubscriptionState,
    compute_subscription_state,
    get_agency_subscription_state,
)

__all__ = [
    "EffectiveEntitlement",
    "EntitlementResolver",
    "FeatureInfo",
    "OverrideTerms",
    "PlanFeatureTerms",
    "SubscriptionState",
    "apply_override",
    "compute_subscription_state",
    "get_agency_subscription_state",
    "merge_plan_features",
    "normalize_entitlement",
]
