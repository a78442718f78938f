"""Top-level authorization decisions."""

from tenant_authz.policy.engine import (
    DEFAULT_BILLING_PERMISSION_KEYS,
    POLICY_MESSAGES,
    CanPerformArgs,
    PolicyDecision,
    PolicyEngine,
    PolicyReason,
    PolicySuggestion,
    UsageChecker,
    UsageDecision,
    UsageRequest,
    can_perform,
    map_usage_denial,
)

__all__ = [
    "DEFAULT_BILLING_PERMISSION_KEYS",
    "POLICY_MESSAGES",
    "CanPerformArgs",
    "PolicyDecision",
    "PolicyEngine",
    "PolicyReason",
    "PolicySuggestion",
    "UsageChecker",
    "UsageDecision",
    "UsageRequest",
    "can_perform",
    "map_usage_denial",
]
