"""
Policy decision engine.

can_perform runs a strictly ordered, short-circuiting pipeline:

    1. membership    -> NO_MEMBERSHIP
    2. permission    -> NO_PERMISSION
    3. subscription  -> NO_SUBSCRIPTION
    4. feature usage -> FEATURE_DISABLED | INSUFFICIENT_CREDITS | LIMIT_EXCEEDED

A later stage never runs once an earlier one has denied. Denials are
returned as PolicyDecision values, never raised.

Usage consumption is not performed here; callers consume through their own
metering service only after an allowed decision.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_authz.entitlements.subscription import SubscriptionState, get_agency_subscription_state
from tenant_authz.iam.permissions import PermissionService
from tenant_authz.models.entitlement import MeteringScope
from tenant_authz.models.membership import AgencyMembership, SubAccountMembership
from tenant_authz.models.tenancy import SubAccount

logger = logging.getLogger(__name__)


class PolicyReason(str, Enum):
    NO_MEMBERSHIP = "NO_MEMBERSHIP"
    NO_PERMISSION = "NO_PERMISSION"
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    FEATURE_DISABLED = "FEATURE_DISABLED"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"


class PolicySuggestion(str, Enum):
    NONE = "NONE"
    UPGRADE = "UPGRADE"
    TOPUP = "TOPUP"
    CONTACT_ADMIN = "CONTACT_ADMIN"


POLICY_MESSAGES: Dict[PolicyReason, str] = {
    PolicyReason.NO_MEMBERSHIP: "You do not have access to this workspace.",
    PolicyReason.NO_PERMISSION: "You do not have permission to perform this action.",
    PolicyReason.NO_SUBSCRIPTION: "An active subscription is required to perform this action.",
    PolicyReason.FEATURE_DISABLED: "This feature is not included in your current plan.",
    PolicyReason.INSUFFICIENT_CREDITS: "You do not have enough credits to perform this action.",
    PolicyReason.LIMIT_EXCEEDED: "You have reached the usage limit for this feature.",
}

# Billing is agency-scoped even when acting inside a subaccount
DEFAULT_BILLING_PERMISSION_KEYS: Tuple[str, ...] = (
    "org.billing.account.view",
    "org.billing.account.manage",
)

# Usage checker reasons with a dedicated policy mapping
USAGE_REASON_FEATURE_DISABLED = "FEATURE_DISABLED"
USAGE_REASON_INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"


# ---------------------------------------------------------------------------
# Usage checker contract
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UsageRequest:
    scope: MeteringScope
    agency_id: str
    subaccount_id: Optional[str]
    feature_key: str
    quantity: int = 1
    action_key: Optional[str] = None


@dataclass(frozen=True)
class UsageDecision:
    """Answer from the metering collaborator."""
    allowed: bool
    reason: Optional[str] = None
    remaining: Optional[Decimal] = None
    detail: Optional[Dict[str, Any]] = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "remaining": None if self.remaining is None else str(self.remaining),
            "detail": self.detail,
        }


class UsageChecker(Protocol):
    async def check_usage(self, request: UsageRequest) -> UsageDecision:
        ...


# ---------------------------------------------------------------------------
# Arguments and decision
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CanPerformArgs:
    user_id: str
    agency_id: str
    subaccount_id: Optional[str] = None
    required_permission_key: Optional[str] = None
    required_permission_keys: Sequence[str] = ()
    require_active_subscription: bool = True
    feature_key: Optional[str] = None
    quantity: int = 1
    action_key: Optional[str] = None
    billing_permission_keys: Sequence[str] = ()

    def permission_keys(self) -> Tuple[str, ...]:
        keys = []
        if self.required_permission_key:
            keys.append(self.required_permission_key)
        keys.extend(self.required_permission_keys or ())
        return tuple(k.strip() for k in keys if k and k.strip())


@dataclass(frozen=True)
class PolicyDecision:
    """
    Structured allow/deny result.

    allowed=True never carries a reason; a denial always carries a reason,
    a message and a suggestion.
    """
    allowed: bool
    reason: Optional[PolicyReason] = None
    message: Optional[str] = None
    suggestion: Optional[PolicySuggestion] = None
    subscription_state: Optional[SubscriptionState] = None
    usage: Optional[UsageDecision] = None
    has_billing_access: Optional[bool] = None

    def __post_init__(self):
        if self.allowed and self.reason is not None:
            raise ValueError("An allowed decision cannot carry a denial reason")
        if not self.allowed and self.reason is None:
            raise ValueError("A denied decision must carry a reason")

    @classmethod
    def deny(
        cls,
        reason: PolicyReason,
        suggestion: PolicySuggestion,
        **kwargs,
    ) -> "PolicyDecision":
        return cls(
            allowed=False,
            reason=reason,
            message=POLICY_MESSAGES[reason],
            suggestion=suggestion,
            **kwargs,
        )

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "suggestion": self.suggestion.value if self.suggestion else None,
            "subscription_state": self.subscription_state.value if self.subscription_state else None,
            "usage": self.usage.to_dict() if self.usage else None,
            "has_billing_access": self.has_billing_access,
        }


def _upsell(has_billing_access: bool, suggestion: PolicySuggestion) -> PolicySuggestion:
    return suggestion if has_billing_access else PolicySuggestion.CONTACT_ADMIN


def map_usage_denial(usage_reason: Optional[str], has_billing_access: bool) -> Tuple[PolicyReason, PolicySuggestion]:
    """Map a usage checker denial reason to a policy reason and suggestion."""
    if usage_reason == USAGE_REASON_FEATURE_DISABLED:
        return PolicyReason.FEATURE_DISABLED, _upsell(has_billing_access, PolicySuggestion.UPGRADE)
    if usage_reason == USAGE_REASON_INSUFFICIENT_CREDITS:
        return PolicyReason.INSUFFICIENT_CREDITS, _upsell(has_billing_access, PolicySuggestion.TOPUP)
    return PolicyReason.LIMIT_EXCEEDED, _upsell(has_billing_access, PolicySuggestion.UPGRADE)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class PolicyEngine:
    """
    Read-only authorization decisions.

    Usage:
        engine = PolicyEngine(session, usage_checker)
        decision = await engine.can_perform(CanPerformArgs(
            user_id=user_id,
            agency_id=agency_id,
            required_permission_key="crm.customers.contact.read",
        ))
        if not decision.allowed:
            ...
    """

    def __init__(
        self,
        session: AsyncSession,
        usage_checker: UsageChecker,
        permissions: Optional[PermissionService] = None,
    ):
        self.session = session
        self.usage_checker = usage_checker
        self.permissions = permissions or PermissionService(session)

    async def has_membership(self, user_id: str, agency_id: str, subaccount_id: Optional[str]) -> bool:
        if subaccount_id:
            # The subaccount must belong to the requested agency
            stmt = (
                select(SubAccountMembership.id)
                .join(SubAccount, SubAccount.id == SubAccountMembership.subaccount_id)
                .where(
                    SubAccountMembership.user_id == user_id,
                    SubAccountMembership.subaccount_id == subaccount_id,
                    SubAccountMembership.is_active.is_(True),
                    SubAccount.agency_id == agency_id,
                )
            )
        else:
            stmt = select(AgencyMembership.id).where(
                AgencyMembership.user_id == user_id,
                AgencyMembership.agency_id == agency_id,
                AgencyMembership.is_active.is_(True),
            )
        result = await self.session.execute(stmt.limit(1))
        return result.scalar_one_or_none() is not None

    async def has_all_permissions(
        self,
        user_id: str,
        agency_id: str,
        subaccount_id: Optional[str],
        keys: Sequence[str],
    ) -> bool:
        for key in keys:
            if subaccount_id:
                ok = await self.permissions.has_subaccount_permission(
                    user_id, subaccount_id, key, agency_id=agency_id
                )
            else:
                ok = await self.permissions.has_agency_permission(user_id, agency_id, key)
            if not ok:
                return False
        return True

    async def has_billing_access(
        self,
        user_id: str,
        agency_id: str,
        billing_permission_keys: Sequence[str] = (),
    ) -> bool:
        keys = tuple(billing_permission_keys) or DEFAULT_BILLING_PERMISSION_KEYS
        for key in keys:
            if await self.permissions.has_agency_permission(user_id, agency_id, key):
                return True
        return False

    def _log_denial(self, args: CanPerformArgs, decision: PolicyDecision) -> PolicyDecision:
        logger.info(
            "Policy denied",
            extra={
                "user_id": args.user_id,
                "agency_id": args.agency_id,
                "subaccount_id": args.subaccount_id,
                "reason": decision.reason.value,
                "suggestion": decision.suggestion.value,
                "feature_key": args.feature_key,
            },
        )
        return decision

    async def can_perform(self, args: CanPerformArgs) -> PolicyDecision:
        """
        Decide whether the caller may perform an action.

        Args:
            args: CanPerformArgs describing the caller, scope and requirements

        Returns:
            PolicyDecision; denials are values, not exceptions
        """
        if not await self.has_membership(args.user_id, args.agency_id, args.subaccount_id):
            # Nothing about the tenant's billing is disclosed to non-members
            return self._log_denial(
                args,
                PolicyDecision.deny(
                    PolicyReason.NO_MEMBERSHIP,
                    PolicySuggestion.NONE,
                    has_billing_access=False,
                ),
            )

        permission_ok = await self.has_all_permissions(
            args.user_id, args.agency_id, args.subaccount_id, args.permission_keys()
        )

        subscription_state = await get_agency_subscription_state(self.session, args.agency_id)
        has_billing_access = await self.has_billing_access(
            args.user_id, args.agency_id, args.billing_permission_keys
        )

        if not permission_ok:
            return self._log_denial(
                args,
                PolicyDecision.deny(
                    PolicyReason.NO_PERMISSION,
                    PolicySuggestion.NONE,
                    subscription_state=subscription_state,
                    has_billing_access=has_billing_access,
                ),
            )

        if args.require_active_subscription and not subscription_state.allows_access():
            return self._log_denial(
                args,
                PolicyDecision.deny(
                    PolicyReason.NO_SUBSCRIPTION,
                    _upsell(has_billing_access, PolicySuggestion.UPGRADE),
                    subscription_state=subscription_state,
                    has_billing_access=has_billing_access,
                ),
            )

        if not args.feature_key:
            return PolicyDecision(
                allowed=True,
                subscription_state=subscription_state,
                has_billing_access=has_billing_access,
            )

        usage = await self.usage_checker.check_usage(
            UsageRequest(
                scope=MeteringScope.SUBACCOUNT if args.subaccount_id else MeteringScope.AGENCY,
                agency_id=args.agency_id,
                subaccount_id=args.subaccount_id,
                feature_key=args.feature_key,
                quantity=args.quantity,
                action_key=args.action_key,
            )
        )
        if usage.allowed:
            return PolicyDecision(
                allowed=True,
                subscription_state=subscription_state,
                usage=usage,
                has_billing_access=has_billing_access,
            )

        reason, suggestion = map_usage_denial(usage.reason, has_billing_access)
        return self._log_denial(
            args,
            PolicyDecision.deny(
                reason,
                suggestion,
                subscription_state=subscription_state,
                usage=usage,
                has_billing_access=has_billing_access,
            ),
        )


async def can_perform(session: AsyncSession, usage_checker: UsageChecker, **kwargs) -> PolicyDecision:
    """Convenience wrapper: can_perform(session, checker, user_id=..., agency_id=..., ...)."""
    engine = PolicyEngine(session, usage_checker)
    return await engine.can_perform(CanPerformArgs(**kwargs))
