"""
Tests for the policy decision engine.

Tests:
- Stage order: membership, permission, subscription, usage
- Later stages never run after an earlier denial
- Upgrade suggestions only for callers with billing access
- Usage checker denial mapping
- PolicyDecision invariants
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from tenant_authz.entitlements.subscription import SubscriptionState
from tenant_authz.models import MeteringScope, RoleScope, SubscriptionStatus
from tenant_authz.policy import (
    CanPerformArgs,
    PolicyDecision,
    PolicyEngine,
    PolicyReason,
    PolicySuggestion,
    UsageDecision,
    can_perform,
    map_usage_denial,
)

USER_ID = "user-1"


def _checker(decision=None):
    checker = AsyncMock()
    checker.check_usage.return_value = decision or UsageDecision(allowed=True, remaining=Decimal("9"))
    return checker


async def _member(seed, keys=("crm.customers.view",), features=("org.agency.account",)):
    agency = await seed.entitled_agency(features)
    role = await seed.role(agency, keys)
    await seed.agency_member(USER_ID, agency, role)
    return agency


async def _member_without_subscription(seed, keys):
    """Agency whose only plan is an add-on, so gated billing keys stay entitled."""
    agency = await seed.agency()
    await seed.feature("org.agency.account")
    await seed.plan_feature("price_addon", "org.agency.account", is_enabled=True)
    await seed.addon(agency, "price_addon")
    role = await seed.role(agency, keys)
    await seed.agency_member(USER_ID, agency, role)
    return agency


# =============================================================================
# Stage order
# =============================================================================


class TestMembershipStage:

    @pytest.mark.asyncio
    async def test_non_member_denied_without_billing_disclosure(self, db_session, seed):
        agency = await seed.entitled_agency()
        checker = _checker()

        decision = await PolicyEngine(db_session, checker).can_perform(
            CanPerformArgs(user_id=USER_ID, agency_id=agency.id, feature_key="crm.contacts")
        )

        assert decision.allowed is False
        assert decision.reason == PolicyReason.NO_MEMBERSHIP
        assert decision.suggestion == PolicySuggestion.NONE
        assert decision.has_billing_access is False
        assert decision.subscription_state is None
        checker.check_usage.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_inactive_membership(self, db_session, seed):
        agency = await seed.entitled_agency()
        role = await seed.role(agency, ["crm.customers.view"])
        await seed.agency_member(USER_ID, agency, role, active=False)

        decision = await PolicyEngine(db_session, _checker()).can_perform(
            CanPerformArgs(user_id=USER_ID, agency_id=agency.id)
        )

        assert decision.reason == PolicyReason.NO_MEMBERSHIP

    @pytest.mark.asyncio
    async def test_agency_member_is_not_a_subaccount_member(self, db_session, seed):
        agency = await _member(seed)
        sub = await seed.subaccount(agency)

        decision = await PolicyEngine(db_session, _checker()).can_perform(
            CanPerformArgs(user_id=USER_ID, agency_id=agency.id, subaccount_id=sub.id)
        )

        assert decision.reason == PolicyReason.NO_MEMBERSHIP

    @pytest.mark.asyncio
    async def test_subaccount_of_another_agency_denied(self, db_session, seed):
        paying = await seed.entitled_agency()
        other = await seed.entitled_agency()
        foreign_sub = await seed.subaccount(other)
        role = await seed.role(other, ["crm.customers.view"], scope=RoleScope.SUBACCOUNT)
        await seed.subaccount_member(USER_ID, foreign_sub, role)
        checker = _checker()
        engine = PolicyEngine(db_session, checker)

        decision = await engine.can_perform(
            CanPerformArgs(
                user_id=USER_ID,
                agency_id=paying.id,
                subaccount_id=foreign_sub.id,
                required_permission_keys=("crm.customers.view",),
                feature_key="crm.contacts",
            )
        )

        assert decision.allowed is False
        assert decision.reason == PolicyReason.NO_MEMBERSHIP
        assert decision.subscription_state is None
        checker.check_usage.assert_not_awaited()
        assert await engine.has_membership(USER_ID, other.id, foreign_sub.id) is True


class TestPermissionStage:

    @pytest.mark.asyncio
    async def test_missing_key_denied_before_usage(self, db_session, seed):
        agency = await _member(seed)
        checker = _checker()

        decision = await PolicyEngine(db_session, checker).can_perform(
            CanPerformArgs(
                user_id=USER_ID,
                agency_id=agency.id,
                required_permission_key="crm.customers.delete",
                feature_key="crm.contacts",
            )
        )

        assert decision.reason == PolicyReason.NO_PERMISSION
        assert decision.suggestion == PolicySuggestion.NONE
        assert decision.subscription_state == SubscriptionState.ACTIVE
        checker.check_usage.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_every_listed_key_required(self, db_session, seed):
        agency = await _member(seed, keys=("crm.customers.view", "crm.customers.update"))
        engine = PolicyEngine(db_session, _checker())

        allowed = await engine.can_perform(CanPerformArgs(
            user_id=USER_ID,
            agency_id=agency.id,
            required_permission_key="crm.customers.view",
            required_permission_keys=["crm.customers.update"],
        ))
        denied = await engine.can_perform(CanPerformArgs(
            user_id=USER_ID,
            agency_id=agency.id,
            required_permission_keys=["crm.customers.update", "crm.customers.delete"],
        ))

        assert allowed.allowed is True
        assert denied.reason == PolicyReason.NO_PERMISSION

    @pytest.mark.asyncio
    async def test_unentitled_grant_denied(self, db_session, seed):
        agency = await _member(seed, keys=("crm.customers.contact.read",))

        decision = await PolicyEngine(db_session, _checker()).can_perform(
            CanPerformArgs(
                user_id=USER_ID,
                agency_id=agency.id,
                required_permission_key="crm.customers.contact.read",
            )
        )

        assert decision.reason == PolicyReason.NO_PERMISSION

    def test_blank_keys_ignored(self):
        args = CanPerformArgs(
            user_id="u",
            agency_id="a",
            required_permission_key=" crm.customers.view ",
            required_permission_keys=["", "  ", "crm.customers.update"],
        )
        assert args.permission_keys() == ("crm.customers.view", "crm.customers.update")


class TestSubscriptionStage:

    @pytest.mark.asyncio
    async def test_billing_user_told_to_upgrade(self, db_session, seed):
        agency = await _member_without_subscription(seed, ["crm.customers.view", "org.billing.account.view"])
        checker = _checker()

        decision = await PolicyEngine(db_session, checker).can_perform(
            CanPerformArgs(
                user_id=USER_ID,
                agency_id=agency.id,
                required_permission_key="crm.customers.view",
                feature_key="crm.contacts",
            )
        )

        assert decision.reason == PolicyReason.NO_SUBSCRIPTION
        assert decision.suggestion == PolicySuggestion.UPGRADE
        assert decision.subscription_state == SubscriptionState.MISSING
        assert decision.has_billing_access is True
        checker.check_usage.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_other_users_told_to_contact_admin(self, db_session, seed):
        agency = await _member_without_subscription(seed, ["crm.customers.view"])

        decision = await PolicyEngine(db_session, _checker()).can_perform(
            CanPerformArgs(user_id=USER_ID, agency_id=agency.id)
        )

        assert decision.reason == PolicyReason.NO_SUBSCRIPTION
        assert decision.suggestion == PolicySuggestion.CONTACT_ADMIN
        assert decision.has_billing_access is False

    @pytest.mark.asyncio
    async def test_lapsed_subscription(self, db_session, seed):
        agency = await seed.agency()
        await seed.subscription(agency, status=SubscriptionStatus.CANCELED)
        role = await seed.role(agency, ["crm.customers.view"])
        await seed.agency_member(USER_ID, agency, role)

        decision = await PolicyEngine(db_session, _checker()).can_perform(
            CanPerformArgs(user_id=USER_ID, agency_id=agency.id)
        )

        assert decision.reason == PolicyReason.NO_SUBSCRIPTION
        assert decision.subscription_state == SubscriptionState.INACTIVE

    @pytest.mark.asyncio
    async def test_trial_allowed(self, db_session, seed):
        agency = await seed.agency()
        await seed.subscription(agency, status=SubscriptionStatus.TRIALING)
        role = await seed.role(agency, ["crm.customers.view"])
        await seed.agency_member(USER_ID, agency, role)

        decision = await PolicyEngine(db_session, _checker()).can_perform(
            CanPerformArgs(user_id=USER_ID, agency_id=agency.id, required_permission_key="crm.customers.view")
        )

        assert decision.allowed is True
        assert decision.subscription_state == SubscriptionState.TRIAL

    @pytest.mark.asyncio
    async def test_subscription_check_can_be_skipped(self, db_session, seed):
        agency = await _member_without_subscription(seed, ["crm.customers.view"])

        decision = await PolicyEngine(db_session, _checker()).can_perform(
            CanPerformArgs(user_id=USER_ID, agency_id=agency.id, require_active_subscription=False)
        )

        assert decision.allowed is True
        assert decision.subscription_state == SubscriptionState.MISSING


class TestUsageStage:

    @pytest.mark.asyncio
    async def test_allowed_without_feature(self, db_session, seed):
        agency = await _member(seed)
        checker = _checker()

        decision = await PolicyEngine(db_session, checker).can_perform(
            CanPerformArgs(user_id=USER_ID, agency_id=agency.id, required_permission_key="crm.customers.view")
        )

        assert decision.allowed is True
        assert decision.reason is None
        assert decision.usage is None
        checker.check_usage.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_agency_usage_request(self, db_session, seed):
        agency = await _member(seed)
        checker = _checker()

        decision = await PolicyEngine(db_session, checker).can_perform(
            CanPerformArgs(
                user_id=USER_ID,
                agency_id=agency.id,
                feature_key="crm.contacts",
                quantity=3,
                action_key="import",
            )
        )

        assert decision.allowed is True
        assert decision.usage.remaining == Decimal("9")
        (request,), _ = checker.check_usage.await_args
        assert request.scope == MeteringScope.AGENCY
        assert request.agency_id == agency.id
        assert request.subaccount_id is None
        assert request.feature_key == "crm.contacts"
        assert request.quantity == 3
        assert request.action_key == "import"

    @pytest.mark.asyncio
    async def test_subaccount_usage_request(self, db_session, seed):
        agency = await seed.entitled_agency()
        sub = await seed.subaccount(agency)
        role = await seed.role(agency, ["crm.customers.view"], scope=RoleScope.SUBACCOUNT)
        await seed.subaccount_member(USER_ID, sub, role)
        checker = _checker()

        decision = await PolicyEngine(db_session, checker).can_perform(
            CanPerformArgs(
                user_id=USER_ID,
                agency_id=agency.id,
                subaccount_id=sub.id,
                required_permission_key="crm.customers.view",
                feature_key="crm.contacts",
            )
        )

        assert decision.allowed is True
        assert decision.has_billing_access is False
        (request,), _ = checker.check_usage.await_args
        assert request.scope == MeteringScope.SUBACCOUNT
        assert request.subaccount_id == sub.id

    @pytest.mark.asyncio
    async def test_usage_denial_mapped(self, db_session, seed):
        agency = await _member(seed, keys=("crm.customers.view", "org.billing.account.view"))
        usage = UsageDecision(allowed=False, reason="INSUFFICIENT_CREDITS", remaining=Decimal("0"))

        decision = await PolicyEngine(db_session, _checker(usage)).can_perform(
            CanPerformArgs(user_id=USER_ID, agency_id=agency.id, feature_key="crm.contacts")
        )

        assert decision.reason == PolicyReason.INSUFFICIENT_CREDITS
        assert decision.suggestion == PolicySuggestion.TOPUP
        assert decision.usage is usage

    @pytest.mark.asyncio
    async def test_custom_billing_keys(self, db_session, seed):
        agency = await _member(seed, keys=("crm.customers.view", "org.agency.billing_admin"))
        usage = UsageDecision(allowed=False, reason="FEATURE_DISABLED")

        decision = await PolicyEngine(db_session, _checker(usage)).can_perform(
            CanPerformArgs(
                user_id=USER_ID,
                agency_id=agency.id,
                feature_key="crm.contacts",
                billing_permission_keys=["org.agency.billing_admin"],
            )
        )

        assert decision.reason == PolicyReason.FEATURE_DISABLED
        assert decision.suggestion == PolicySuggestion.UPGRADE
        assert decision.has_billing_access is True


class TestMapUsageDenial:

    @pytest.mark.parametrize("usage_reason,reason,suggestion", [
        ("FEATURE_DISABLED", PolicyReason.FEATURE_DISABLED, PolicySuggestion.UPGRADE),
        ("INSUFFICIENT_CREDITS", PolicyReason.INSUFFICIENT_CREDITS, PolicySuggestion.TOPUP),
        ("LIMIT_EXCEEDED", PolicyReason.LIMIT_EXCEEDED, PolicySuggestion.UPGRADE),
        ("SOMETHING_NEW", PolicyReason.LIMIT_EXCEEDED, PolicySuggestion.UPGRADE),
        (None, PolicyReason.LIMIT_EXCEEDED, PolicySuggestion.UPGRADE),
    ])
    def test_with_billing_access(self, usage_reason, reason, suggestion):
        assert map_usage_denial(usage_reason, True) == (reason, suggestion)

    @pytest.mark.parametrize("usage_reason", ["FEATURE_DISABLED", "INSUFFICIENT_CREDITS", "LIMIT_EXCEEDED"])
    def test_without_billing_access(self, usage_reason):
        _, suggestion = map_usage_denial(usage_reason, False)
        assert suggestion == PolicySuggestion.CONTACT_ADMIN


class TestPolicyDecision:

    def test_allowed_cannot_carry_reason(self):
        with pytest.raises(ValueError):
            PolicyDecision(allowed=True, reason=PolicyReason.NO_PERMISSION)

    def test_denial_needs_reason(self):
        with pytest.raises(ValueError):
            PolicyDecision(allowed=False)

    def test_deny_fills_message(self):
        decision = PolicyDecision.deny(PolicyReason.LIMIT_EXCEEDED, PolicySuggestion.UPGRADE)
        assert decision.message
        assert decision.suggestion == PolicySuggestion.UPGRADE

    def test_to_dict(self):
        decision = PolicyDecision.deny(
            PolicyReason.INSUFFICIENT_CREDITS,
            PolicySuggestion.TOPUP,
            subscription_state=SubscriptionState.ACTIVE,
            usage=UsageDecision(allowed=False, reason="INSUFFICIENT_CREDITS", remaining=Decimal("0.5")),
            has_billing_access=True,
        )
        data = decision.to_dict()
        assert data["reason"] == "INSUFFICIENT_CREDITS"
        assert data["suggestion"] == "TOPUP"
        assert data["subscription_state"] == "ACTIVE"
        assert data["usage"]["remaining"] == "0.5"
        assert data["has_billing_access"] is True


class TestCanPerformFunction:

    @pytest.mark.asyncio
    async def test_keyword_wrapper(self, db_session, seed):
        agency = await _member(seed)

        decision = await can_perform(
            db_session,
            _checker(),
            user_id=USER_ID,
            agency_id=agency.id,
            required_permission_key="crm.customers.view",
        )

        assert decision.allowed is True
        assert decision.subscription_state == SubscriptionState.ACTIVE
