"""
Tests for cross-plan merging and override normalization.

Tests:
- merge_plan_features: OR of booleans, nullable sums, order independence
- normalize_entitlement / apply_override: absolute vs. delta caps
- disabled_entitlement defaults for override-only features
"""

import itertools
from decimal import Decimal

import pytest

from tenant_authz.entitlements.models import FeatureInfo, OverrideTerms, PlanFeatureTerms
from tenant_authz.entitlements.normalize import (
    apply_override,
    disabled_entitlement,
    normalize_entitlement,
)
from tenant_authz.entitlements.resolver import merge_plan_features
from tenant_authz.models.entitlement import EnforcementMode, OverageMode, OverrideScope


def _feature(key="crm.contacts.limit", value_type="INTEGER"):
    return FeatureInfo(
        key=key,
        name="Contacts",
        category="CRM",
        description=None,
        value_type=value_type,
        unit="contacts",
        metering="COUNT",
        aggregation="COUNT",
        scope="AGENCY",
        period="MONTHLY",
    )


def _override(**kwargs):
    kwargs.setdefault("feature_key", "crm.contacts.limit")
    kwargs.setdefault("scope", OverrideScope.AGENCY.value)
    return OverrideTerms(**kwargs)


# =============================================================================
# merge_plan_features
# =============================================================================


class TestMergePlanFeatures:

    def test_empty_input_rejected(self):
        with pytest.raises(ValueError):
            merge_plan_features([])

    def test_single_row_returned_unchanged(self):
        terms = PlanFeatureTerms(feature_key="f", max_int=10)
        assert merge_plan_features([terms]) is terms

    def test_amounts_summed(self):
        merged = merge_plan_features([
            PlanFeatureTerms(feature_key="f", included_int=5, max_int=10, max_dec=Decimal("1.5")),
            PlanFeatureTerms(feature_key="f", included_int=1, max_int=5, max_dec=Decimal("2.25")),
        ])
        assert merged.included_int == 6
        assert merged.max_int == 15
        assert merged.max_dec == Decimal("3.75")

    def test_absent_plus_absent_stays_absent(self):
        merged = merge_plan_features([
            PlanFeatureTerms(feature_key="f"),
            PlanFeatureTerms(feature_key="f"),
        ])
        assert merged.max_int is None
        assert merged.included_dec is None

    def test_absent_counts_as_zero_next_to_a_value(self):
        merged = merge_plan_features([
            PlanFeatureTerms(feature_key="f", max_int=None),
            PlanFeatureTerms(feature_key="f", max_int=7),
        ])
        assert merged.max_int == 7

    def test_booleans_are_ored(self):
        merged = merge_plan_features([
            PlanFeatureTerms(feature_key="f", is_enabled=False, is_unlimited=False),
            PlanFeatureTerms(feature_key="f", is_enabled=True, is_unlimited=True),
        ])
        assert merged.is_enabled is True
        assert merged.is_unlimited is True

    def test_all_disabled_stays_disabled(self):
        merged = merge_plan_features([
            PlanFeatureTerms(feature_key="f", is_enabled=False),
            PlanFeatureTerms(feature_key="f", is_enabled=False),
        ])
        assert merged.is_enabled is False

    def test_hard_enforcement_escalates(self):
        merged = merge_plan_features([
            PlanFeatureTerms(feature_key="f", enforcement=EnforcementMode.SOFT.value),
            PlanFeatureTerms(feature_key="f", enforcement=EnforcementMode.HARD.value),
        ])
        assert merged.enforcement == EnforcementMode.HARD.value

    def test_first_top_up_price_wins(self):
        merged = merge_plan_features([
            PlanFeatureTerms(feature_key="f"),
            PlanFeatureTerms(feature_key="f", top_up_price_id="price_a"),
            PlanFeatureTerms(feature_key="f", top_up_price_id="price_b"),
        ])
        assert merged.top_up_price_id == "price_a"

    def test_merge_is_order_independent(self):
        rows = [
            PlanFeatureTerms(feature_key="f", is_enabled=False, included_int=3, max_int=None),
            PlanFeatureTerms(feature_key="f", is_enabled=True, included_int=None, max_int=4,
                             max_dec=Decimal("0.5")),
            PlanFeatureTerms(feature_key="f", is_enabled=False, included_int=2, max_int=8,
                             is_unlimited=True, included_dec=Decimal("1.25")),
        ]
        results = set()
        for perm in itertools.permutations(rows):
            merged = merge_plan_features(list(perm))
            results.add((
                merged.is_enabled,
                merged.is_unlimited,
                merged.included_int,
                merged.max_int,
                merged.included_dec,
                merged.max_dec,
            ))
        assert results == {(True, True, 5, 12, Decimal("1.25"), Decimal("0.5"))}


# =============================================================================
# normalize_entitlement / apply_override
# =============================================================================


class TestNormalizeEntitlement:

    def test_plan_terms_copied(self):
        ent = normalize_entitlement(
            _feature(),
            PlanFeatureTerms(feature_key="crm.contacts.limit", included_int=50, max_int=100),
        )
        assert ent.feature_key == "crm.contacts.limit"
        assert ent.name == "Contacts"
        assert ent.is_enabled is True
        assert ent.included_int == 50
        assert ent.max_int == 100

    def test_absolute_override_replaces_cap(self):
        ent = normalize_entitlement(
            _feature(),
            PlanFeatureTerms(feature_key="crm.contacts.limit", max_int=100),
            _override(max_override_int=500, max_delta_int=20),
        )
        assert ent.max_int == 500

    def test_delta_added_to_cap(self):
        ent = normalize_entitlement(
            _feature(),
            PlanFeatureTerms(feature_key="crm.contacts.limit", max_int=100),
            _override(max_delta_int=-30),
        )
        assert ent.max_int == 70

    def test_delta_on_absent_cap_counts_from_zero(self):
        ent = normalize_entitlement(
            _feature(),
            PlanFeatureTerms(feature_key="crm.contacts.limit"),
            _override(max_delta_int=25),
        )
        assert ent.max_int == 25

    def test_included_untouched_by_override(self):
        ent = normalize_entitlement(
            _feature(),
            PlanFeatureTerms(feature_key="crm.contacts.limit", included_int=10, max_int=100),
            _override(max_override_int=1),
        )
        assert ent.included_int == 10

    def test_decimal_delta(self):
        ent = normalize_entitlement(
            _feature(value_type="DECIMAL"),
            PlanFeatureTerms(feature_key="crm.contacts.limit", max_dec=Decimal("10.50")),
            _override(max_delta_dec=Decimal("0.25")),
        )
        assert ent.max_dec == Decimal("10.75")

    def test_explicit_flags_win(self):
        ent = normalize_entitlement(
            _feature(),
            PlanFeatureTerms(feature_key="crm.contacts.limit", is_enabled=True),
            _override(is_enabled=False, is_unlimited=True),
        )
        assert ent.is_enabled is False
        assert ent.is_unlimited is True

    def test_unset_flags_keep_plan_values(self):
        ent = normalize_entitlement(
            _feature(),
            PlanFeatureTerms(feature_key="crm.contacts.limit", is_enabled=True, is_unlimited=False),
            _override(max_delta_int=1),
        )
        assert ent.is_enabled is True
        assert ent.is_unlimited is False

    def test_apply_none_returns_same_instance(self):
        ent = normalize_entitlement(_feature(), PlanFeatureTerms(feature_key="crm.contacts.limit"))
        assert apply_override(ent, None) is ent

    def test_override_returns_new_instance(self):
        ent = normalize_entitlement(
            _feature(), PlanFeatureTerms(feature_key="crm.contacts.limit", max_int=1)
        )
        updated = apply_override(ent, _override(max_override_int=2))
        assert ent.max_int == 1
        assert updated.max_int == 2

    def test_to_dict_renders_decimals_as_strings(self):
        ent = normalize_entitlement(
            _feature(value_type="DECIMAL"),
            PlanFeatureTerms(feature_key="crm.contacts.limit", max_dec=Decimal("2.5")),
        )
        data = ent.to_dict()
        assert data["max_dec"] == "2.5"
        assert data["included_dec"] is None


class TestDisabledEntitlement:

    def test_defaults(self):
        ent = disabled_entitlement(_feature())
        assert ent.is_enabled is False
        assert ent.is_unlimited is False
        assert ent.included_int == 0
        assert ent.included_dec == Decimal("0")
        assert ent.max_int is None
        assert ent.enforcement == EnforcementMode.HARD.value
        assert ent.overage_mode == OverageMode.NONE.value

    def test_override_can_enable(self):
        ent = apply_override(disabled_entitlement(_feature()), _override(is_enabled=True, max_override_int=3))
        assert ent.is_enabled is True
        assert ent.max_int == 3
