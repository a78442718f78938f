"""
Entitlement normalizer: plan terms + optional override -> EffectiveEntitlement.

Pure functions, no I/O.

Override rules:
    1. is_enabled / is_unlimited: an explicitly set override value wins
    2. Caps: an absolute max_override_* replaces the cap; otherwise a
       max_delta_* is added to the cap (an absent cap counts as zero);
       otherwise the cap stands
    3. included_* is never touched, so "included vs. max" stays intact
       for soft-overage billing
"""

from dataclasses import replace
from decimal import Decimal
from typing import Optional, TypeVar

from tenant_authz.entitlements.models import (
    EffectiveEntitlement,
    FeatureInfo,
    OverrideTerms,
    PlanFeatureTerms,
)
from tenant_authz.models.entitlement import EnforcementMode, OverageMode

N = TypeVar("N", int, Decimal)


def _apply_cap(current: Optional[N], absolute: Optional[N], delta: Optional[N], zero: N) -> Optional[N]:
    if absolute is not None:
        return absolute
    if delta is not None:
        return (zero if current is None else current) + delta
    return current


def apply_override(entitlement: EffectiveEntitlement, override: Optional[OverrideTerms]) -> EffectiveEntitlement:
    """Layer one override onto an entitlement, returning a new instance."""
    if override is None:
        return entitlement

    return replace(
        entitlement,
        is_enabled=entitlement.is_enabled if override.is_enabled is None else bool(override.is_enabled),
        is_unlimited=entitlement.is_unlimited if override.is_unlimited is None else bool(override.is_unlimited),
        max_int=_apply_cap(entitlement.max_int, override.max_override_int, override.max_delta_int, 0),
        max_dec=_apply_cap(entitlement.max_dec, override.max_override_dec, override.max_delta_dec, Decimal("0")),
    )


def _from_feature(feature: FeatureInfo, **terms) -> EffectiveEntitlement:
    return EffectiveEntitlement(
        feature_key=feature.key,
        name=feature.name,
        category=feature.category,
        description=feature.description,
        value_type=feature.value_type,
        unit=feature.unit,
        metering=feature.metering,
        aggregation=feature.aggregation,
        scope=feature.scope,
        period=feature.period,
        credit_enabled=feature.credit_enabled,
        credit_unit=feature.credit_unit,
        credit_expires=feature.credit_expires,
        credit_priority=feature.credit_priority,
        **terms,
    )


def normalize_entitlement(
    feature: FeatureInfo,
    plan: PlanFeatureTerms,
    override: Optional[OverrideTerms] = None,
) -> EffectiveEntitlement:
    """
    Merge one (already cross-plan merged) plan feature with an optional override.

    Args:
        feature: Catalog metadata for plan.feature_key
        plan: Plan terms for the feature
        override: Optional override to layer on top

    Returns:
        EffectiveEntitlement
    """
    base = _from_feature(
        feature,
        is_enabled=plan.is_enabled,
        is_unlimited=plan.is_unlimited,
        included_int=plan.included_int,
        max_int=plan.max_int,
        included_dec=plan.included_dec,
        max_dec=plan.max_dec,
        enforcement=plan.enforcement,
        overage_mode=plan.overage_mode,
        recurring_credit_grant_int=plan.recurring_credit_grant_int,
        recurring_credit_grant_dec=plan.recurring_credit_grant_dec,
        rollover_credits=plan.rollover_credits,
        top_up_enabled=plan.top_up_enabled,
        top_up_price_id=plan.top_up_price_id,
    )
    return apply_override(base, override)


def disabled_entitlement(feature: FeatureInfo) -> EffectiveEntitlement:
    """
    Minimal entitlement for a feature no active plan offers.

    Used as the base for override-only features: disabled, zero included,
    no cap, HARD enforcement, no overage.
    """
    return _from_feature(
        feature,
        is_enabled=False,
        is_unlimited=False,
        included_int=0,
        max_int=None,
        included_dec=Decimal("0"),
        max_dec=None,
        enforcement=EnforcementMode.HARD.value,
        overage_mode=OverageMode.NONE.value,
        recurring_credit_grant_int=None,
        recurring_credit_grant_dec=None,
        rollover_credits=False,
        top_up_enabled=False,
        top_up_price_id=None,
    )
