"""
Entitlement resolver: active plans + add-ons + overrides -> effective entitlements.

Resolution order (deterministic):
    1. Active plan ids for the agency (base subscription + active add-ons)
    2. PlanFeature rows for those plan ids, merged per feature across plans
    3. Inheritance decision for subaccount scope:
       call argument -> subaccount setting -> agency setting -> global default
    4. One override per feature: an exact-scope override replaces the agency
       override (used only when inheriting) for the same key
    5. Override-only features surface as disabled entries unless an override
       enables them

CRITICAL: A tenant with no active plan ids resolves to an empty map. Callers
must treat a missing feature as "not entitled", never as "unlimited".
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_authz.config.settings import AuthzSettings, get_settings
from tenant_authz.core.clock import ensure_utc, utcnow
from tenant_authz.core.scope import AgencyScope, SubAccountScope, TenantScope
from tenant_authz.entitlements.models import (
    EffectiveEntitlement,
    FeatureInfo,
    OverrideTerms,
    PlanFeatureTerms,
)
from tenant_authz.entitlements.normalize import apply_override, disabled_entitlement, normalize_entitlement
from tenant_authz.entitlements.subscription import resolve_plan_ids_for_agency
from tenant_authz.iam.errors import ContextError
from tenant_authz.models.entitlement import (
    EnforcementMode,
    EntitlementFeature,
    EntitlementOverride,
    OverrideScope,
    PlanFeature,
)
from tenant_authz.models.tenancy import AgencySettings, SubAccount, SubAccountSettings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Cross-plan merge
# ---------------------------------------------------------------------------

def _sum_int(values: Iterable[Optional[int]]) -> Optional[int]:
    present = [v for v in values if v is not None]
    if not present:
        return None
    return sum(present)


def _sum_dec(values: Iterable[Optional[Decimal]]) -> Optional[Decimal]:
    present = [v for v in values if v is not None]
    if not present:
        return None
    return sum(present, Decimal("0"))


def merge_plan_features(terms: Sequence[PlanFeatureTerms]) -> PlanFeatureTerms:
    """
    Merge the terms several active plans grant for the same feature.

    Booleans are OR-ed, amounts summed (None + None = None, otherwise None
    counts as zero), and enforcement escalates to HARD if any plan is HARD.
    Non-additive fields come from the first plan that sets them.

    Raises:
        ValueError: If terms is empty
    """
    if not terms:
        raise ValueError("merge_plan_features called with an empty list")
    first = terms[0]
    if len(terms) == 1:
        return first

    any_hard = any(t.enforcement == EnforcementMode.HARD.value for t in terms)

    return PlanFeatureTerms(
        feature_key=first.feature_key,
        is_enabled=any(t.is_enabled for t in terms),
        is_unlimited=any(t.is_unlimited for t in terms),
        included_int=_sum_int(t.included_int for t in terms),
        max_int=_sum_int(t.max_int for t in terms),
        included_dec=_sum_dec(t.included_dec for t in terms),
        max_dec=_sum_dec(t.max_dec for t in terms),
        recurring_credit_grant_int=_sum_int(t.recurring_credit_grant_int for t in terms),
        recurring_credit_grant_dec=_sum_dec(t.recurring_credit_grant_dec for t in terms),
        rollover_credits=any(t.rollover_credits for t in terms),
        top_up_enabled=any(t.top_up_enabled for t in terms),
        top_up_price_id=next((t.top_up_price_id for t in terms if t.top_up_price_id), None),
        enforcement=EnforcementMode.HARD.value if any_hard else first.enforcement,
        overage_mode=first.overage_mode,
        overage_fee=first.overage_fee,
    )


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class EntitlementResolver:
    """
    Resolves effective entitlements for an agency or subaccount scope.

    Read-only: performs queries only, never writes.
    """

    def __init__(self, session: AsyncSession, settings: Optional[AuthzSettings] = None):
        self.session = session
        self.settings = settings or get_settings()

    async def ensure_scope(self, scope: TenantScope) -> None:
        """
        Verify that a subaccount scope's subaccount belongs to its agency.

        Raises:
            ContextError: CONTEXT_INVALID if it does not
        """
        if not isinstance(scope, SubAccountScope):
            return
        result = await self.session.execute(
            select(SubAccount.id).where(
                SubAccount.id == scope.subaccount_id,
                SubAccount.agency_id == scope.agency_id,
            )
        )
        if result.scalar_one_or_none() is None:
            logger.warning(
                "Subaccount does not belong to agency",
                extra={"agency_id": scope.agency_id, "subaccount_id": scope.subaccount_id},
            )
            raise ContextError.invalid("Subaccount not found for agency")

    async def resolve_plan_ids_for_agency(self, agency_id: str, now: Optional[datetime] = None) -> List[str]:
        return await resolve_plan_ids_for_agency(self.session, agency_id, now)

    async def resolve_inherit_agency_entitlements(
        self,
        scope: TenantScope,
        explicit: Optional[bool] = None,
    ) -> bool:
        """
        Decide whether a subaccount picks up agency-level overrides.

        Priority: explicit argument, subaccount setting, agency setting,
        global default. Agency scope never inherits.
        """
        if not isinstance(scope, SubAccountScope):
            return False
        if explicit is not None:
            return bool(explicit)

        sub_setting = await self.session.scalar(
            select(SubAccountSettings.entitlements_inherit_from_agency).where(
                SubAccountSettings.subaccount_id == scope.subaccount_id
            )
        )
        if sub_setting is not None:
            return bool(sub_setting)

        agency_setting = await self.session.scalar(
            select(AgencySettings.entitlements_inherit_to_subaccounts).where(
                AgencySettings.agency_id == scope.agency_id
            )
        )
        if agency_setting is not None:
            return bool(agency_setting)

        return self.settings.subaccount_inherit_agency_default

    async def _load_merged_plan_features(
        self,
        plan_ids: List[str],
    ) -> Dict[str, tuple]:
        """Return {feature_key: (FeatureInfo, merged PlanFeatureTerms)}."""
        result = await self.session.execute(
            select(PlanFeature, EntitlementFeature)
            .join(EntitlementFeature, EntitlementFeature.key == PlanFeature.feature_key)
            .where(PlanFeature.plan_id.in_(plan_ids))
        )
        rows = result.all()

        # Plan discovery order decides "first" for non-additive fields
        rank = {plan_id: i for i, plan_id in enumerate(plan_ids)}
        rows.sort(key=lambda r: (rank.get(r[0].plan_id, len(rank)), r[0].plan_id))

        grouped: Dict[str, List[PlanFeatureTerms]] = {}
        infos: Dict[str, FeatureInfo] = {}
        for plan_feature, feature in rows:
            grouped.setdefault(plan_feature.feature_key, []).append(PlanFeatureTerms.from_model(plan_feature))
            infos.setdefault(feature.key, FeatureInfo.from_model(feature))

        return {key: (infos[key], merge_plan_features(terms)) for key, terms in grouped.items()}

    async def _load_active_overrides(
        self,
        override_scope: OverrideScope,
        agency_id: str,
        subaccount_id: Optional[str],
        now: datetime,
    ) -> Dict[str, OverrideTerms]:
        """
        Active overrides for one exact scope, one per feature key.

        When several overrides for a feature are active at once, the one that
        started last wins (ties broken by id), independent of store ordering.
        """
        stmt = select(EntitlementOverride).where(
            EntitlementOverride.scope == override_scope.value,
            EntitlementOverride.agency_id == agency_id,
            EntitlementOverride.starts_at <= now,
            or_(EntitlementOverride.ends_at.is_(None), EntitlementOverride.ends_at >= now),
        )
        if subaccount_id is None:
            stmt = stmt.where(EntitlementOverride.subaccount_id.is_(None))
        else:
            stmt = stmt.where(EntitlementOverride.subaccount_id == subaccount_id)

        result = await self.session.execute(stmt)
        rows = sorted(
            result.scalars().all(),
            key=lambda o: (ensure_utc(o.starts_at), o.id),
        )

        by_key: Dict[str, OverrideTerms] = {}
        for row in rows:
            by_key[row.feature_key] = OverrideTerms.from_model(row)
        return by_key

    async def _load_feature_infos(self, keys: Iterable[str]) -> Dict[str, FeatureInfo]:
        keys = sorted(set(keys))
        if not keys:
            return {}
        result = await self.session.execute(
            select(EntitlementFeature).where(EntitlementFeature.key.in_(keys))
        )
        return {f.key: FeatureInfo.from_model(f) for f in result.scalars().all()}

    async def resolve_effective_entitlements(
        self,
        scope: TenantScope,
        inherit_agency_entitlements: Optional[bool] = None,
        plan_ids: Optional[List[str]] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, EffectiveEntitlement]:
        """
        Resolve every effective entitlement for a scope.

        Args:
            scope: AgencyScope or SubAccountScope
            inherit_agency_entitlements: Per-call inheritance flag (subaccount only)
            plan_ids: Explicit plan ids; resolved from billing rows when omitted
            now: Evaluation time (defaults to current UTC time)

        Returns:
            Dict of feature_key -> EffectiveEntitlement

        Raises:
            ContextError: If a subaccount scope does not belong to its agency
        """
        now = ensure_utc(now) or utcnow()
        await self.ensure_scope(scope)

        if plan_ids is None:
            plan_ids = await self.resolve_plan_ids_for_agency(scope.agency_id, now)
        plan_ids = list(dict.fromkeys(p for p in plan_ids if p))
        if not plan_ids:
            logger.debug("No active plan ids", extra={"agency_id": scope.agency_id})
            return {}

        merged = await self._load_merged_plan_features(plan_ids)

        inherit = await self.resolve_inherit_agency_entitlements(scope, inherit_agency_entitlements)
        agency_overrides: Dict[str, OverrideTerms] = {}
        if inherit:
            agency_overrides = await self._load_active_overrides(
                OverrideScope.AGENCY, scope.agency_id, None, now
            )

        if isinstance(scope, AgencyScope):
            scope_overrides = await self._load_active_overrides(
                OverrideScope.AGENCY, scope.agency_id, None, now
            )
        else:
            scope_overrides = await self._load_active_overrides(
                OverrideScope.SUBACCOUNT, scope.agency_id, scope.subaccount_id, now
            )

        # The exact-scope override replaces the agency one per feature key.
        overrides = {**agency_overrides, **scope_overrides}

        out: Dict[str, EffectiveEntitlement] = {}
        for key, (info, terms) in merged.items():
            out[key] = normalize_entitlement(info, terms, overrides.get(key))

        missing = set(overrides) - set(out)
        if missing:
            infos = await self._load_feature_infos(missing)
            for key in sorted(missing):
                info = infos.get(key)
                if info is None:
                    continue
                out[key] = apply_override(disabled_entitlement(info), overrides[key])

        logger.debug(
            "Resolved effective entitlements",
            extra={
                "agency_id": scope.agency_id,
                "subaccount_id": scope.subaccount_id,
                "plan_ids": plan_ids,
                "inherit_agency": inherit,
                "feature_count": len(out),
            },
        )
        return out
