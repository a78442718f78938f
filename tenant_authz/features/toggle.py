"""
Per-user feature toggles.

A strictly opt-in/opt-out layer beneath plan and admin enablement: a user
preference can switch a feature off for that user, but can never switch on
a feature the tenant's entitlements do not enable.

    effective_enabled = entitlement.is_enabled AND user preference
    user preference defaults to the catalog's default_enabled
"""

import logging
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_authz.core.clock import utcnow
from tenant_authz.core.scope import TenantScope, scope_for
from tenant_authz.entitlements.models import EffectiveEntitlement
from tenant_authz.entitlements.resolver import EntitlementResolver
from tenant_authz.models.base import generate_uuid
from tenant_authz.models.entitlement import EntitlementFeature, MeteringScope
from tenant_authz.models.feature_preference import FeaturePreference

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureContext:
    """Current user and tenant for a toggle request."""
    user_id: str
    agency_id: str
    subaccount_id: Optional[str] = None

    @property
    def scope(self) -> TenantScope:
        return scope_for(self.agency_id, self.subaccount_id)

    @property
    def metering_scope(self) -> MeteringScope:
        return MeteringScope.SUBACCOUNT if self.subaccount_id else MeteringScope.AGENCY

    @property
    def preference_subaccount_id(self) -> str:
        return self.subaccount_id or ""


@dataclass(frozen=True)
class FeatureFlagState:
    feature_key: str
    name: str
    description: Optional[str]
    category: str

    is_available_in_plan: bool
    is_enabled_by_admin: bool
    is_enabled_by_user: bool
    is_toggleable: bool
    effective_enabled: bool

    has_limits: bool
    max_limit: Optional[int]
    is_unlimited: bool
    display_order: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ToggleResult:
    success: bool
    error: Optional[str] = None
    enabled: Optional[bool] = None

    def to_dict(self) -> dict:
        return {"success": self.success, "error": self.error, "enabled": self.enabled}


class FeatureToggleService:
    """
    Feature flags for the current user, derived from entitlements plus
    stored preferences.

    Usage:
        service = FeatureToggleService(session)
        flags = await service.get_feature_flags(FeatureContext(user_id, agency_id))
        result = await service.toggle_user_feature(context, "crm.pipeline.board", False)
    """

    def __init__(self, session: AsyncSession, resolver: Optional[EntitlementResolver] = None):
        self.session = session
        self.resolver = resolver or EntitlementResolver(session)

    async def _resolve(self, context: FeatureContext) -> Dict[str, EffectiveEntitlement]:
        return await self.resolver.resolve_effective_entitlements(context.scope)

    async def _load_preferences(self, context: FeatureContext) -> Dict[str, bool]:
        result = await self.session.execute(
            select(FeaturePreference.feature_key, FeaturePreference.enabled).where(
                FeaturePreference.user_id == context.user_id,
                FeaturePreference.scope == context.metering_scope.value,
                FeaturePreference.agency_id == context.agency_id,
                FeaturePreference.subaccount_id == context.preference_subaccount_id,
            )
        )
        return {key: bool(enabled) for key, enabled in result.all()}

    async def get_feature_flags(self, context: FeatureContext) -> List[FeatureFlagState]:
        """All flags for the context's entitled features, sorted by display order."""
        entitlements = await self._resolve(context)
        if not entitlements:
            return []

        result = await self.session.execute(
            select(EntitlementFeature).where(EntitlementFeature.key.in_(sorted(entitlements)))
        )
        features = {f.key: f for f in result.scalars().all()}
        preferences = await self._load_preferences(context)

        flags: List[FeatureFlagState] = []
        for key, ent in entitlements.items():
            feature = features.get(key)
            if feature is None:
                continue
            user_enabled = preferences.get(key, bool(feature.default_enabled))
            flags.append(
                FeatureFlagState(
                    feature_key=key,
                    name=ent.name,
                    description=ent.description,
                    category=ent.category,
                    is_available_in_plan=True,
                    is_enabled_by_admin=ent.is_enabled,
                    is_enabled_by_user=user_enabled,
                    is_toggleable=bool(feature.is_toggleable),
                    effective_enabled=ent.is_enabled and user_enabled,
                    has_limits=ent.max_int is not None or ent.max_dec is not None,
                    max_limit=ent.max_int,
                    is_unlimited=ent.is_unlimited,
                    display_order=feature.display_order or 0,
                )
            )

        flags.sort(key=lambda f: (f.display_order, f.feature_key))
        return flags

    async def get_feature_flags_by_category(self, context: FeatureContext) -> Dict[str, List[FeatureFlagState]]:
        grouped: Dict[str, List[FeatureFlagState]] = {}
        for flag in await self.get_feature_flags(context):
            grouped.setdefault(flag.category, []).append(flag)
        return grouped

    async def is_feature_enabled(self, context: FeatureContext, feature_key: str) -> bool:
        for flag in await self.get_feature_flags(context):
            if flag.feature_key == feature_key:
                return flag.effective_enabled
        return False

    async def toggle_user_feature(
        self,
        context: FeatureContext,
        feature_key: str,
        enabled: bool,
    ) -> ToggleResult:
        """
        Store the user's preference for a feature.

        Rejected (success=False) when the feature is unknown, not toggleable,
        or not enabled by the tenant's current entitlements.
        """
        feature = await self.session.get(EntitlementFeature, feature_key)
        if feature is None:
            return ToggleResult(success=False, error="Feature not found")
        if not feature.is_toggleable:
            return ToggleResult(success=False, error="Feature cannot be toggled by users")

        entitlements = await self._resolve(context)
        ent = entitlements.get(feature_key)
        if ent is None or not ent.is_enabled:
            return ToggleResult(success=False, error="Feature not available in current plan")

        result = await self.session.execute(
            select(FeaturePreference).where(
                FeaturePreference.user_id == context.user_id,
                FeaturePreference.scope == context.metering_scope.value,
                FeaturePreference.agency_id == context.agency_id,
                FeaturePreference.subaccount_id == context.preference_subaccount_id,
                FeaturePreference.feature_key == feature_key,
            )
        )
        preference = result.scalar_one_or_none()
        if preference is None:
            self.session.add(
                FeaturePreference(
                    id=generate_uuid(),
                    user_id=context.user_id,
                    scope=context.metering_scope.value,
                    agency_id=context.agency_id,
                    subaccount_id=context.preference_subaccount_id,
                    feature_key=feature_key,
                    enabled=enabled,
                )
            )
        else:
            preference.enabled = enabled
            preference.updated_at = utcnow()
        await self.session.flush()

        logger.info(
            "Feature preference updated",
            extra={
                "user_id": context.user_id,
                "agency_id": context.agency_id,
                "subaccount_id": context.subaccount_id,
                "feature_key": feature_key,
                "enabled": enabled,
            },
        )
        return ToggleResult(success=True, enabled=enabled)
