"""
Entitlement value objects.

Provides:
- FeatureInfo: catalog metadata for one feature
- PlanFeatureTerms: terms one pricing plan grants for a feature (merge input)
- OverrideTerms: one active override row
- EffectiveEntitlement: resolved, read-only entitlement consumed everywhere else

Integer amounts are Optional[int] and decimal amounts Optional[Decimal]:
None means "absent", which is not the same as zero.

CRITICAL: EffectiveEntitlement is never mutated; every change produces a new
instance via dataclasses.replace.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from tenant_authz.models.entitlement import (
    EnforcementMode,
    EntitlementFeature,
    EntitlementOverride,
    FeatureValueType,
    OverageMode,
    PlanFeature,
)


def to_decimal(value: Any) -> Optional[Decimal]:
    """Coerce a stored numeric to Decimal without float round-tripping."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _decimal_str(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


# ---------------------------------------------------------------------------
# Value objects (frozen dataclasses)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FeatureInfo:
    """Catalog metadata copied onto every entitlement for that feature."""
    key: str
    name: str
    category: str
    description: Optional[str]
    value_type: str  # FeatureValueType value
    unit: Optional[str]
    metering: str
    aggregation: str
    scope: str
    period: str
    credit_enabled: bool = False
    credit_unit: Optional[str] = None
    credit_expires: bool = False
    credit_priority: int = 0

    @classmethod
    def from_model(cls, feature: EntitlementFeature) -> "FeatureInfo":
        return cls(
            key=feature.key,
            name=feature.name,
            category=feature.category,
            description=feature.description,
            value_type=feature.value_type,
            unit=feature.unit,
            metering=feature.metering,
            aggregation=feature.aggregation,
            scope=feature.scope,
            period=feature.period,
            credit_enabled=bool(feature.credit_enabled),
            credit_unit=feature.credit_unit,
            credit_expires=bool(feature.credit_expires),
            credit_priority=feature.credit_priority or 0,
        )


@dataclass(frozen=True)
class PlanFeatureTerms:
    """Typed view of one PlanFeature row."""
    feature_key: str
    is_enabled: bool = True
    is_unlimited: bool = False
    included_int: Optional[int] = None
    max_int: Optional[int] = None
    included_dec: Optional[Decimal] = None
    max_dec: Optional[Decimal] = None
    recurring_credit_grant_int: Optional[int] = None
    recurring_credit_grant_dec: Optional[Decimal] = None
    rollover_credits: bool = False
    top_up_enabled: bool = False
    top_up_price_id: Optional[str] = None
    enforcement: str = EnforcementMode.HARD.value
    overage_mode: str = OverageMode.NONE.value
    overage_fee: Optional[Decimal] = None

    @classmethod
    def from_model(cls, row: PlanFeature) -> "PlanFeatureTerms":
        return cls(
            feature_key=row.feature_key,
            is_enabled=bool(row.is_enabled),
            is_unlimited=bool(row.is_unlimited),
            included_int=row.included_int,
            max_int=row.max_int,
            included_dec=to_decimal(row.included_dec),
            max_dec=to_decimal(row.max_dec),
            recurring_credit_grant_int=row.recurring_credit_grant_int,
            recurring_credit_grant_dec=to_decimal(row.recurring_credit_grant_dec),
            rollover_credits=bool(row.rollover_credits),
            top_up_enabled=bool(row.top_up_enabled),
            top_up_price_id=row.top_up_price_id,
            enforcement=row.enforcement,
            overage_mode=row.overage_mode,
            overage_fee=to_decimal(row.overage_fee),
        )


@dataclass(frozen=True)
class OverrideTerms:
    """Typed view of one EntitlementOverride row."""
    feature_key: str
    scope: str  # OverrideScope value
    is_enabled: Optional[bool] = None
    is_unlimited: Optional[bool] = None
    max_override_int: Optional[int] = None
    max_delta_int: Optional[int] = None
    max_override_dec: Optional[Decimal] = None
    max_delta_dec: Optional[Decimal] = None
    starts_at: Optional[datetime] = None
    id: Optional[str] = None

    @classmethod
    def from_model(cls, row: EntitlementOverride) -> "OverrideTerms":
        return cls(
            feature_key=row.feature_key,
            scope=row.scope,
            is_enabled=row.is_enabled,
            is_unlimited=row.is_unlimited,
            max_override_int=row.max_override_int,
            max_delta_int=row.max_delta_int,
            max_override_dec=to_decimal(row.max_override_dec),
            max_delta_dec=to_decimal(row.max_delta_dec),
            starts_at=row.starts_at,
            id=row.id,
        )


@dataclass(frozen=True)
class EffectiveEntitlement:
    """
    Resolved entitlement for one feature in one tenant scope.

    Immutable and always rebuilt from plan terms and overrides.
    """
    feature_key: str
    name: str
    category: str
    description: Optional[str]
    value_type: str
    unit: Optional[str]
    metering: str
    aggregation: str
    scope: str
    period: str

    is_enabled: bool
    is_unlimited: bool

    included_int: Optional[int]
    max_int: Optional[int]
    included_dec: Optional[Decimal]
    max_dec: Optional[Decimal]

    enforcement: str
    overage_mode: str

    credit_enabled: bool
    credit_unit: Optional[str]
    credit_expires: bool
    credit_priority: int

    recurring_credit_grant_int: Optional[int]
    recurring_credit_grant_dec: Optional[Decimal]
    rollover_credits: bool

    top_up_enabled: bool
    top_up_price_id: Optional[str]

    @property
    def is_boolean(self) -> bool:
        return self.value_type == FeatureValueType.BOOLEAN.value

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        for name in ("included_dec", "max_dec", "recurring_credit_grant_dec"):
            d[name] = _decimal_str(d[name])
        return d
