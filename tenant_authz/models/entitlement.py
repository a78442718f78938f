"""
Entitlement catalog, per-plan feature terms and manual overrides.

- EntitlementFeature: catalog entry describing a capability and how it is metered
- PlanFeature: terms a pricing plan (base or add-on) grants for one feature
- EntitlementOverride: time-bounded manual adjustment for an agency or subaccount

Integer and decimal amounts are nullable on purpose: NULL means "absent",
which the cross-plan merge distinguishes from zero.
"""

import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)

from tenant_authz.models.base import Base, TimestampMixin, generate_uuid


class FeatureValueType(str, enum.Enum):
    BOOLEAN = "BOOLEAN"
    INTEGER = "INTEGER"
    DECIMAL = "DECIMAL"
    STRING = "STRING"


class MeteringType(str, enum.Enum):
    NONE = "NONE"
    COUNT = "COUNT"
    SUM = "SUM"


class MeterAggregation(str, enum.Enum):
    COUNT = "COUNT"
    SUM = "SUM"
    MAX = "MAX"
    LAST = "LAST"


class MeteringScope(str, enum.Enum):
    AGENCY = "AGENCY"
    SUBACCOUNT = "SUBACCOUNT"


class UsagePeriod(str, enum.Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"
    LIFETIME = "LIFETIME"


class EnforcementMode(str, enum.Enum):
    HARD = "HARD"
    SOFT = "SOFT"


class OverageMode(str, enum.Enum):
    NONE = "NONE"
    INTERNAL_CREDITS = "INTERNAL_CREDITS"
    INVOICE = "INVOICE"


class OverrideScope(str, enum.Enum):
    AGENCY = "AGENCY"
    SUBACCOUNT = "SUBACCOUNT"


# Shared precision for decimal allowances and caps
DECIMAL_PRECISION = Numeric(20, 6)


class EntitlementFeature(Base, TimestampMixin):
    """Catalog entry for a meterable or boolean capability."""

    __tablename__ = "entitlement_features"

    key = Column(
        String(255),
        primary_key=True,
        comment="Feature key, e.g. 'crm.customers.contact'",
    )

    name = Column(String(255), nullable=False)
    category = Column(String(100), nullable=False, default="General")
    description = Column(Text, nullable=True)

    value_type = Column(
        String(20),
        nullable=False,
        default=FeatureValueType.BOOLEAN.value,
        comment="FeatureValueType value",
    )

    unit = Column(String(50), nullable=True, comment="Display unit for quantities")

    metering = Column(String(20), nullable=False, default=MeteringType.NONE.value)
    aggregation = Column(String(20), nullable=False, default=MeterAggregation.COUNT.value)
    scope = Column(String(20), nullable=False, default=MeteringScope.AGENCY.value)
    period = Column(String(20), nullable=False, default=UsagePeriod.MONTHLY.value)

    is_toggleable = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Whether individual users may opt in/out",
    )

    default_enabled = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="User preference applied when no preference row exists",
    )

    display_order = Column(Integer, nullable=False, default=0)

    credit_enabled = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Whether usage can be funded from a credit balance",
    )
    credit_unit = Column(String(50), nullable=True)
    credit_expires = Column(Boolean, nullable=False, default=False)
    credit_priority = Column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<EntitlementFeature(key={self.key}, value_type={self.value_type})>"


class PlanFeature(Base, TimestampMixin):
    """Terms a single pricing plan grants for one feature."""

    __tablename__ = "plan_features"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key",
    )

    plan_id = Column(
        String(255),
        nullable=False,
        comment="Pricing plan id (base subscription or add-on price)",
    )

    feature_key = Column(
        String(255),
        ForeignKey("entitlement_features.key", ondelete="CASCADE"),
        nullable=False,
    )

    is_enabled = Column(Boolean, nullable=False, default=True)
    is_unlimited = Column(Boolean, nullable=False, default=False)

    included_int = Column(Integer, nullable=True, comment="Bundled allowance")
    max_int = Column(Integer, nullable=True, comment="Hard cap")
    included_dec = Column(DECIMAL_PRECISION, nullable=True)
    max_dec = Column(DECIMAL_PRECISION, nullable=True)

    recurring_credit_grant_int = Column(Integer, nullable=True)
    recurring_credit_grant_dec = Column(DECIMAL_PRECISION, nullable=True)
    rollover_credits = Column(Boolean, nullable=False, default=False)

    top_up_enabled = Column(Boolean, nullable=False, default=False)
    top_up_price_id = Column(String(255), nullable=True)

    enforcement = Column(String(20), nullable=False, default=EnforcementMode.HARD.value)
    overage_mode = Column(String(30), nullable=False, default=OverageMode.NONE.value)
    overage_fee = Column(DECIMAL_PRECISION, nullable=True)

    __table_args__ = (
        UniqueConstraint("plan_id", "feature_key", name="uq_plan_feature"),
        Index("ix_plan_features_plan_id", "plan_id"),
    )

    def __repr__(self) -> str:
        return f"<PlanFeature(plan_id={self.plan_id}, feature_key={self.feature_key})>"


class EntitlementOverride(Base, TimestampMixin):
    """
    Time-bounded manual adjustment of one feature for one tenant scope.

    Absolute fields (is_enabled, is_unlimited, max_override_*) replace the
    plan value when set; max_delta_* are added to the plan cap.
    """

    __tablename__ = "entitlement_overrides"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key",
    )

    scope = Column(
        String(20),
        nullable=False,
        comment="OverrideScope value",
    )

    agency_id = Column(
        String(255),
        ForeignKey("agencies.id", ondelete="CASCADE"),
        nullable=False,
    )

    subaccount_id = Column(
        String(255),
        ForeignKey("subaccounts.id", ondelete="CASCADE"),
        nullable=True,
        comment="Set only for SUBACCOUNT scope",
    )

    feature_key = Column(
        String(255),
        ForeignKey("entitlement_features.key", ondelete="CASCADE"),
        nullable=False,
    )

    is_enabled = Column(Boolean, nullable=True)
    is_unlimited = Column(Boolean, nullable=True)

    max_override_int = Column(Integer, nullable=True)
    max_delta_int = Column(Integer, nullable=True)
    max_override_dec = Column(DECIMAL_PRECISION, nullable=True)
    max_delta_dec = Column(DECIMAL_PRECISION, nullable=True)

    starts_at = Column(DateTime(timezone=True), nullable=False)
    ends_at = Column(DateTime(timezone=True), nullable=True, comment="NULL = open-ended")

    reason = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_entitlement_overrides_scope_lookup", "scope", "agency_id", "subaccount_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<EntitlementOverride(scope={self.scope}, agency_id={self.agency_id}, "
            f"subaccount_id={self.subaccount_id}, feature_key={self.feature_key})>"
        )
