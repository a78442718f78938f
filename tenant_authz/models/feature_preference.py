"""
Per-user feature preference rows (opt in/out beneath plan enablement).

subaccount_id is stored as "" for agency-scope preferences so the unique
constraint covers both levels without NULL semantics getting in the way.
"""

from sqlalchemy import Boolean, Column, String, UniqueConstraint

from tenant_authz.models.base import Base, TimestampMixin, generate_uuid


class FeaturePreference(Base, TimestampMixin):
    __tablename__ = "feature_preferences"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key",
    )

    user_id = Column(String(255), nullable=False, index=True)

    scope = Column(
        String(20),
        nullable=False,
        comment="MeteringScope value of the context the preference was set in",
    )

    agency_id = Column(String(255), nullable=False)

    subaccount_id = Column(
        String(255),
        nullable=False,
        default="",
        comment="Empty string for agency-scope preferences",
    )

    feature_key = Column(String(255), nullable=False)

    enabled = Column(Boolean, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "scope", "agency_id", "subaccount_id", "feature_key",
            name="uq_feature_preference_context",
        ),
    )

    def __repr__(self) -> str:
        return f"<FeaturePreference(user_id={self.user_id}, feature_key={self.feature_key}, enabled={self.enabled})>"
