"""
Tenant hierarchy models: agencies and their subaccounts.

An agency is the top-level tenant; subaccounts are nested under exactly one
agency. Settings rows hold the entitlement inheritance switches consulted by
the entitlement resolver:

- AgencySettings.entitlements_inherit_to_subaccounts
- SubAccountSettings.entitlements_inherit_from_agency

Both are nullable; NULL means "not configured, fall through to the next tier".
"""

from sqlalchemy import Boolean, Column, ForeignKey, Index, String

from tenant_authz.models.base import Base, TimestampMixin, generate_uuid


class Agency(Base, TimestampMixin):
    """Top-level tenant."""

    __tablename__ = "agencies"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key",
    )

    name = Column(
        String(255),
        nullable=False,
        comment="Display name",
    )

    def __repr__(self) -> str:
        return f"<Agency(id={self.id}, name={self.name})>"


class SubAccount(Base, TimestampMixin):
    """Child tenant owned by a single agency."""

    __tablename__ = "subaccounts"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key",
    )

    agency_id = Column(
        String(255),
        ForeignKey("agencies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Owning agency",
    )

    name = Column(
        String(255),
        nullable=False,
        comment="Display name",
    )

    __table_args__ = (
        Index("ix_subaccounts_agency_id_id", "agency_id", "id"),
    )

    def __repr__(self) -> str:
        return f"<SubAccount(id={self.id}, agency_id={self.agency_id})>"


class AgencySettings(Base, TimestampMixin):
    """Per-agency configuration."""

    __tablename__ = "agency_settings"

    agency_id = Column(
        String(255),
        ForeignKey("agencies.id", ondelete="CASCADE"),
        primary_key=True,
        comment="Agency these settings belong to",
    )

    entitlements_inherit_to_subaccounts = Column(
        Boolean,
        nullable=True,
        comment="Whether agency-level entitlement overrides flow down to subaccounts. NULL = use global default",
    )


class SubAccountSettings(Base, TimestampMixin):
    """Per-subaccount configuration."""

    __tablename__ = "subaccount_settings"

    subaccount_id = Column(
        String(255),
        ForeignKey("subaccounts.id", ondelete="CASCADE"),
        primary_key=True,
        comment="Subaccount these settings belong to",
    )

    entitlements_inherit_from_agency = Column(
        Boolean,
        nullable=True,
        comment="Whether this subaccount picks up agency-level overrides. NULL = defer to agency setting",
    )
