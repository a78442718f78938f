"""
Locally persisted billing state, written by the billing-provider sync.

This package only ever reads these rows. A subscription's price_id and each
active add-on's price_id together form the set of active pricing plan ids
from which entitlements are resolved.
"""

import enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, String

from tenant_authz.models.base import Base, TimestampMixin, generate_uuid


class SubscriptionStatus(str, enum.Enum):
    """Subscription status as mirrored from the billing provider."""
    ACTIVE = "ACTIVE"
    TRIALING = "TRIALING"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    INCOMPLETE = "INCOMPLETE"
    UNPAID = "UNPAID"


# Statuses whose price id contributes entitlements while the period is current
ENTITLING_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


class Subscription(Base, TimestampMixin):
    """Base-plan subscription for an agency (one row per agency)."""

    __tablename__ = "subscriptions"

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
        unique=True,
        comment="Subscribed agency",
    )

    price_id = Column(
        String(255),
        nullable=False,
        comment="Pricing plan id of the base plan",
    )

    status = Column(
        String(50),
        nullable=False,
        default=SubscriptionStatus.ACTIVE.value,
        comment="SubscriptionStatus value",
    )

    current_period_end_date = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="End of the paid/trial period. NULL = not yet known",
    )

    trial_ended_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the trial ends (future) or ended (past)",
    )

    def __repr__(self) -> str:
        return f"<Subscription(agency_id={self.agency_id}, price_id={self.price_id}, status={self.status})>"


class AddOn(Base, TimestampMixin):
    """Add-on purchased on top of the base plan."""

    __tablename__ = "addons"

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
        comment="Owning agency",
    )

    price_id = Column(
        String(255),
        nullable=False,
        comment="Pricing plan id of the add-on",
    )

    active = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="Only active add-ons contribute entitlements",
    )

    __table_args__ = (
        Index("ix_addons_agency_active", "agency_id", "active"),
    )

    def __repr__(self) -> str:
        return f"<AddOn(agency_id={self.agency_id}, price_id={self.price_id}, active={self.active})>"
