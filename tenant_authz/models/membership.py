"""
Membership models linking users to tenants with exactly one role each.

A user has at most one membership row per agency and per subaccount.
Inactive rows are kept for history but never confer access.
"""

from sqlalchemy import Boolean, Column, ForeignKey, Index, String, UniqueConstraint

from tenant_authz.models.base import Base, TimestampMixin, generate_uuid


class AgencyMembership(Base, TimestampMixin):
    __tablename__ = "agency_memberships"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key",
    )

    user_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Authenticated user id (from the credential resolver)",
    )

    agency_id = Column(
        String(255),
        ForeignKey("agencies.id", ondelete="CASCADE"),
        nullable=False,
        comment="Agency the user belongs to",
    )

    role_id = Column(
        String(255),
        ForeignKey("roles.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="Role held within the agency",
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="Inactive memberships confer no access",
    )

    __table_args__ = (
        UniqueConstraint("user_id", "agency_id", name="uq_agency_membership_user_agency"),
        Index("ix_agency_memberships_agency_active", "agency_id", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<AgencyMembership(user_id={self.user_id}, agency_id={self.agency_id}, active={self.is_active})>"


class SubAccountMembership(Base, TimestampMixin):
    __tablename__ = "subaccount_memberships"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key",
    )

    user_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Authenticated user id (from the credential resolver)",
    )

    subaccount_id = Column(
        String(255),
        ForeignKey("subaccounts.id", ondelete="CASCADE"),
        nullable=False,
        comment="Subaccount the user belongs to",
    )

    role_id = Column(
        String(255),
        ForeignKey("roles.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="Role held within the subaccount",
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="Inactive memberships confer no access",
    )

    __table_args__ = (
        UniqueConstraint("user_id", "subaccount_id", name="uq_subaccount_membership_user_subaccount"),
        Index("ix_subaccount_memberships_subaccount_active", "subaccount_id", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubAccountMembership(user_id={self.user_id}, "
            f"subaccount_id={self.subaccount_id}, active={self.is_active})>"
        )
