"""
Role, permission catalog and role-permission grant models.

Roles are scoped to either agency or subaccount membership. Each role is a
named bundle of explicit grant rows pointing into the permission catalog;
only rows with granted = True count toward a user's permission keys.

System roles are seeded by the platform and cannot be edited or deleted.
"""

import enum

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)

from tenant_authz.models.base import Base, TimestampMixin, generate_uuid


class RoleScope(str, enum.Enum):
    """Membership level a role can be attached to."""
    AGENCY = "AGENCY"
    SUBACCOUNT = "SUBACCOUNT"


class Role(Base, TimestampMixin):
    """
    Named bundle of permission grants.

    - agency_id IS NULL => platform-wide role (usually a system role)
    - agency_id IS NOT NULL => custom role owned by that agency
    """

    __tablename__ = "roles"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key",
    )

    agency_id = Column(
        String(255),
        ForeignKey("agencies.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
        comment="Owning agency. NULL for platform-wide roles.",
    )

    name = Column(
        String(100),
        nullable=False,
        comment="Human-readable role name (e.g. 'Agency Owner')",
    )

    scope = Column(
        String(20),
        nullable=False,
        default=RoleScope.AGENCY.value,
        comment="AGENCY or SUBACCOUNT",
    )

    is_system = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="True for platform-seeded roles; prevents edits and deletion",
    )

    __table_args__ = (
        UniqueConstraint("agency_id", "name", name="uq_roles_agency_name"),
    )

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name}, scope={self.scope})>"


class Permission(Base, TimestampMixin):
    """Permission catalog entry, keyed by dot-namespaced permission key."""

    __tablename__ = "permissions"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key",
    )

    key = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Permission key, e.g. 'fi.general_ledger.journal_entries.create'",
    )

    name = Column(
        String(255),
        nullable=False,
        comment="Display name",
    )

    description = Column(
        Text,
        nullable=True,
    )

    category = Column(
        String(100),
        nullable=False,
        default="General",
        comment="Display category used to group the catalog",
    )

    def __repr__(self) -> str:
        return f"<Permission(key={self.key})>"


class RolePermission(Base, TimestampMixin):
    """Explicit grant (or explicit non-grant) of a permission to a role."""

    __tablename__ = "role_permissions"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key",
    )

    role_id = Column(
        String(255),
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="FK to roles.id",
    )

    permission_id = Column(
        String(255),
        ForeignKey("permissions.id", ondelete="CASCADE"),
        nullable=False,
        comment="FK to permissions.id",
    )

    granted = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="Only granted rows contribute permission keys",
    )

    __table_args__ = (
        UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
        Index("ix_role_permissions_role_granted", "role_id", "granted"),
    )

    def __repr__(self) -> str:
        return f"<RolePermission(role_id={self.role_id}, permission_id={self.permission_id})>"
