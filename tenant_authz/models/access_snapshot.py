"""
Persisted access snapshots.

AccessContextSnapshot is a disposable, per-(user, scope key) materialization
of the permission keys granted by the user's active role. Rows are deleted
on invalidation and rebuilt on the next read.

AccessSnapshotVersion outlives snapshot rows so the version handed out for a
(user, scope key) pair keeps increasing across delete-and-rebuild cycles.
"""

from sqlalchemy import JSON, Boolean, Column, Integer, String, UniqueConstraint

from tenant_authz.models.base import Base, TimestampMixin, generate_uuid


class AccessContextSnapshot(Base, TimestampMixin):
    __tablename__ = "access_context_snapshots"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key",
    )

    user_id = Column(String(255), nullable=False)

    scope_key = Column(
        String(300),
        nullable=False,
        comment="'agency:<id>' or 'subaccount:<id>'",
    )

    scope = Column(
        String(20),
        nullable=False,
        comment="ScopeLevel value",
    )

    role_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Role the keys were computed from; used for invalidation fan-out",
    )

    permission_keys = Column(
        JSON,
        nullable=False,
        default=list,
        comment="Sorted, de-duplicated granted permission keys",
    )

    permission_hash = Column(
        String(64),
        nullable=False,
        comment="sha256 of the JSON-encoded permission_keys",
    )

    version = Column(Integer, nullable=False, default=1)

    active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("user_id", "scope_key", name="uq_access_snapshot_user_scope"),
    )

    def __repr__(self) -> str:
        return f"<AccessContextSnapshot(user_id={self.user_id}, scope_key={self.scope_key}, version={self.version})>"


class AccessSnapshotVersion(Base, TimestampMixin):
    """Monotonic version counter per (user, scope key)."""

    __tablename__ = "access_snapshot_versions"

    user_id = Column(String(255), primary_key=True)
    scope_key = Column(String(300), primary_key=True)
    version = Column(Integer, nullable=False, default=0)
