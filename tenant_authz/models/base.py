"""
Declarative base and shared column mixins.

Every table in tenant_authz.models registers on Base. This module must not
import other model modules.

Provides:
- Base: declarative base for all models
- TimestampMixin: created_at, updated_at timestamps
- generate_uuid: string UUID primary keys
"""

import uuid

from sqlalchemy import Column, DateTime, func
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def generate_uuid() -> str:
    return str(uuid.uuid4())


class TimestampMixin:
    """created_at/updated_at, filled by the database when not given."""

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="Row creation time",
    )

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="Last modification time",
    )
