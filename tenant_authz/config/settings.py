"""
Environment-driven settings for the authorization engine.

Environment variables:
- ENV: deployment environment. Gate table validation runs unless "production".
- ACCESS_SNAPSHOT_TTL_SECONDS: in-process access snapshot TTL (default 60)
- ENTITLEMENTS_SUBACCOUNT_INHERIT_AGENCY: global default for subaccounts
  inheriting agency-level overrides (default true; only "false" disables)
- PERMISSION_GATES_PATH: optional override for the bundled gate table YAML

Usage:
    from tenant_authz.config.settings import get_settings

    ttl = get_settings().access_snapshot_ttl_seconds
"""

import logging
import os
from dataclasses import dataclass
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_ACCESS_SNAPSHOT_TTL_SECONDS = 60


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(
            "Invalid integer in environment, using default",
            extra={"variable": name, "value": raw, "default": default},
        )
        return default


@dataclass(frozen=True)
class AuthzSettings:
    env: str
    access_snapshot_ttl_seconds: int
    subaccount_inherit_agency_default: bool
    permission_gates_path: Optional[str] = None

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    @classmethod
    def from_env(cls) -> "AuthzSettings":
        return cls(
            env=os.getenv("ENV", "development").strip().lower(),
            access_snapshot_ttl_seconds=_int_env(
                "ACCESS_SNAPSHOT_TTL_SECONDS", DEFAULT_ACCESS_SNAPSHOT_TTL_SECONDS
            ),
            # Anything but an explicit "false" keeps inheritance on
            subaccount_inherit_agency_default=(
                os.getenv("ENTITLEMENTS_SUBACCOUNT_INHERIT_AGENCY", "true").strip().lower() != "false"
            ),
            permission_gates_path=os.getenv("PERMISSION_GATES_PATH") or None,
        )


_settings: Optional[AuthzSettings] = None
_settings_lock = Lock()


def get_settings() -> AuthzSettings:
    """Get the process-wide settings, read from the environment once."""
    global _settings
    if _settings is None:
        with _settings_lock:
            if _settings is None:
                _settings = AuthzSettings.from_env()
    return _settings


def reset_settings() -> None:
    """Reset the settings singleton (for testing)."""
    global _settings
    with _settings_lock:
        _settings = None
