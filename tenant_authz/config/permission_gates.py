"""
Permission-entitlement gate table loader.

Loads prefix -> required-entitlement rules from config/permission_gates.yml,
validates them once, and exposes an immutable PermissionGateTable for the
lifetime of the process.

Validation (skipped when ENV=production):
  - duplicate prefixes are rejected
  - every gate must declare at least one requirement kind

Usage:
    from tenant_authz.config.permission_gates import get_permission_gate_table

    table = get_permission_gate_table()
    gate = table.get_gate_for_permission_key("crm.customers.contact.read")
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

from tenant_authz.config.settings import get_settings
from tenant_authz.iam.errors import GateConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_GATES_PATH = Path(__file__).parent / "permission_gates.yml"


@dataclass(frozen=True)
class PermissionGate:
    """One prefix rule. Feature keys are entitlement feature keys."""
    prefix: str
    require_any: Tuple[str, ...] = ()
    require_all: Tuple[str, ...] = ()
    require_any_all: Tuple[Tuple[str, ...], ...] = ()

    @property
    def has_requirements(self) -> bool:
        return bool(self.require_any or self.require_all or any(self.require_any_all))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PermissionGate":
        prefix = data.get("prefix")
        if not isinstance(prefix, str) or not prefix:
            raise GateConfigurationError(f"Gate is missing a prefix: {data!r}")
        return cls(
            prefix=prefix,
            require_any=tuple(data.get("require_any") or ()),
            require_all=tuple(data.get("require_all") or ()),
            require_any_all=tuple(tuple(group) for group in (data.get("require_any_all") or ()) if group),
        )


def validate_permission_gates(gates: Iterable[PermissionGate]) -> None:
    """
    Raise GateConfigurationError for duplicate prefixes or empty gates.
    """
    seen: Dict[str, int] = {}
    for index, gate in enumerate(gates):
        if gate.prefix in seen:
            raise GateConfigurationError(
                f"Duplicate gate prefix: {gate.prefix!r} (indexes {seen[gate.prefix]} and {index})"
            )
        seen[gate.prefix] = index
        if not gate.has_requirements:
            raise GateConfigurationError(f"Gate for {gate.prefix!r} has no requirements")


@dataclass(frozen=True)
class PermissionGateTable:
    """Immutable, validated gate list with longest-prefix lookup."""
    gates: Tuple[PermissionGate, ...] = field(default_factory=tuple)

    @classmethod
    def from_gates(cls, gates: Iterable[PermissionGate], validate: bool = True) -> "PermissionGateTable":
        gates = tuple(gates)
        if validate:
            validate_permission_gates(gates)
        return cls(gates=gates)

    def get_gate_for_permission_key(self, permission_key: str) -> Optional[PermissionGate]:
        """Most specific (longest prefix) gate matching the key, or None."""
        best: Optional[PermissionGate] = None
        for gate in self.gates:
            if not permission_key.startswith(gate.prefix):
                continue
            if best is None or len(gate.prefix) > len(best.prefix):
                best = gate
        return best

    def __len__(self) -> int:
        return len(self.gates)


class PermissionGateLoader:
    """
    Thread-safe singleton loader for config/permission_gates.yml.

    Unlike soft-tuning config, a broken gate file is fatal: a missing file or
    a validation error propagates and aborts startup.
    """

    _instance: Optional["PermissionGateLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path
        self._table = PermissionGateTable()
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)
        override = get_settings().permission_gates_path
        if override:
            return Path(override)
        return DEFAULT_GATES_PATH

    def _load(self) -> None:
        with self._load_lock:
            path = self._resolve_path()
            with open(path, "r") as f:
                raw = yaml.safe_load(f) or {}

            gates: List[PermissionGate] = [PermissionGate.from_dict(g) for g in raw.get("gates") or []]
            validate = not get_settings().is_production
            self._table = PermissionGateTable.from_gates(gates, validate=validate)

            logger.info(
                "Loaded permission gates from %s: %d gates (validated=%s)",
                path,
                len(self._table),
                validate,
            )

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    @property
    def table(self) -> PermissionGateTable:
        return self._table


def get_permission_gate_loader(config_path: Optional[str] = None) -> PermissionGateLoader:
    return PermissionGateLoader(config_path)


def get_permission_gate_table() -> PermissionGateTable:
    """Get the process-wide gate table."""
    return get_permission_gate_loader().table


def reset_permission_gate_table() -> None:
    """Reset singleton (for testing)."""
    with PermissionGateLoader._lock:
        PermissionGateLoader._instance = None
