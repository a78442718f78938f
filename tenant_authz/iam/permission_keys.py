"""
Permission key validation.

Permission keys are dot-namespaced strings, conventionally
<module>.<submodule>.<resource>.<action>, e.g.
fi.general_ledger.journal_entries.create. Inside the engine they are opaque
strings matched by prefix; this module is the boundary check.
"""

import re
from typing import Iterable, List

from tenant_authz.iam.errors import PermissionKeyError

# Segments: letters, digits, underscore. Mixed case is allowed (iam.authZ.*).
_PERMISSION_KEY_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*(\.[A-Za-z][A-Za-z0-9_]*)+$")


def normalize_permission_key(key: str) -> str:
    return key.strip()


def is_valid_permission_key(key: str) -> bool:
    return bool(_PERMISSION_KEY_RE.match(normalize_permission_key(key)))


def validate_permission_key(key: str) -> str:
    """Return the trimmed key, or raise PermissionKeyError if malformed."""
    normalized = normalize_permission_key(key)
    if not _PERMISSION_KEY_RE.match(normalized):
        raise PermissionKeyError(f"Invalid permission key: {key!r}")
    return normalized


def normalize_permission_keys(keys: Iterable[str]) -> List[str]:
    """Trim, drop empties, de-duplicate and sort."""
    return sorted({k.strip() for k in keys if k and k.strip()})
