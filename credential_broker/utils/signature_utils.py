"""
HMAC signatures that make audit events tamper-evident.
"""

import hashlib
import hmac
from typing import Any, Dict, Iterable

from .json_utils import canonical_dumps

SIGNED_AUDIT_FIELDS = (
    "id",
    "event_type",
    "outcome",
    "actor",
    "agent_id",
    "credential_id",
    "owner_user_id",
    "grant_id",
    "scope",
    "reason",
    "ip_address",
    "session_id",
    "correlation_id",
    "details",
    "occurred_at",
)


def signing_payload(values: Dict[str, Any], fields: Iterable[str] = SIGNED_AUDIT_FIELDS) -> str:
    """Canonical JSON of the signed fields."""
    return canonical_dumps({field: values.get(field) for field in fields})


def sign(values: Dict[str, Any], key: str) -> str:
    """Hex HMAC-SHA256 of the signed fields."""
    return hmac.new(key.encode("utf-8"), signing_payload(values).encode("utf-8"), hashlib.sha256).hexdigest()


def verify(values: Dict[str, Any], signature: str, key: str) -> bool:
    """Constant-time check of a signature."""
    return hmac.compare_digest(sign(values, key), signature or "")
