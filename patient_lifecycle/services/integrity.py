"""SHA-256 checksums over a canonical serialization of audit entries.

Payloads enter the digest in their stored, encrypted form. Verifying an
entry therefore never depends on holding the key it was written under.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any

from patient_lifecycle.models.types import as_utc


def canonical_timestamp(value: datetime) -> str:
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def normalize_payload(value: Any) -> Any:
    """Reduce a payload to the JSON form it takes after a storage round trip."""
    if value is None:
        return None
    return json.loads(json.dumps(value, sort_keys=True, default=str))


def compute_checksum(
    *,
    entry_id,
    actor: str,
    subject: str,
    operation: str,
    data_type: str,
    access_result: str,
    timestamp: datetime,
    encrypted_old_values: str | None = None,
    encrypted_new_values: str | None = None,
    justification: str | None = None,
    context: dict[str, Any] | None = None,
) -> str:
    payload = {
        "id": str(entry_id),
        "actor": actor,
        "subject": subject,
        "operation": operation,
        "data_type": data_type,
        "access_result": access_result,
        "timestamp": canonical_timestamp(timestamp),
        "old_values": encrypted_old_values,
        "new_values": encrypted_new_values,
        "justification": justification,
        "context": normalize_payload(context),
    }
    content = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(content.encode()).hexdigest()
