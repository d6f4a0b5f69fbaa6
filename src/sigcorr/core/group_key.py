from __future__ import annotations

import hashlib
from typing import Any

KEY_DELIMITER = "|"


def generate_group_key(source: str, project: str, environment: str, fingerprint: str) -> str:
    """sha256 hex over the trimmed, lower-cased identity fields joined by '|'."""
    raw = KEY_DELIMITER.join(
        str(part).strip().lower() for part in (source, project, environment, fingerprint)
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def group_key_for(alert: Any) -> str:
    return generate_group_key(alert.source, alert.project, alert.environment, alert.fingerprint)
