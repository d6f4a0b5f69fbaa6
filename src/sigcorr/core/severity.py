from __future__ import annotations

from enum import IntEnum
from typing import Dict, Union


class Severity(IntEnum):
    """Incident severity; the integer value is the rank."""

    INFO = 1
    LOW = 2
    MEDIUM = 3
    HIGH = 4
    CRITICAL = 5


# Source vocabularies mapped onto the closed severity set
_ALIASES: Dict[str, Severity] = {
    "CRITICAL": Severity.CRITICAL,
    "FATAL": Severity.CRITICAL,
    "HIGH": Severity.HIGH,
    "ERROR": Severity.HIGH,
    "MEDIUM": Severity.MEDIUM,
    "MED": Severity.MEDIUM,
    "WARNING": Severity.MEDIUM,
    "WARN": Severity.MEDIUM,
    "LOW": Severity.LOW,
    "SUCCESS": Severity.LOW,
    "INFO": Severity.INFO,
    "DEBUG": Severity.INFO,
}

FALLBACK = Severity.INFO


def normalize_severity(value: Union[str, Severity, None]) -> Severity:
    """Total mapping from any incoming severity label to a Severity.

    Unknown or empty labels fall back to INFO.
    """
    if isinstance(value, Severity):
        return value
    if value is None:
        return FALLBACK
    label = str(value).strip().upper()
    found = _ALIASES.get(label)
    if found is None:
        return FALLBACK
    return found


def severity_rank(value: Union[str, Severity, None]) -> int:
    return int(normalize_severity(value))


def resolve_severity(existing: Union[str, Severity], incoming: Union[str, Severity], anomalous: bool) -> Severity:
    """Higher of the two ranks, raised to at least HIGH when a spike was detected."""
    resolved = max(normalize_severity(existing), normalize_severity(incoming))
    if anomalous and resolved < Severity.HIGH:
        resolved = Severity.HIGH
    return resolved
