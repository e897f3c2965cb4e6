"""Event model: status and production events, topics and payload codec.

Topic Structure:
  factory/machine/{machine_id}/status
  factory/machine/{machine_id}/production

Payloads are flat JSON objects with fixed field names. Timestamps are
RFC 3339 UTC strings, e.g. ``2024-01-01T00:00:03Z``.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

TOPIC_ROOT = "factory"
TOPIC_MACHINE = "machine"
TOPIC_PREFIX = f"{TOPIC_ROOT}/{TOPIC_MACHINE}"

# Zero-valued timestamps emitted by some publishers mean "not set"
ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

# Range of the PostgreSQL integer columns
INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1

_ISO_RE = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<frac>\d+))?"
    r"(?P<tz>Z|z|[+-]\d{2}:?\d{2})?$"
)


class PayloadError(ValueError):
    """Raised when a payload cannot be decoded into an event."""


class MachineStatus(str, Enum):
    """Operating state of a machine."""

    RUNNING = "running"
    STOPPED = "stopped"


class EventKind(str, Enum):
    """Last topic segment, selecting the event shape."""

    STATUS = "status"
    PRODUCTION = "production"


@dataclass(frozen=True)
class StatusEvent:
    """A machine changed its operating state."""

    machine_id: int
    status: MachineStatus
    timestamp: Optional[datetime] = None

    kind = EventKind.STATUS

    @property
    def topic(self) -> str:
        return status_topic(self.machine_id)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "machine_id": self.machine_id,
            "status": MachineStatus(self.status).value,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_payload(cls, data: Any) -> "StatusEvent":
        _require_mapping(data)
        raw_status = data.get("status")
        try:
            status = MachineStatus(raw_status)
        except ValueError:
            raise PayloadError(f"Unknown status {raw_status!r}") from None
        return cls(
            machine_id=_require_int(data, "machine_id"),
            status=status,
            timestamp=parse_timestamp(data.get("timestamp")),
        )


@dataclass(frozen=True)
class ProductionEvent:
    """One completed cycle: a good part or a scrapped one."""

    machine_id: int
    parts_produced: int
    parts_scrapped: int
    timestamp: Optional[datetime] = None

    kind = EventKind.PRODUCTION

    @property
    def topic(self) -> str:
        return production_topic(self.machine_id)

    @property
    def is_scrap(self) -> bool:
        return self.parts_scrapped > 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "machine_id": self.machine_id,
            "parts_produced": self.parts_produced,
            "parts_scrapped": self.parts_scrapped,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_payload(cls, data: Any) -> "ProductionEvent":
        _require_mapping(data)
        return cls(
            machine_id=_require_int(data, "machine_id"),
            parts_produced=_require_count(data, "parts_produced"),
            parts_scrapped=_require_count(data, "parts_scrapped"),
            timestamp=parse_timestamp(data.get("timestamp")),
        )


Event = Union[StatusEvent, ProductionEvent]


# =============================================================================
# Topics
# =============================================================================


def status_topic(machine_id: int) -> str:
    return f"{TOPIC_PREFIX}/{machine_id}/{EventKind.STATUS.value}"


def production_topic(machine_id: int) -> str:
    return f"{TOPIC_PREFIX}/{machine_id}/{EventKind.PRODUCTION.value}"


def topic_for(event: Event) -> str:
    """Get the bus address an event is published on."""
    return event.topic


def subscription_filters() -> Dict[str, EventKind]:
    """Wildcard filters covering every machine, by event kind."""
    return {
        f"{TOPIC_PREFIX}/+/{kind.value}": kind
        for kind in EventKind
    }


# =============================================================================
# Timestamps
# =============================================================================


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render a datetime as RFC 3339 UTC with a trailing Z."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    timespec = "microseconds" if value.microsecond else "seconds"
    return value.replace(tzinfo=None).isoformat(timespec=timespec) + "Z"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp into an aware UTC datetime.

    Returns None for a missing, empty or zero-valued timestamp so the caller
    can substitute its own receive time. Fractions longer than microseconds
    are truncated; naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise PayloadError(f"Timestamp must be a string, got {type(value).__name__}")

    match = _ISO_RE.match(value.strip())
    if not match:
        raise PayloadError(f"Invalid timestamp {value!r}")

    text = match.group("base").replace(" ", "T")
    frac = match.group("frac")
    if frac:
        text += "." + frac[:6].ljust(6, "0")
    tz = match.group("tz")
    if tz in (None, "Z", "z"):
        text += "+00:00"
    elif ":" not in tz:
        text += f"{tz[:3]}:{tz[3:]}"
    else:
        text += tz

    try:
        parsed = datetime.fromisoformat(text).astimezone(timezone.utc)
    except (ValueError, OverflowError):
        raise PayloadError(f"Invalid timestamp {value!r}") from None

    if parsed == ZERO_TIME:
        return None
    return parsed


# =============================================================================
# Field validation
# =============================================================================


def _require_mapping(data: Any) -> None:
    if not isinstance(data, dict):
        raise PayloadError(f"Payload must be a JSON object, got {type(data).__name__}")


def _require_int(data: Dict[str, Any], key: str) -> int:
    if key not in data:
        raise PayloadError(f"Missing field '{key}'")
    value = data[key]
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise PayloadError(f"Field '{key}' must be an integer, got {value!r}")
    if not INT32_MIN <= value <= INT32_MAX:
        raise PayloadError(f"Field '{key}' is out of range for an integer column")
    return value


def _require_count(data: Dict[str, Any], key: str) -> int:
    value = _require_int(data, key)
    if value < 0:
        raise PayloadError(f"Field '{key}' must be non-negative, got {value}")
    return value
