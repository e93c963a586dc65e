"""Last-write-wins acceptance rule and server-side collection caps.

A write carries one ``updatedAtMs`` stamp.  It is applied only when the
stamp is at least the stored one, so the stored stamp never decreases and
ties go to the later arrival.
"""

from __future__ import annotations

import math
from itertools import islice
from typing import Any

from diacare.models.sync import Domain

MAX_GLUCOSE_ENTRIES = 800
MAX_REMINDERS = 80
MAX_CHECKIN_DATES = 800

DOMAIN_CAPS: dict[Domain, int] = {
    Domain.glucose: MAX_GLUCOSE_ENTRIES,
    Domain.reminders: MAX_REMINDERS,
    Domain.checkins: MAX_CHECKIN_DATES,
}


def is_valid_timestamp(value: Any) -> bool:
    """Return True if ``value`` is a finite, non-negative integer stamp."""
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return value >= 0
    if isinstance(value, float):
        return math.isfinite(value) and value.is_integer() and value >= 0
    return False


def should_accept(incoming_updated_at_ms: Any, existing_updated_at_ms: int | None) -> bool:
    """Decide whether an incoming write replaces the stored one.

    Args:
        incoming_updated_at_ms: Stamp carried by the write.
        existing_updated_at_ms: Stamp currently stored, or None if nothing is.

    Returns:
        True if the write must be applied.
    """
    if not is_valid_timestamp(incoming_updated_at_ms):
        return False
    if existing_updated_at_ms is None:
        return True
    return incoming_updated_at_ms >= existing_updated_at_ms


def clamp_domain(domain: Domain, value: Any) -> Any:
    """Truncate a domain payload to its cap, keeping the first items.

    Check-ins keep the first dates in insertion order.
    """
    cap = DOMAIN_CAPS[domain]
    if domain is Domain.checkins:
        return dict(islice(value.items(), cap))
    return list(value[:cap])


def clamp_state(values: dict[Domain, Any]) -> dict[Domain, Any]:
    return {domain: clamp_domain(domain, value) for domain, value in values.items()}
