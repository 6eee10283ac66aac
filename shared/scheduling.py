"""
Schedule arithmetic shared by the booking service and both stores.

Intervals are half-open: [start, start + duration). Two bookings that only
touch at a boundary do not collide.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, TypeVar

from dateutil import parser as date_parser

from shared.models import Appointment, ensure_utc

logger = logging.getLogger("scheduling")

T = TypeVar("T")


def interval_end(start: datetime, duration_minutes: int) -> datetime:
    return start + timedelta(minutes=duration_minutes)


def find_collision(
    appointments: Iterable[Appointment],
    provider_id: str,
    start: datetime,
    duration_minutes: int,
    exclude_id: Optional[str] = None,
) -> Optional[Appointment]:
    """
    Return the first active appointment of ``provider_id`` overlapping the
    requested interval, or None if the slot is free.

    CANCELLED and REJECTED appointments never block a slot.
    """
    start = ensure_utc(start)
    end = interval_end(start, duration_minutes)
    for appointment in appointments:
        if appointment.provider_id != provider_id:
            continue
        if exclude_id and appointment.id == exclude_id:
            continue
        if not appointment.is_active:
            continue
        if appointment.overlaps(start, end):
            return appointment
    return None


def collision_context(
    provider_id: str,
    start: datetime,
    duration_minutes: int,
    conflicting: Optional[Appointment] = None,
    operation: str = "create_appointment",
) -> dict:
    """Error context describing the requested and the conflicting interval."""
    start = ensure_utc(start)
    context = {
        "operation": operation,
        "provider_id": provider_id,
        "requested_start": start.isoformat(),
        "requested_end": interval_end(start, duration_minutes).isoformat(),
    }
    if conflicting is not None:
        context.update({
            "conflicting_appointment_id": conflicting.id,
            "conflicting_start": conflicting.date_time.isoformat(),
            "conflicting_end": conflicting.end_time.isoformat(),
        })
    return context


def parse_appointment_datetime(raw: str, now: Callable[[], datetime]) -> datetime:
    """
    Best-effort parse of a human-readable date/time.

    Accepts ISO strings and phrases like "March 15, 2024 at 9:00 AM".
    Naive results are taken as UTC. Anything unparseable falls back to now()
    rather than failing the booking.
    """
    text = (raw or "").strip()
    for candidate in (text, text.replace(" at ", " ")):
        if not candidate:
            continue
        try:
            return ensure_utc(date_parser.parse(candidate))
        except (ValueError, OverflowError):
            continue
    logger.warning(f"Could not parse appointment time {raw!r}, defaulting to now")
    return ensure_utc(now())


def sort_newest_first(items: Iterable[T], key: Callable[[T], datetime]) -> list[T]:
    return sorted(items, key=key, reverse=True)
