"""Slot generation and conflict filtering for creative bookings.

Slots are never stored. They are derived on every request from the
creative's weekly availability and then narrowed by the active bookings
for that date.
"""

import logging
import re
from collections.abc import Iterable, Mapping
from datetime import date, datetime, time, timedelta
from typing import Any, NamedTuple
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from brand_connect.core import config
from brand_connect.models.availability import CreativeAvailability
from brand_connect.models.booking import CONFIRMED, PENDING, Booking

logger = logging.getLogger(__name__)

ACTIVE_BOOKING_STATUSES = (PENDING, CONFIRMED)

_HHMM_PATTERN = re.compile(r'^([01]?\d|2[0-3]):([0-5]\d)$')


class DayAvailability(NamedTuple):
    start: time
    end: time
    is_available: bool


class CandidateSlot(NamedTuple):
    start: time
    end: time

    @property
    def label(self) -> str:
        return f'{format_hhmm(self.start)} - {format_hhmm(self.end)}'


class AvailabilityRecord(NamedTuple):
    weekly: dict[str, DayAvailability]
    buffer_minutes: int
    timezone: str


def parse_hhmm(value: str) -> time:
    match = _HHMM_PATTERN.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise ValueError(f'Invalid time {value!r}; expected HH:mm.')
    return time(int(match.group(1)), int(match.group(2)))


def format_hhmm(value: time) -> str:
    return value.strftime('%H:%M')


def day_key(slot_date: date) -> str:
    """Day-of-week key with Sunday as "0", matching the stored schedule."""
    return str((slot_date.weekday() + 1) % 7)


def load_weekly_availability(raw: Mapping[str, Any] | None) -> dict[str, DayAvailability]:
    weekly: dict[str, DayAvailability] = {}
    for key, entry in (raw or {}).items():
        try:
            weekly[str(key)] = DayAvailability(
                start=parse_hhmm(entry['start']),
                end=parse_hhmm(entry['end']),
                is_available=bool(entry.get('isAvailable', False)),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning('Ignoring malformed availability entry for day %s: %r', key, entry)
    return weekly


def dump_weekly_availability(weekly: Mapping[str, DayAvailability]) -> dict[str, dict[str, Any]]:
    return {
        key: {
            'start': format_hhmm(day.start),
            'end': format_hhmm(day.end),
            'isAvailable': day.is_available,
        }
        for key, day in sorted(weekly.items())
    }


def is_day_available(slot_date: date, weekly: Mapping[str, DayAvailability]) -> bool:
    availability = weekly.get(day_key(slot_date))
    return availability is not None and availability.is_available


def generate_slots(
    slot_date: date,
    weekly: Mapping[str, DayAvailability],
    buffer_minutes: int,
    duration_minutes: int = config.DEFAULT_SLOT_DURATION_MINUTES,
) -> list[CandidateSlot]:
    if buffer_minutes < 0:
        raise ValueError('Buffer time cannot be negative.')
    if duration_minutes <= 0:
        raise ValueError('Slot duration must be positive.')

    availability = weekly.get(day_key(slot_date))
    if availability is None or not availability.is_available:
        return []

    cursor = datetime.combine(slot_date, availability.start)
    window_end = datetime.combine(slot_date, availability.end)
    duration = timedelta(minutes=duration_minutes)
    step = duration + timedelta(minutes=buffer_minutes)

    slots: list[CandidateSlot] = []
    while cursor + duration <= window_end:
        slots.append(CandidateSlot(start=cursor.time(), end=(cursor + duration).time()))
        cursor += step

    return slots


def ranges_overlap(a_start: time, a_end: time, b_start: time, b_end: time) -> bool:
    # Slot start inside booking, slot end inside booking, or booking start inside slot.
    return (
        b_start <= a_start < b_end
        or b_start < a_end <= b_end
        or a_start <= b_start < a_end
    )


def _booking_field(booking: Any, name: str) -> Any:
    if isinstance(booking, Mapping):
        return booking.get(name)
    return getattr(booking, name)


def _as_time(value: Any) -> time:
    if isinstance(value, time):
        return value
    return parse_hhmm(str(value)[:5])


def filter_conflicts(slots: Iterable[CandidateSlot], bookings: Iterable[Any]) -> list[CandidateSlot]:
    active_ranges = [
        (_as_time(_booking_field(booking, 'start_time')), _as_time(_booking_field(booking, 'end_time')))
        for booking in bookings
        if _booking_field(booking, 'status') in ACTIVE_BOOKING_STATUSES
    ]

    return [
        slot
        for slot in slots
        if not any(ranges_overlap(slot.start, slot.end, start, end) for start, end in active_ranges)
    ]


def drop_started_slots(slots: Iterable[CandidateSlot], slot_date: date, now: datetime) -> list[CandidateSlot]:
    """Slots on today's date that already began are no longer bookable; ``now`` is in the creative's zone."""
    if slot_date != now.date():
        return list(slots)
    return [slot for slot in slots if slot.start > now.time()]


def fetch_availability(db: Session, creative_id: int) -> AvailabilityRecord | None:
    record = db.query(CreativeAvailability).filter(
        CreativeAvailability.creative_id == creative_id,
    ).first()
    if record is None:
        return None

    buffer_minutes = record.buffer_time if record.buffer_time is not None else config.DEFAULT_BUFFER_MINUTES
    return AvailabilityRecord(
        weekly=load_weekly_availability(record.recurring_availability),
        buffer_minutes=buffer_minutes,
        timezone=record.timezone or config.DEFAULT_TIMEZONE,
    )


def fetch_active_bookings(db: Session, creative_id: int, slot_date: date) -> list[Booking]:
    return db.query(Booking).filter(
        Booking.creative_id == creative_id,
        Booking.booking_date == slot_date,
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
    ).order_by(Booking.start_time.asc()).all()


def find_available_slots(
    db: Session,
    creative_id: int,
    slot_date: date,
    duration_minutes: int | None = None,
    availability: AvailabilityRecord | None = None,
    now: datetime | None = None,
) -> list[CandidateSlot]:
    if availability is None:
        availability = fetch_availability(db, creative_id)
    if availability is None:
        return []

    candidates = generate_slots(
        slot_date,
        availability.weekly,
        availability.buffer_minutes,
        duration_minutes or config.DEFAULT_SLOT_DURATION_MINUTES,
    )
    if now is None:
        now = datetime.now(ZoneInfo(availability.timezone))
    candidates = drop_started_slots(candidates, slot_date, now)
    if not candidates:
        return []

    return filter_conflicts(candidates, fetch_active_bookings(db, creative_id, slot_date))
