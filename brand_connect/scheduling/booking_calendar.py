"""Server-side booking calendar session.

One session backs one open booking view: it remembers the selected date,
the bookable slots for it and a loading/error status, and refreshes the
slots when a change event for that date arrives.
"""

import calendar
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError

from brand_connect.core import config
from brand_connect.events import BookingChangeEvent
from brand_connect.scheduling.slots import AvailabilityRecord, CandidateSlot, is_day_available

logger = logging.getLogger(__name__)

IDLE = 'idle'
LOADING = 'loading'
READY = 'ready'
ERROR = 'error'
DISCONNECTED = 'disconnected'

STORE_ERROR_MESSAGE = 'Could not load available time slots. Please try again.'


@dataclass(frozen=True)
class SlotSelection:
    date: date
    slot: str
    timezone: str


@dataclass
class CalendarDay:
    date: date
    is_available: bool


@dataclass
class BookingCalendar:
    creative_id: int
    load_availability: Callable[[], AvailabilityRecord | None]
    load_slots: Callable[[date, AvailabilityRecord], list[CandidateSlot]]
    viewer_timezone: str | None = None
    today: Callable[[], date] | None = None

    availability: AvailabilityRecord | None = None
    selected_date: date | None = None
    selected_slot: str | None = None
    slots: list[CandidateSlot] = field(default_factory=list)
    status: str = IDLE
    error: str | None = None

    def __post_init__(self):
        self._reload_availability()

    @property
    def timezone(self) -> str:
        if self.availability is not None:
            return self.availability.timezone
        return config.DEFAULT_TIMEZONE

    def current_day(self) -> date:
        if self.today is not None:
            return self.today()
        return datetime.now(ZoneInfo(self.timezone)).date()

    def is_date_bookable(self, slot_date: date) -> bool:
        if self.availability is None:
            return False
        today = self.current_day()
        if slot_date < today or slot_date > today + timedelta(days=config.BOOKING_WINDOW_DAYS):
            return False
        return is_day_available(slot_date, self.availability.weekly)

    def month_days(self, year: int, month: int) -> list[CalendarDay]:
        _, days_in_month = calendar.monthrange(year, month)
        return [
            CalendarDay(date=day, is_available=self.is_date_bookable(day))
            for day in (date(year, month, number) for number in range(1, days_in_month + 1))
        ]

    def select_date(self, slot_date: date) -> list[CandidateSlot]:
        if self.availability is None:
            # No schedule yet (or the last lookup failed): look again, and
            # treat a creative without a schedule as having no slots.
            loaded = self._reload_availability()
            if not loaded or self.availability is None:
                self.selected_date = slot_date
                self.selected_slot = None
                if loaded:
                    self.apply_result(slot_date, [])
                return self.slots

        if not self.is_date_bookable(slot_date):
            raise ValueError('This date is not available for booking.')

        self.selected_date = slot_date
        self.selected_slot = None
        self._refresh(slot_date)
        return self.slots

    def select_slot(self, slot_label: str) -> SlotSelection:
        if self.selected_date is None:
            raise ValueError('Select a date first.')
        if slot_label not in {slot.label for slot in self.slots}:
            raise ValueError('This time slot is not available.')

        self.selected_slot = slot_label
        return SlotSelection(
            date=self.selected_date,
            slot=slot_label,
            timezone=self.viewer_timezone or self.timezone,
        )

    def apply_result(self, slot_date: date, slots: list[CandidateSlot]) -> bool:
        """Store slots computed for ``slot_date``; late results for an old date are dropped."""
        if slot_date != self.selected_date:
            logger.debug('Discarding stale slots for %s (selected %s)', slot_date, self.selected_date)
            return False

        self.slots = slots
        self.status = READY
        self.error = None
        if self.selected_slot is not None and self.selected_slot not in {slot.label for slot in slots}:
            self.selected_slot = None
        return True

    def handle_change(self, event: BookingChangeEvent) -> bool:
        if event.creative_id != self.creative_id:
            return False

        if event.booking_date is None:
            if not self._reload_availability() or self.selected_date is None:
                return True
        elif self.selected_date is None or event.booking_date != self.selected_date:
            return False

        self._refresh(self.selected_date)
        return True

    def retry(self) -> list[CandidateSlot]:
        if self.availability is None and not self._reload_availability():
            return []
        if self.selected_date is not None:
            self._refresh(self.selected_date)
        return self.slots

    def mark_disconnected(self) -> None:
        self.status = DISCONNECTED

    def snapshot(self) -> dict:
        return {
            'creative_id': self.creative_id,
            'date': self.selected_date.isoformat() if self.selected_date else None,
            'status': self.status,
            'error': self.error,
            'timezone': self.timezone,
            'selected_slot': self.selected_slot,
            'slots': [slot.label for slot in self.slots],
        }

    def _reload_availability(self) -> bool:
        try:
            self.availability = self.load_availability()
        except SQLAlchemyError:
            logger.exception('Availability lookup failed for creative %s', self.creative_id)
            self.slots = []
            self.status = ERROR
            self.error = STORE_ERROR_MESSAGE
            return False
        return True

    def _refresh(self, slot_date: date) -> None:
        self.status = LOADING
        self.error = None
        try:
            slots = self.load_slots(slot_date, self.availability) if self.availability is not None else []
        except SQLAlchemyError:
            logger.exception('Slot lookup failed for creative %s on %s', self.creative_id, slot_date)
            if slot_date == self.selected_date:
                self.slots = []
                self.status = ERROR
                self.error = STORE_ERROR_MESSAGE
            return

        self.apply_result(slot_date, slots)
