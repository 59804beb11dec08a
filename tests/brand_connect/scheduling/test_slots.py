from datetime import date, datetime, time
from zoneinfo import ZoneInfo

import pytest

from brand_connect.models.availability import CreativeAvailability
from brand_connect.models.booking import Booking
from brand_connect.scheduling.slots import (
    CandidateSlot,
    DayAvailability,
    day_key,
    drop_started_slots,
    fetch_availability,
    filter_conflicts,
    find_available_slots,
    generate_slots,
    load_weekly_availability,
    parse_hhmm,
    ranges_overlap,
)

MONDAY = date(2026, 1, 5)
SUNDAY = date(2026, 1, 4)


def _weekly(start: str, end: str, is_available: bool = True, key: str = '1') -> dict[str, DayAvailability]:
    return {key: DayAvailability(parse_hhmm(start), parse_hhmm(end), is_available)}


def _labels(slots: list[CandidateSlot]) -> list[str]:
    return [slot.label for slot in slots]


def test_day_key_uses_sunday_as_zero() -> None:
    assert day_key(SUNDAY) == '0'
    assert day_key(MONDAY) == '1'
    assert day_key(date(2026, 1, 10)) == '6'


@pytest.mark.parametrize(
    ('value', 'expected'),
    [
        ('9:00', time(9, 0)),
        ('09:00', time(9, 0)),
        ('00:05', time(0, 5)),
        ('23:59', time(23, 59)),
    ],
)
def test_parse_hhmm_accepts_24_hour_times(value: str, expected: time) -> None:
    assert parse_hhmm(value) == expected


@pytest.mark.parametrize('value', ['24:00', '9am', '09:60', '', '09:00:00'])
def test_parse_hhmm_rejects_other_formats(value: str) -> None:
    with pytest.raises(ValueError):
        parse_hhmm(value)


def test_generate_slots_is_empty_when_day_is_unavailable() -> None:
    assert generate_slots(MONDAY, _weekly('09:00', '17:00', is_available=False), buffer_minutes=30) == []


def test_generate_slots_is_empty_when_day_is_missing() -> None:
    assert generate_slots(SUNDAY, _weekly('09:00', '17:00'), buffer_minutes=30) == []


def test_generate_slots_applies_buffer_between_hour_slots() -> None:
    slots = generate_slots(MONDAY, _weekly('09:00', '17:00'), buffer_minutes=30)

    assert _labels(slots) == [
        '09:00 - 10:00',
        '10:30 - 11:30',
        '12:00 - 13:00',
        '13:30 - 14:30',
        '15:00 - 16:00',
    ]


def test_generate_slots_is_empty_when_window_is_shorter_than_a_slot() -> None:
    assert generate_slots(MONDAY, _weekly('09:00', '09:30'), buffer_minutes=0) == []


def test_generate_slots_includes_slot_ending_exactly_at_close() -> None:
    slots = generate_slots(MONDAY, _weekly('09:00', '12:00'), buffer_minutes=0)

    assert _labels(slots) == ['09:00 - 10:00', '10:00 - 11:00', '11:00 - 12:00']


def test_generate_slots_uses_service_duration() -> None:
    slots = generate_slots(MONDAY, _weekly('09:00', '12:00'), buffer_minutes=15, duration_minutes=90)

    assert _labels(slots) == ['09:00 - 10:30']


def test_generate_slots_returns_same_result_for_same_inputs() -> None:
    weekly = _weekly('08:00', '18:00')

    assert generate_slots(MONDAY, weekly, 20) == generate_slots(MONDAY, weekly, 20)


def test_generate_slots_rejects_negative_buffer() -> None:
    with pytest.raises(ValueError):
        generate_slots(MONDAY, _weekly('09:00', '17:00'), buffer_minutes=-5)


@pytest.mark.parametrize(
    ('booking_start', 'booking_end', 'expected'),
    [
        (time(10, 30), time(11, 30), True),
        (time(9, 30), time(10, 30), True),
        (time(10, 15), time(10, 45), True),
        (time(9, 0), time(12, 0), True),
        (time(10, 0), time(11, 0), True),
        (time(11, 0), time(12, 0), False),
        (time(9, 0), time(10, 0), False),
    ],
)
def test_ranges_overlap(booking_start: time, booking_end: time, expected: bool) -> None:
    assert ranges_overlap(time(10, 0), time(11, 0), booking_start, booking_end) is expected


def test_filter_conflicts_drops_slot_overlapping_confirmed_booking() -> None:
    slots = [CandidateSlot(time(10, 0), time(11, 0))]
    bookings = [{'start_time': '10:30', 'end_time': '11:30', 'status': 'confirmed'}]

    assert filter_conflicts(slots, bookings) == []


def test_filter_conflicts_keeps_slot_when_booking_is_cancelled() -> None:
    slots = [CandidateSlot(time(10, 0), time(11, 0))]
    bookings = [{'start_time': '10:30', 'end_time': '11:30', 'status': 'cancelled'}]

    assert filter_conflicts(slots, bookings) == slots


def test_filter_conflicts_keeps_all_slots_without_bookings() -> None:
    slots = generate_slots(MONDAY, _weekly('09:00', '17:00'), buffer_minutes=30)

    assert filter_conflicts(slots, []) == slots


def test_filter_conflicts_preserves_chronological_order() -> None:
    slots = generate_slots(MONDAY, _weekly('09:00', '13:00'), buffer_minutes=0)
    bookings = [{'start_time': time(10, 0), 'end_time': time(11, 0), 'status': 'pending'}]

    assert _labels(filter_conflicts(slots, bookings)) == ['09:00 - 10:00', '11:00 - 12:00', '12:00 - 13:00']


def test_load_weekly_availability_skips_malformed_days() -> None:
    weekly = load_weekly_availability({
        '1': {'start': '09:00', 'end': '17:00', 'isAvailable': True},
        '2': {'start': 'nine', 'end': '17:00', 'isAvailable': True},
        '3': {'end': '17:00'},
    })

    assert list(weekly) == ['1']
    assert weekly['1'] == DayAvailability(time(9, 0), time(17, 0), True)


def test_fetch_availability_returns_none_without_record(db, creative) -> None:
    assert fetch_availability(db, creative.id) is None


def test_fetch_availability_keeps_zero_buffer(db, creative) -> None:
    db.add(CreativeAvailability(
        creative_id=creative.id,
        recurring_availability={'1': {'start': '09:00', 'end': '12:00', 'isAvailable': True}},
        buffer_time=0,
    ))
    db.commit()

    record = fetch_availability(db, creative.id)

    assert record.buffer_minutes == 0
    assert record.timezone == 'Africa/Dar_es_Salaam'


def test_find_available_slots_excludes_only_active_bookings_on_that_date(db, creative, client_user) -> None:
    db.add(CreativeAvailability(
        creative_id=creative.id,
        recurring_availability={'1': {'start': '09:00', 'end': '12:00', 'isAvailable': True}},
        buffer_time=0,
    ))
    db.add_all([
        Booking(client_id=client_user.id, creative_id=creative.id, booking_date=MONDAY,
                start_time=time(9, 0), end_time=time(10, 0), status='confirmed'),
        Booking(client_id=client_user.id, creative_id=creative.id, booking_date=MONDAY,
                start_time=time(10, 0), end_time=time(11, 0), status='completed'),
        Booking(client_id=client_user.id, creative_id=creative.id, booking_date=date(2026, 1, 12),
                start_time=time(11, 0), end_time=time(12, 0), status='pending'),
    ])
    db.commit()

    slots = find_available_slots(db, creative.id, MONDAY)

    assert _labels(slots) == ['10:00 - 11:00', '11:00 - 12:00']


def test_find_available_slots_is_empty_without_availability(db, creative) -> None:
    assert find_available_slots(db, creative.id, MONDAY) == []


def test_drop_started_slots_only_trims_the_current_day() -> None:
    slots = generate_slots(MONDAY, _weekly('09:00', '12:00'), 0)
    dar = ZoneInfo('Africa/Dar_es_Salaam')

    assert _labels(drop_started_slots(slots, MONDAY, datetime(2026, 1, 5, 10, 0, tzinfo=dar))) == ['11:00 - 12:00']
    assert _labels(drop_started_slots(slots, MONDAY, datetime(2026, 1, 4, 23, 0, tzinfo=dar))) == _labels(slots)


def test_find_available_slots_hides_slots_that_already_started_today(db, creative) -> None:
    db.add(CreativeAvailability(
        creative_id=creative.id,
        recurring_availability={'1': {'start': '09:00', 'end': '12:00', 'isAvailable': True}},
        buffer_time=0,
        timezone='Africa/Dar_es_Salaam',
    ))
    db.commit()

    late_morning = datetime(2026, 1, 5, 10, 30, tzinfo=ZoneInfo('Africa/Dar_es_Salaam'))
    slots = find_available_slots(db, creative.id, MONDAY, now=late_morning)

    assert _labels(slots) == ['11:00 - 12:00']
