import asyncio
import logging
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from threading import Lock

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, field_validator
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from brand_connect.auth.dependencies import get_current_user, require_roles
from brand_connect.core import config
from brand_connect.database import SessionLocal
from brand_connect.events import BOOKING_CREATED, BOOKING_STATUS_CHANGED, BookingChangeEvent, notifier
from brand_connect.models.booking import (
    BOOKING_STATUSES,
    CANCELLED,
    COMPLETED,
    CONFIRMED,
    IN_PROGRESS,
    PENDING,
    Booking,
)
from brand_connect.models.user import ADMIN_ROLE, CLIENT_ROLE, User
from brand_connect.routes.availability_routes import (
    database_unavailable,
    ensure_database_ready,
    get_creative,
    get_creative_service,
    get_db,
    is_valid_timezone,
    resolve_timezone,
)
from brand_connect.scheduling.booking_calendar import BookingCalendar
from brand_connect.scheduling.slots import fetch_availability, find_available_slots, format_hhmm, parse_hhmm

router = APIRouter(tags=['bookings'])

logger = logging.getLogger(__name__)

MAX_BOOKING_NOTES_LENGTH = 500
DEFAULT_PAGE_LIMIT = 10
MAX_PAGE_LIMIT = 100
SLOT_TAKEN_DETAIL = 'This time is no longer available.'

ALLOWED_STATUS_TRANSITIONS = {
    PENDING: {CONFIRMED, CANCELLED},
    CONFIRMED: {IN_PROGRESS, CANCELLED},
    IN_PROGRESS: {COMPLETED},
    COMPLETED: set(),
    CANCELLED: set(),
}

# Serializes the availability check and the insert within this process.
# Writers in other processes queue on the creative row lock instead.
_booking_write_lock = Lock()


class CreateBookingRequest(BaseModel):
    creative_id: int
    service_id: int
    booking_date: date
    start_time: time
    notes: str | None = None
    timezone: str | None = None

    @field_validator('start_time', mode='before')
    @classmethod
    def validate_start_time(cls, value):
        if isinstance(value, str):
            return parse_hhmm(value)
        return value

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > MAX_BOOKING_NOTES_LENGTH:
            raise ValueError(f'Notes must be {MAX_BOOKING_NOTES_LENGTH} characters or fewer.')

        return normalized

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        normalized = value.strip()
        if not is_valid_timezone(normalized):
            raise ValueError('Unknown timezone.')
        return normalized


class UpdateBookingStatusRequest(BaseModel):
    status: str
    notes: str | None = None

    @field_validator('status')
    @classmethod
    def validate_status(cls, value: str) -> str:
        normalized = value.strip().lower().replace('-', '_')
        if normalized not in BOOKING_STATUSES:
            raise ValueError('Invalid booking status.')
        return normalized

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        if value is not None and len(value.strip()) > MAX_BOOKING_NOTES_LENGTH:
            raise ValueError(f'Notes must be {MAX_BOOKING_NOTES_LENGTH} characters or fewer.')
        return value.strip() if value else None


class BookingResponse(BaseModel):
    id: int
    client_id: int
    creative_id: int
    service_id: int | None = None
    booking_date: date
    start_time: str
    end_time: str
    status: str
    total_amount: Decimal | None = None
    notes: str | None = None
    timezone: str | None = None
    created_at: datetime | None = None


def to_booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        id=booking.id,
        client_id=booking.client_id,
        creative_id=booking.creative_id,
        service_id=booking.service_id,
        booking_date=booking.booking_date,
        start_time=format_hhmm(booking.start_time),
        end_time=format_hhmm(booking.end_time),
        status=booking.status or PENDING,
        total_amount=booking.total_amount,
        notes=booking.notes,
        timezone=booking.client_timezone,
        created_at=booking.created_at,
    )


def validate_booking_window(booking_date: date, today: date) -> None:
    last_day = today + timedelta(days=config.BOOKING_WINDOW_DAYS)
    if booking_date < today or booking_date > last_day:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'Booking date must be between today and {config.BOOKING_WINDOW_DAYS} days from now.',
        )


def lock_creative_schedule(db: Session, creative_id: int) -> User:
    """Hold the creative row until commit so overlapping inserts from any worker run one at a time."""
    return db.query(User).filter(User.id == creative_id).with_for_update().one()


def validate_status_transition(current_status: str, new_status: str) -> None:
    if new_status not in ALLOWED_STATUS_TRANSITIONS.get(current_status, set()):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f'Cannot change a {current_status} booking to {new_status}.',
        )


@router.post('/bookings', response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    data: CreateBookingRequest,
    current_user: User = Depends(require_roles(CLIENT_ROLE)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        get_creative(db, data.creative_id)
        service = get_creative_service(db, data.creative_id, data.service_id)

        availability = fetch_availability(db, data.creative_id)
        creative_timezone = availability.timezone if availability else config.DEFAULT_TIMEZONE
        validate_booking_window(data.booking_date, datetime.now(resolve_timezone(creative_timezone)).date())

        start_time = data.start_time.replace(second=0, microsecond=0)
        end_time = (datetime.combine(data.booking_date, start_time) + timedelta(minutes=service.duration_minutes)).time()

        with _booking_write_lock:
            lock_creative_schedule(db, data.creative_id)
            open_slots = find_available_slots(
                db,
                data.creative_id,
                data.booking_date,
                duration_minutes=service.duration_minutes,
                availability=availability,
            )
            if start_time not in {slot.start for slot in open_slots}:
                logger.warning(
                    'Rejected booking for creative %s on %s at %s: slot unavailable',
                    data.creative_id,
                    data.booking_date,
                    format_hhmm(start_time),
                )
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail=SLOT_TAKEN_DETAIL,
                )

            booking = Booking(
                client_id=current_user.id,
                creative_id=data.creative_id,
                service_id=service.id,
                booking_date=data.booking_date,
                start_time=start_time,
                end_time=end_time,
                status=PENDING,
                total_amount=service.price,
                notes=data.notes,
                client_timezone=data.timezone,
                created_at=datetime.now(),
            )
            db.add(booking)
            db.commit()
        db.refresh(booking)
    except IntegrityError as exc:
        db.rollback()
        logger.warning('Rejected booking for creative %s on %s: active slot already taken', data.creative_id, data.booking_date)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=SLOT_TAKEN_DETAIL,
        ) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc

    logger.info('Booking %s created for creative %s on %s', booking.id, booking.creative_id, booking.booking_date)
    notifier.publish(
        BookingChangeEvent(
            type=BOOKING_CREATED,
            creative_id=booking.creative_id,
            booking_date=booking.booking_date,
            booking_id=booking.id,
            status=booking.status,
        )
    )
    return to_booking_response(booking)


@router.get('/bookings', response_model=list[BookingResponse])
def list_bookings(
    status_filter: str | None = Query(default=None, alias='status'),
    creative_id: int | None = Query(default=None),
    client_id: int | None = Query(default=None),
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    normalized_status = status_filter.strip().lower().replace('-', '_') if status_filter else None
    if normalized_status is not None and normalized_status not in BOOKING_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Invalid booking status.',
        )

    ensure_database_ready()

    try:
        query = db.query(Booking)

        if current_user.role != ADMIN_ROLE:
            query = query.filter(or_(Booking.client_id == current_user.id, Booking.creative_id == current_user.id))
        if normalized_status:
            query = query.filter(Booking.status == normalized_status)
        if creative_id is not None:
            query = query.filter(Booking.creative_id == creative_id)
        if client_id is not None:
            query = query.filter(Booking.client_id == client_id)
        if date_from is not None:
            query = query.filter(Booking.booking_date >= date_from)
        if date_to is not None:
            query = query.filter(Booking.booking_date <= date_to)

        bookings = query.order_by(
            Booking.booking_date.desc(),
            Booking.start_time.desc(),
            Booking.id.desc(),
        ).offset((page - 1) * limit).limit(limit).all()

        return [to_booking_response(booking) for booking in bookings]
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc


@router.patch('/bookings/{booking_id}/status', response_model=BookingResponse)
def update_booking_status(
    booking_id: int,
    data: UpdateBookingStatusRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        booking = db.query(Booking).filter(Booking.id == booking_id).first()
        if booking is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Booking not found.',
            )

        is_admin = current_user.role == ADMIN_ROLE
        is_creative = current_user.id == booking.creative_id
        is_client = current_user.id == booking.client_id

        if not (is_admin or is_creative or is_client):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Only the booked creative or an admin can update this booking.',
            )
        if not (is_admin or is_creative) and not (booking.status == PENDING and data.status == CANCELLED):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Clients can only cancel their own pending bookings.',
            )

        validate_status_transition(booking.status or PENDING, data.status)

        previous_status = booking.status
        booking.status = data.status
        if data.notes:
            booking.notes = data.notes
        booking.updated_at = datetime.now()
        db.commit()
        db.refresh(booking)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc

    logger.info('Booking %s moved from %s to %s by user %s', booking.id, previous_status, booking.status, current_user.id)
    notifier.publish(
        BookingChangeEvent(
            type=BOOKING_STATUS_CHANGED,
            creative_id=booking.creative_id,
            booking_date=booking.booking_date,
            booking_id=booking.id,
            status=booking.status,
        )
    )
    return to_booking_response(booking)


def open_session_calendar(creative_id: int, viewer_timezone: str | None = None) -> BookingCalendar:
    """Calendar for a long-lived booking session; every store read gets its own session."""

    def load_availability():
        db = SessionLocal()
        try:
            return fetch_availability(db, creative_id)
        finally:
            db.close()

    def load_slots(slot_date: date, availability):
        db = SessionLocal()
        try:
            return find_available_slots(db, creative_id, slot_date, availability=availability)
        finally:
            db.close()

    return BookingCalendar(
        creative_id=creative_id,
        load_availability=load_availability,
        load_slots=load_slots,
        viewer_timezone=viewer_timezone,
    )


async def handle_session_message(websocket: WebSocket, calendar: BookingCalendar, message: dict) -> None:
    action = message.get('action')

    try:
        if action == 'select_date':
            await run_in_threadpool(calendar.select_date, date.fromisoformat(str(message.get('date'))))
            await websocket.send_json({'type': 'slots', **calendar.snapshot()})
        elif action == 'retry':
            await run_in_threadpool(calendar.retry)
            await websocket.send_json({'type': 'slots', **calendar.snapshot()})
        elif action == 'select_slot':
            selection = calendar.select_slot(str(message.get('slot')))
            await websocket.send_json({
                'type': 'selection',
                'date': selection.date.isoformat(),
                'slot': selection.slot,
                'timezone': selection.timezone,
            })
        else:
            await websocket.send_json({'type': 'error', 'detail': f'Unknown action: {action}'})
    except ValueError as exc:
        await websocket.send_json({'type': 'error', 'detail': str(exc)})


@router.websocket('/creatives/{creative_id}/booking-session')
async def booking_session(websocket: WebSocket, creative_id: int, viewer_timezone: str | None = None):
    if viewer_timezone and not is_valid_timezone(viewer_timezone):
        await websocket.close(code=1008, reason='Unknown timezone')
        return

    await websocket.accept()
    calendar = await run_in_threadpool(open_session_calendar, creative_id, viewer_timezone)
    subscription = notifier.subscribe(creative_id)
    await websocket.send_json({'type': 'slots', **calendar.snapshot()})

    receive_task = asyncio.ensure_future(websocket.receive_json())
    event_task = asyncio.ensure_future(subscription.get())

    try:
        while True:
            done, _ = await asyncio.wait({receive_task, event_task}, return_when=asyncio.FIRST_COMPLETED)

            if event_task in done:
                event = event_task.result()
                if await run_in_threadpool(calendar.handle_change, event):
                    await websocket.send_json({'type': 'slots', 'event': event.to_message(), **calendar.snapshot()})
                event_task = asyncio.ensure_future(subscription.get())

            if receive_task in done:
                try:
                    message = receive_task.result()
                except ValueError:
                    message = None
                if isinstance(message, dict):
                    await handle_session_message(websocket, calendar, message)
                else:
                    await websocket.send_json({'type': 'error', 'detail': 'Messages must be JSON objects.'})
                receive_task = asyncio.ensure_future(websocket.receive_json())
    except WebSocketDisconnect:
        calendar.mark_disconnected()
        logger.info('Booking session for creative %s disconnected', creative_id)
    finally:
        receive_task.cancel()
        event_task.cancel()
        notifier.unsubscribe(subscription)
