import logging
from datetime import date, datetime
from decimal import Decimal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from brand_connect.auth.dependencies import ensure_owner_or_admin, require_roles
from brand_connect.core import config
from brand_connect.database import SessionLocal, ensure_availability_schema, ensure_booking_schema
from brand_connect.events import AVAILABILITY_CHANGED, BookingChangeEvent, notifier
from brand_connect.models.availability import CreativeAvailability
from brand_connect.models.service import Service
from brand_connect.models.user import ADMIN_ROLE, CREATIVE_ROLE, User
from brand_connect.scheduling.booking_calendar import ERROR, BookingCalendar
from brand_connect.scheduling.slots import (
    AvailabilityRecord,
    CandidateSlot,
    fetch_availability,
    find_available_slots,
    format_hhmm,
    parse_hhmm,
)

router = APIRouter(tags=['availability'])

logger = logging.getLogger(__name__)

DAY_KEYS = tuple(str(day) for day in range(7))
DEFAULT_DAY_START = '09:00'
DEFAULT_DAY_END = '17:00'
MIN_SERVICE_DURATION_MINUTES = 15
MAX_SERVICE_DURATION_MINUTES = 480
DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable. Verify DATABASE_URL and database credentials.'


class DayAvailabilityPayload(BaseModel):
    start: str
    end: str
    is_available: bool = Field(alias='isAvailable')

    class Config:
        populate_by_name = True

    @field_validator('start', 'end')
    @classmethod
    def validate_time(cls, value: str) -> str:
        return format_hhmm(parse_hhmm(value))

    @model_validator(mode='after')
    def validate_range(self) -> 'DayAvailabilityPayload':
        if self.is_available and parse_hhmm(self.start) >= parse_hhmm(self.end):
            raise ValueError('Start time must be before end time.')
        return self


class UpdateAvailabilityRequest(BaseModel):
    recurring_availability: dict[str, DayAvailabilityPayload]
    buffer_time: int = config.DEFAULT_BUFFER_MINUTES
    timezone: str | None = None

    @field_validator('recurring_availability')
    @classmethod
    def validate_day_keys(cls, value: dict[str, DayAvailabilityPayload]) -> dict[str, DayAvailabilityPayload]:
        unknown = sorted(key for key in value if key not in DAY_KEYS)
        if unknown:
            raise ValueError(f'Unknown day keys: {", ".join(unknown)}. Use 0 (Sunday) through 6 (Saturday).')
        return value

    @field_validator('buffer_time')
    @classmethod
    def validate_buffer_time(cls, value: int) -> int:
        if value < 0 or value > config.MAX_BUFFER_MINUTES:
            raise ValueError(f'Buffer time must be between 0 and {config.MAX_BUFFER_MINUTES} minutes.')
        return value

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        normalized = value.strip()
        if not is_valid_timezone(normalized):
            raise ValueError('Unknown timezone.')
        return normalized


class AvailabilityResponse(BaseModel):
    creative_id: int
    recurring_availability: dict[str, DayAvailabilityPayload]
    buffer_time: int
    timezone: str
    is_default: bool = False

    class Config:
        populate_by_name = True


class SlotResponse(BaseModel):
    start: str
    end: str
    label: str
    starts_at: datetime
    ends_at: datetime
    display_start: str | None = None
    display_end: str | None = None
    display_timezone: str | None = None


class CreativeSlotsResponse(BaseModel):
    creative_id: int
    date: date
    timezone: str
    duration_minutes: int
    buffer_minutes: int
    slots: list[SlotResponse]


class CalendarDayResponse(BaseModel):
    date: date
    is_available: bool


class CreateServiceRequest(BaseModel):
    title: str
    duration_minutes: int
    price: Decimal

    @field_validator('title')
    @classmethod
    def validate_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Service title is required.')
        return normalized

    @field_validator('duration_minutes')
    @classmethod
    def validate_duration(cls, value: int) -> int:
        if value < MIN_SERVICE_DURATION_MINUTES or value > MAX_SERVICE_DURATION_MINUTES:
            raise ValueError(
                f'Duration must be between {MIN_SERVICE_DURATION_MINUTES} and {MAX_SERVICE_DURATION_MINUTES} minutes.'
            )
        return value

    @field_validator('price')
    @classmethod
    def validate_price(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError('Price cannot be negative.')
        return value


class ServiceResponse(BaseModel):
    id: int
    creative_id: int
    title: str
    duration_minutes: int
    price: Decimal

    class Config:
        from_attributes = True


def ensure_database_ready() -> None:
    try:
        ensure_availability_schema()
        ensure_booking_schema()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DATABASE_UNAVAILABLE_DETAIL,
        ) from exc


def database_unavailable(exc: SQLAlchemyError) -> HTTPException:
    logger.exception('Database operation failed', exc_info=exc)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=DATABASE_UNAVAILABLE_DETAIL,
    )


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def is_valid_timezone(name: str) -> bool:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return False
    return True


def resolve_timezone(name: str) -> ZoneInfo:
    if not is_valid_timezone(name):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'Unknown timezone: {name}',
        )
    return ZoneInfo(name)


def default_recurring_availability() -> dict[str, dict]:
    # Monday to Friday, 9 AM to 5 PM.
    return {
        key: {'start': DEFAULT_DAY_START, 'end': DEFAULT_DAY_END, 'isAvailable': key not in ('0', '6')}
        for key in DAY_KEYS
    }


def get_creative(db: Session, creative_id: int) -> User:
    creative = db.query(User).filter(User.id == creative_id, User.role == CREATIVE_ROLE).first()
    if creative is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Creative not found.',
        )
    return creative


def get_creative_service(db: Session, creative_id: int, service_id: int) -> Service:
    service = db.query(Service).filter(Service.id == service_id).first()
    if service is None or service.creative_id != creative_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Service not found for this creative.',
        )
    return service


def build_slot_response(
    slot_date: date,
    slot: CandidateSlot,
    creative_zone: ZoneInfo,
    viewer_zone: ZoneInfo | None,
) -> SlotResponse:
    starts_at = datetime.combine(slot_date, slot.start, tzinfo=creative_zone)
    ends_at = datetime.combine(slot_date, slot.end, tzinfo=creative_zone)

    response = SlotResponse(
        start=format_hhmm(slot.start),
        end=format_hhmm(slot.end),
        label=slot.label,
        starts_at=starts_at,
        ends_at=ends_at,
    )
    if viewer_zone is not None:
        response.display_start = format_hhmm(starts_at.astimezone(viewer_zone).time())
        response.display_end = format_hhmm(ends_at.astimezone(viewer_zone).time())
        response.display_timezone = viewer_zone.key
    return response


def open_booking_calendar(db: Session, creative_id: int, viewer_timezone: str | None = None) -> BookingCalendar:
    def load_slots(slot_date: date, availability: AvailabilityRecord) -> list[CandidateSlot]:
        return find_available_slots(db, creative_id, slot_date, availability=availability)

    return BookingCalendar(
        creative_id=creative_id,
        load_availability=lambda: fetch_availability(db, creative_id),
        load_slots=load_slots,
        viewer_timezone=viewer_timezone,
    )


@router.get('/creatives/{creative_id}/availability', response_model=AvailabilityResponse)
def get_availability(creative_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        get_creative(db, creative_id)
        record = db.query(CreativeAvailability).filter(
            CreativeAvailability.creative_id == creative_id,
        ).first()

        if record is None:
            return AvailabilityResponse(
                creative_id=creative_id,
                recurring_availability=default_recurring_availability(),
                buffer_time=config.DEFAULT_BUFFER_MINUTES,
                timezone=config.DEFAULT_TIMEZONE,
                is_default=True,
            )

        return AvailabilityResponse(
            creative_id=creative_id,
            recurring_availability=record.recurring_availability or {},
            buffer_time=record.buffer_time if record.buffer_time is not None else config.DEFAULT_BUFFER_MINUTES,
            timezone=record.timezone or config.DEFAULT_TIMEZONE,
        )
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc


@router.put('/creatives/{creative_id}/availability', response_model=AvailabilityResponse)
def update_availability(
    creative_id: int,
    data: UpdateAvailabilityRequest,
    current_user: User = Depends(require_roles(CREATIVE_ROLE, ADMIN_ROLE)),
    db: Session = Depends(get_db),
):
    ensure_owner_or_admin(current_user, creative_id, 'Only the creative can change their availability.')
    ensure_database_ready()

    try:
        get_creative(db, creative_id)
        recurring_availability = {
            key: day.model_dump(by_alias=True)
            for key, day in sorted(data.recurring_availability.items())
        }

        record = db.query(CreativeAvailability).filter(
            CreativeAvailability.creative_id == creative_id,
        ).first()
        if record is None:
            record = CreativeAvailability(creative_id=creative_id)
            db.add(record)

        record.recurring_availability = recurring_availability
        record.buffer_time = data.buffer_time
        record.timezone = data.timezone or record.timezone or config.DEFAULT_TIMEZONE
        record.updated_at = datetime.now()

        db.commit()
        db.refresh(record)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc

    logger.info('Availability updated for creative %s', creative_id)
    notifier.publish(BookingChangeEvent(type=AVAILABILITY_CHANGED, creative_id=creative_id))

    return AvailabilityResponse(
        creative_id=creative_id,
        recurring_availability=record.recurring_availability,
        buffer_time=record.buffer_time,
        timezone=record.timezone,
    )


@router.get('/creatives/{creative_id}/slots', response_model=CreativeSlotsResponse)
def list_available_slots(
    creative_id: int,
    slot_date: date = Query(..., alias='date'),
    service_id: int | None = Query(default=None),
    viewer_timezone: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    viewer_zone = resolve_timezone(viewer_timezone) if viewer_timezone else None
    ensure_database_ready()

    try:
        get_creative(db, creative_id)
        duration_minutes = config.DEFAULT_SLOT_DURATION_MINUTES
        if service_id is not None:
            duration_minutes = get_creative_service(db, creative_id, service_id).duration_minutes

        availability = fetch_availability(db, creative_id)
        if availability is None:
            return CreativeSlotsResponse(
                creative_id=creative_id,
                date=slot_date,
                timezone=config.DEFAULT_TIMEZONE,
                duration_minutes=duration_minutes,
                buffer_minutes=config.DEFAULT_BUFFER_MINUTES,
                slots=[],
            )

        slots = find_available_slots(
            db,
            creative_id,
            slot_date,
            duration_minutes=duration_minutes,
            availability=availability,
        )
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc

    creative_zone = resolve_timezone(availability.timezone)
    return CreativeSlotsResponse(
        creative_id=creative_id,
        date=slot_date,
        timezone=availability.timezone,
        duration_minutes=duration_minutes,
        buffer_minutes=availability.buffer_minutes,
        slots=[build_slot_response(slot_date, slot, creative_zone, viewer_zone) for slot in slots],
    )


@router.get('/creatives/{creative_id}/calendar', response_model=list[CalendarDayResponse])
def list_calendar_days(
    creative_id: int,
    year: int = Query(..., ge=2000, le=2100),
    month: int = Query(..., ge=1, le=12),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        get_creative(db, creative_id)
        booking_calendar = open_booking_calendar(db, creative_id)
        if booking_calendar.status == ERROR:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=DATABASE_UNAVAILABLE_DETAIL,
            )

        return [
            CalendarDayResponse(date=day.date, is_available=day.is_available)
            for day in booking_calendar.month_days(year, month)
        ]
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc


@router.get('/creatives/{creative_id}/services', response_model=list[ServiceResponse])
def list_services(creative_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        get_creative(db, creative_id)
        return db.query(Service).filter(
            Service.creative_id == creative_id,
        ).order_by(Service.id.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc


@router.post('/creatives/{creative_id}/services', response_model=ServiceResponse, status_code=status.HTTP_201_CREATED)
def create_service(
    creative_id: int,
    data: CreateServiceRequest,
    current_user: User = Depends(require_roles(CREATIVE_ROLE, ADMIN_ROLE)),
    db: Session = Depends(get_db),
):
    ensure_owner_or_admin(current_user, creative_id, 'Only the creative can add services to their profile.')
    ensure_database_ready()

    try:
        get_creative(db, creative_id)
        service = Service(
            creative_id=creative_id,
            title=data.title,
            duration_minutes=data.duration_minutes,
            price=data.price,
        )
        db.add(service)
        db.commit()
        db.refresh(service)
        return service
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc
