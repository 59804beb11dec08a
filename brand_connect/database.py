from dotenv import load_dotenv
from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

load_dotenv()

from brand_connect.core import config  # noqa: E402

_connect_args = {"check_same_thread": False} if config.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(config.DATABASE_URL, echo=config.SQL_ECHO, connect_args=_connect_args)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_availability_schema_checked = False
_booking_schema_checked = False


def ensure_availability_schema() -> None:
    global _availability_schema_checked

    if _availability_schema_checked:
        return

    with _schema_lock:
        if _availability_schema_checked:
            return

        inspector = inspect(engine)

        if 'creative_availability' not in inspector.get_table_names():
            _availability_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('creative_availability')}
        migration_steps = [
            ('buffer_time', 'ALTER TABLE creative_availability ADD COLUMN buffer_time INTEGER DEFAULT 30'),
            ('timezone', 'ALTER TABLE creative_availability ADD COLUMN timezone VARCHAR'),
            ('updated_at', 'ALTER TABLE creative_availability ADD COLUMN updated_at TIMESTAMP'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))

        _availability_schema_checked = True


def ensure_booking_schema() -> None:
    global _booking_schema_checked

    if _booking_schema_checked:
        return

    with _schema_lock:
        if _booking_schema_checked:
            return

        inspector = inspect(engine)

        if 'bookings' not in inspector.get_table_names():
            _booking_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('bookings')}
        migration_steps = [
            ('service_id', 'ALTER TABLE bookings ADD COLUMN service_id INTEGER'),
            ('total_amount', 'ALTER TABLE bookings ADD COLUMN total_amount NUMERIC(12, 2)'),
            ('notes', 'ALTER TABLE bookings ADD COLUMN notes VARCHAR'),
            ('client_timezone', 'ALTER TABLE bookings ADD COLUMN client_timezone VARCHAR'),
            ('updated_at', 'ALTER TABLE bookings ADD COLUMN updated_at TIMESTAMP'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_bookings_creative_date ON bookings(creative_id, booking_date)')
            )
            connection.execute(
                text(
                    'CREATE UNIQUE INDEX IF NOT EXISTS uq_bookings_active_slot '
                    'ON bookings(creative_id, booking_date, start_time) '
                    "WHERE status IN ('pending', 'confirmed')"
                )
            )

        _booking_schema_checked = True
