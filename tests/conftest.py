import os
from datetime import date, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')
os.environ['REDIS_URL'] = ''

from brand_connect.database import Base  # noqa: E402
from brand_connect.models.availability import CreativeAvailability  # noqa: E402
from brand_connect.models.booking import Booking  # noqa: E402
from brand_connect.models.service import Service  # noqa: E402
from brand_connect.models.user import User  # noqa: E402

TABLES = [User.__table__, Service.__table__, CreativeAvailability.__table__, Booking.__table__]


@pytest.fixture
def db():
    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine, tables=TABLES)

    session = testing_session_local()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine, tables=list(reversed(TABLES)))


@pytest.fixture
def creative(db) -> User:
    user = User(email='amani@studio.co.tz', full_name='Amani Studio', role='creative')
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def client_user(db) -> User:
    user = User(email='neema@example.com', full_name='Neema Client', role='client')
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def next_monday() -> date:
    # At least two days out so "today" in the creative's timezone never catches up.
    day = date.today() + timedelta(days=2)
    while day.weekday() != 0:
        day += timedelta(days=1)
    return day


@pytest.fixture(autouse=True)
def skip_schema_checks(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr('brand_connect.routes.availability_routes.ensure_database_ready', lambda: None)
    monkeypatch.setattr('brand_connect.routes.booking_routes.ensure_database_ready', lambda: None)
