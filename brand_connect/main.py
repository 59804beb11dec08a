import asyncio
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from brand_connect.core import config
from brand_connect.database import Base, engine, ensure_availability_schema, ensure_booking_schema
from brand_connect.events import booking_change_relay_loop, notifier
from brand_connect.models import availability, booking, service, user  # noqa: F401
from brand_connect.routes import auth_routes, availability_routes, booking_routes


def configure_logging() -> None:
    logging.basicConfig(
        level=config.LOG_LEVEL.upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )


configure_logging()
config.validate_runtime_config()

app = FastAPI(title='Brand Connect Scheduling API')

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_database() -> None:
    try:
        Base.metadata.create_all(bind=engine)
        ensure_availability_schema()
        ensure_booking_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.on_event('startup')
async def start_booking_change_relay() -> None:
    if not config.REDIS_URL:
        logger.warning('REDIS_URL is not set; booking changes reach sessions in this worker only.')
        return
    app.state.booking_change_relay = asyncio.create_task(booking_change_relay_loop(config.REDIS_URL, notifier))


@app.on_event('shutdown')
async def stop_booking_change_relay() -> None:
    relay = getattr(app.state, 'booking_change_relay', None)
    if relay is not None:
        relay.cancel()


@app.get('/')
def root():
    return {'status': 'Brand Connect Scheduling API Running'}


app.include_router(auth_routes.router, prefix='/auth')
app.include_router(availability_routes.router)
app.include_router(booking_routes.router)
