import asyncio
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from slot_scheduler.core import config
from slot_scheduler.core.logging_config import configure_logging
from slot_scheduler.database import Base, engine, ensure_scheduling_schema
from slot_scheduler.models import order, slot, user  # noqa: F401
from slot_scheduler.routes import order_routes, slot_routes
from slot_scheduler.services.cancellation_sync import CancellationSync, cancellation_sweep_loop
from slot_scheduler.services.change_feed import change_feed, connect_change_feed

configure_logging()

app = FastAPI(title='Slot Scheduler')

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)

cancellation_sync = CancellationSync()
_background_tasks: list[asyncio.Task] = []


@app.on_event('startup')
def initialize() -> None:
    config.validate_runtime_config()
    try:
        Base.metadata.create_all(bind=engine)
        ensure_scheduling_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and Postgres credentials.')
    try:
        connect_change_feed()
    except RedisError:
        logger.exception('Could not connect the change feed to Redis; events stay local to this process.')
    cancellation_sync.start()


@app.on_event('startup')
async def start_background_tasks() -> None:
    _background_tasks.append(asyncio.create_task(cancellation_sweep_loop(cancellation_sync)))


@app.on_event('shutdown')
async def shutdown() -> None:
    for task in _background_tasks:
        task.cancel()
    await asyncio.gather(*_background_tasks, return_exceptions=True)
    _background_tasks.clear()
    cancellation_sync.stop()
    change_feed.detach()


@app.get('/')
def root():
    return {'status': 'Slot Scheduler API Running'}


app.include_router(slot_routes.router, prefix='/establishments')
app.include_router(order_routes.router, prefix='/establishments')
