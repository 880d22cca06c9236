import logging
from contextlib import contextmanager
from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from slot_scheduler.core import config


logger = logging.getLogger(__name__)

DEFERRED_EVENTS_KEY = 'deferred_change_events'


def _engine_options(url: str | None) -> dict:
    if url and url.startswith('sqlite'):
        # FastAPI runs sync handlers on a thread pool.
        return {'connect_args': {'check_same_thread': False}}
    return {'pool_pre_ping': True}


engine = create_engine(config.DATABASE_URL, echo=config.SQL_ECHO, **_engine_options(config.DATABASE_URL))

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_scheduling_schema_checked = False


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def ensure_scheduling_schema() -> None:
    global _scheduling_schema_checked

    if _scheduling_schema_checked:
        return

    with _schema_lock:
        if _scheduling_schema_checked:
            return

        inspector = inspect(engine)
        table_names = inspector.get_table_names()

        if 'scheduling_slots' not in table_names or 'orders' not in table_names:
            _scheduling_schema_checked = True
            return

        existing_order_columns = {column['name'] for column in inspector.get_columns('orders')}
        migration_steps = [
            ('cancelled_reason', 'ALTER TABLE orders ADD COLUMN cancelled_reason VARCHAR'),
            ('slot_released_at', 'ALTER TABLE orders ADD COLUMN slot_released_at TIMESTAMP'),
            ('rescheduled_from_order_id', 'ALTER TABLE orders ADD COLUMN rescheduled_from_order_id VARCHAR'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_order_columns:
                    logger.info('Adding missing column orders.%s', column_name)
                    connection.execute(text(statement))
            connection.execute(
                text(
                    'CREATE INDEX IF NOT EXISTS idx_scheduling_slots_establishment_date '
                    'ON scheduling_slots(establishment_id, slot_date, slot_time)'
                )
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_orders_scheduling_slot ON orders(scheduling_slot_id)')
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_orders_establishment_status ON orders(establishment_id, status)')
            )

        _scheduling_schema_checked = True


@contextmanager
def atomic(db: Session, feed):
    """Run several store writes as one transaction.

    Stores flush instead of committing while inside this block and queue
    their change events; the events are published only once the outer
    commit succeeds, and dropped on rollback.
    """
    if DEFERRED_EVENTS_KEY in db.info:
        yield
        return

    db.info[DEFERRED_EVENTS_KEY] = []
    try:
        yield
        db.commit()
    except Exception:
        db.rollback()
        raise
    else:
        feed.publish_all(db.info[DEFERRED_EVENTS_KEY])
    finally:
        db.info.pop(DEFERRED_EVENTS_KEY, None)
