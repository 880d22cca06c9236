from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError

from slot_scheduler.database import ensure_scheduling_schema


def database_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail='Database unavailable. Verify DATABASE_URL and Postgres credentials.',
    )


def ensure_database_ready() -> None:
    try:
        ensure_scheduling_schema()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
