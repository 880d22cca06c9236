import asyncio
import json
from datetime import date, datetime, time

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from slot_scheduler.auth.dependencies import get_establishment_staff
from slot_scheduler.core.errors import SchedulingError, to_http_exception
from slot_scheduler.database import get_db
from slot_scheduler.models.user import StaffUser
from slot_scheduler.routes.common import database_unavailable, ensure_database_ready
from slot_scheduler.services import administration
from slot_scheduler.services.availability import AvailabilityReader, SlotAvailability, list_slots

router = APIRouter(tags=['slots'])

STREAM_KEEPALIVE_SECONDS = 15


class CreateSlotRequest(BaseModel):
    slot_date: date
    slot_time: time
    capacity: int = 5

    @field_validator('capacity')
    @classmethod
    def validate_capacity(cls, value: int) -> int:
        if value <= 0:
            raise ValueError('Capacity must be a positive number of orders.')
        return value

    @field_validator('slot_time')
    @classmethod
    def drop_seconds(cls, value: time) -> time:
        return value.replace(second=0, microsecond=0)


class UpdateSlotRequest(BaseModel):
    slot_date: date | None = None
    slot_time: time | None = None
    capacity: int | None = None


class BlockSlotRequest(BaseModel):
    blocked: bool


class SlotResponse(BaseModel):
    id: int
    establishment_id: str
    slot_date: date
    slot_time: time
    capacity: int
    occupied: int
    is_blocked: bool
    created_at: datetime | None = None

    class Config:
        from_attributes = True


@router.get('/{establishment_id}/slots', response_model=list[SlotAvailability])
def list_available_slots(
    establishment_id: str,
    slot_date: date | None = Query(default=None, alias='date'),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return list_slots(db, establishment_id, slot_date)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


def _offer_latest(updates: asyncio.Queue, payload) -> None:
    """Queue ``payload``, replacing a snapshot the client has not read yet."""
    if updates.full():
        updates.get_nowait()
    updates.put_nowait(payload)


def _sse(payload) -> str:
    return f'event: slots\ndata: {json.dumps(payload)}\n\n'


@router.get('/{establishment_id}/slots/stream')
async def stream_available_slots(
    establishment_id: str,
    request: Request,
    slot_date: date = Query(alias='date'),
):
    loop = asyncio.get_running_loop()
    updates: asyncio.Queue = asyncio.Queue(maxsize=1)

    def push(reader: AvailabilityReader) -> None:
        payload = [slot.model_dump(mode='json') for slot in reader.slots]
        loop.call_soon_threadsafe(_offer_latest, updates, payload)

    reader = AvailabilityReader(establishment_id, slot_date, on_change=push)
    initial = await run_in_threadpool(reader.open)
    if reader.error is not None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=reader.error)

    async def events():
        try:
            yield _sse([slot.model_dump(mode='json') for slot in initial])
            while not await request.is_disconnected():
                try:
                    payload = await asyncio.wait_for(updates.get(), timeout=STREAM_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ': keep-alive\n\n'
                    continue
                yield _sse(payload)
        finally:
            reader.close()

    return StreamingResponse(events(), media_type='text/event-stream')


@router.get('/{establishment_id}/admin/slots', response_model=list[SlotResponse])
def list_managed_slots(
    establishment_id: str,
    staff: StaffUser = Depends(get_establishment_staff),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return administration.list_all_slots(db, establishment_id)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/{establishment_id}/admin/slots', response_model=SlotResponse, status_code=status.HTTP_201_CREATED)
def create_slot(
    establishment_id: str,
    data: CreateSlotRequest,
    staff: StaffUser = Depends(get_establishment_staff),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return administration.create_slot(db, establishment_id, data.slot_date, data.slot_time, data.capacity)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.patch('/{establishment_id}/admin/slots/{slot_id}', response_model=SlotResponse)
def update_slot(
    establishment_id: str,
    slot_id: int,
    data: UpdateSlotRequest,
    staff: StaffUser = Depends(get_establishment_staff),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return administration.update_slot(db, establishment_id, slot_id, data.model_dump(exclude_unset=True))
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.delete('/{establishment_id}/admin/slots/{slot_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_slot(
    establishment_id: str,
    slot_id: int,
    staff: StaffUser = Depends(get_establishment_staff),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        administration.delete_slot(db, establishment_id, slot_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/{establishment_id}/admin/slots/{slot_id}/block', response_model=SlotResponse)
def block_slot(
    establishment_id: str,
    slot_id: int,
    data: BlockSlotRequest,
    staff: StaffUser = Depends(get_establishment_staff),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return administration.toggle_block(db, establishment_id, slot_id, data.blocked)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/{establishment_id}/admin/slots/{slot_id}/reset-counter', response_model=SlotResponse)
def reset_slot_counter(
    establishment_id: str,
    slot_id: int,
    staff: StaffUser = Depends(get_establishment_staff),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return administration.reset_counter(db, establishment_id, slot_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
