from datetime import date, datetime, time
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from slot_scheduler.core.errors import SchedulingError, status_for, to_http_exception
from slot_scheduler.database import get_db
from slot_scheduler.models.order import ScheduledOrder
from slot_scheduler.routes.common import database_unavailable, ensure_database_ready
from slot_scheduler.services.booking import book_scheduled_order
from slot_scheduler.services.order_store import OrderStore
from slot_scheduler.services.rescheduling import (
    CancellationResult,
    RescheduleEligibility,
    RescheduleRequest,
    RescheduleResult,
    can_reschedule,
    cancel_scheduled_order,
    reschedule_order,
)

router = APIRouter(tags=['orders'])

MAX_CANCEL_REASON_LENGTH = 300


def normalize_customer_email(value: str) -> str:
    normalized = value.strip().lower()
    if not normalized:
        raise ValueError('Customer email is required.')
    return normalized


class BookOrderRequest(BaseModel):
    slot_id: int
    customer_name: str
    customer_email: str
    customer_phone: str | None = None
    delivery_type: str = 'delivery'
    address: dict[str, Any] | None = None
    neighborhood_id: str | None = None
    payment_method: str | None = None
    items: list[dict[str, Any]] = []
    total: Decimal = Decimal('0')
    points_redeemed: int = 0
    pending_points: int = 0
    loyalty_customer_id: str | None = None

    @field_validator('customer_email')
    @classmethod
    def validate_customer_email(cls, value: str) -> str:
        return normalize_customer_email(value)

    @field_validator('customer_name')
    @classmethod
    def validate_customer_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Customer name is required.')
        return normalized


class RescheduleOrderRequest(BaseModel):
    customer_email: str
    current_slot_id: int
    new_slot_id: int
    new_slot_date: date | None = None
    new_slot_time: time | None = None

    @field_validator('customer_email')
    @classmethod
    def validate_customer_email(cls, value: str) -> str:
        return normalize_customer_email(value)


class CancelOrderRequest(BaseModel):
    customer_email: str
    reason: str | None = None

    @field_validator('customer_email')
    @classmethod
    def validate_customer_email(cls, value: str) -> str:
        return normalize_customer_email(value)

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > MAX_CANCEL_REASON_LENGTH:
            raise ValueError(f'Reason must be {MAX_CANCEL_REASON_LENGTH} characters or fewer.')

        return normalized


class OrderResponse(BaseModel):
    id: str
    establishment_id: str
    customer_name: str | None = None
    customer_email: str | None = None
    status: str
    is_scheduled: bool
    scheduled_for: datetime | None = None
    scheduling_slot_id: int | None = None
    can_reschedule: bool
    reschedule_limit: datetime | None = None
    is_rescheduled: bool
    reschedule_count: int
    rescheduled_from_order_id: str | None = None
    cancelled_reason: str | None = None

    class Config:
        from_attributes = True


@router.post('/{establishment_id}/orders', response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
def book_order(establishment_id: str, data: BookOrderRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return book_scheduled_order(
            db,
            establishment_id,
            data.slot_id,
            data.model_dump(exclude={'slot_id'}),
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


def require_order_owner(db: Session, establishment_id: str, order_id: str, customer_email: str) -> ScheduledOrder | None:
    """Refuse with 403 unless ``customer_email`` placed the order.

    A missing order is returned as None so the caller reports it the usual way.
    """
    try:
        order = OrderStore(db).get(order_id, establishment_id)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    if order is None:
        return None
    if not order.customer_email or order.customer_email.strip().lower() != customer_email.strip().lower():
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Only the customer who placed this order can change it.')
    return order


@router.get('/{establishment_id}/orders/{order_id}', response_model=OrderResponse)
def get_order(
    establishment_id: str,
    order_id: str,
    customer_email: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    order = require_order_owner(db, establishment_id, order_id, customer_email)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Order not found.')
    return order


@router.get('/{establishment_id}/orders/{order_id}/reschedule-eligibility', response_model=RescheduleEligibility)
def get_reschedule_eligibility(
    establishment_id: str,
    order_id: str,
    customer_email: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    require_order_owner(db, establishment_id, order_id, customer_email)

    try:
        return can_reschedule(db, establishment_id, order_id)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/{establishment_id}/orders/{order_id}/reschedule', response_model=RescheduleResult)
def reschedule(
    establishment_id: str,
    order_id: str,
    data: RescheduleOrderRequest,
    response: Response,
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    require_order_owner(db, establishment_id, order_id, data.customer_email)

    try:
        result = reschedule_order(
            db,
            establishment_id,
            RescheduleRequest(order_id=order_id, **data.model_dump(exclude={'customer_email'})),
        )
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    if not result.success:
        response.status_code = status_for(result.error)
    return result


@router.post('/{establishment_id}/orders/{order_id}/cancel', response_model=CancellationResult)
def cancel_order(
    establishment_id: str,
    order_id: str,
    data: CancelOrderRequest,
    response: Response,
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    require_order_owner(db, establishment_id, order_id, data.customer_email)

    try:
        result = cancel_scheduled_order(db, establishment_id, order_id, data.reason)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    if not result.success:
        response.status_code = status_for(result.error)
    return result
