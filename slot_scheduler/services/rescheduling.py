"""
Rescheduling and cancellation of scheduled orders.

A reschedule moves an order's seat from its current slot to a new one and
replaces the order with a successor: the original is marked rescheduled
and cancelled, and a new pending order references the new slot and points
back at its predecessor.

Two strategies are available (``RESCHEDULE_STRATEGY``):

``transaction``
    Every write happens in one database transaction; any failure rolls all
    of them back.

``saga``
    Each write commits on its own. When a later step fails, the earlier
    ones are undone by compensating writes, newest first. Each compensating
    write is retried once; if it still fails the operation ends in
    ``CompensationFailed`` and the slot counters need an operator.
"""

import logging
from datetime import date, datetime, time
from typing import Any, Callable

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from slot_scheduler.core import config
from slot_scheduler.core.errors import (
    AlreadyRescheduled,
    CompensationFailed,
    DeadlineExpired,
    NotScheduled,
    OrderCancelled,
    OrderCreationFailed,
    OrderNotFound,
    ReservationFailed,
    RescheduleNotPermitted,
    SchedulingError,
    SlotMismatch,
    SlotNotFound,
    SlotUnavailable,
    UpdateFailed,
)
from slot_scheduler.database import atomic
from slot_scheduler.models.order import CANCELLED_STATUS, PENDING_STATUS, ScheduledOrder
from slot_scheduler.models.slot import SchedulingSlot
from slot_scheduler.services.booking import (
    default_reschedule_limit,
    release_order_slot,
    reopen_order_slot,
    slot_moment,
    slot_unavailable,
)
from slot_scheduler.services.change_feed import ChangeFeed, change_feed
from slot_scheduler.services.notifications import ORDER_CANCELLED, ORDER_RESCHEDULED, notify_customer
from slot_scheduler.services.order_store import OrderStore, generate_order_id
from slot_scheduler.services.slot_store import SlotStore

logger = logging.getLogger(__name__)

DEFAULT_CANCEL_REASON = 'Cancelled by customer'
COMPENSATION_ATTEMPTS = 2
ORDER_BEING_CANCELLED = 'This order is being cancelled.'


class RescheduleEligibility(BaseModel):
    allowed: bool
    reason: str | None = None
    error: str | None = None
    deadline: datetime | None = None


class RescheduleRequest(BaseModel):
    order_id: str
    current_slot_id: int
    new_slot_id: int
    new_slot_date: date | None = None
    new_slot_time: time | None = None


class RescheduleResult(BaseModel):
    success: bool
    message: str
    new_order_id: str | None = None
    error: str | None = None
    detail: dict[str, Any] | None = None


class CancellationResult(BaseModel):
    success: bool
    message: str
    error: str | None = None
    slot_released: bool = False


def reschedule_deadline(order: ScheduledOrder) -> datetime | None:
    if order.reschedule_limit is not None:
        return order.reschedule_limit
    if order.scheduled_for is not None:
        return default_reschedule_limit(order.scheduled_for)
    return None


def check_eligibility(order: ScheduledOrder | None, now: datetime) -> datetime:
    """Raise the first failing precondition; return the deadline otherwise."""
    if order is None:
        raise OrderNotFound()
    if not order.is_scheduled:
        raise NotScheduled()
    if order.status == CANCELLED_STATUS:
        raise OrderCancelled()
    if order.is_rescheduled:
        raise AlreadyRescheduled()
    if order.slot_released_at is not None:
        raise OrderCancelled(ORDER_BEING_CANCELLED)
    if not order.can_reschedule:
        raise RescheduleNotPermitted()

    deadline = reschedule_deadline(order)
    if deadline is None:
        raise NotScheduled('This order has no scheduled time.')
    if now >= deadline:
        raise DeadlineExpired(deadline)
    return deadline


def can_reschedule(
    db: Session,
    establishment_id: str,
    order_id: str,
    *,
    now: datetime | None = None,
) -> RescheduleEligibility:
    now = now or datetime.now()
    order = OrderStore(db).get(order_id, establishment_id)
    try:
        deadline = check_eligibility(order, now)
    except SchedulingError as exc:
        return RescheduleEligibility(
            allowed=False,
            reason=exc.message,
            error=exc.code,
            deadline=getattr(exc, 'deadline', None),
        )
    return RescheduleEligibility(allowed=True, deadline=deadline)


def _successor_fields(order: ScheduledOrder, new_slot: SchedulingSlot) -> dict:
    scheduled_for = slot_moment(new_slot)
    fields = {name: getattr(order, name) for name in ScheduledOrder.CARRIED_FIELDS}
    fields.update(
        id=generate_order_id(),
        status=PENDING_STATUS,
        is_scheduled=True,
        scheduled_for=scheduled_for,
        scheduling_slot_id=new_slot.id,
        rescheduled_from_order_id=order.id,
        can_reschedule=True,
        reschedule_limit=default_reschedule_limit(scheduled_for),
        is_rescheduled=False,
        reschedule_count=0,
    )
    return fields


class _Plan:
    """Everything a reschedule needs, read and validated before any write."""

    def __init__(self, order: ScheduledOrder, current_slot_id: int, new_slot: SchedulingSlot):
        self.order_id = order.id
        self.previous_status = order.status
        self.current_slot_id = current_slot_id
        self.new_slot_id = new_slot.id
        self.successor_fields = _successor_fields(order, new_slot)

    def context(self, **extra) -> dict:
        return {
            'order_id': self.order_id,
            'current_slot_id': self.current_slot_id,
            'new_slot_id': self.new_slot_id,
            **extra,
        }


def _plan_reschedule(
    slots: SlotStore,
    orders: OrderStore,
    establishment_id: str,
    request: RescheduleRequest,
    now: datetime,
) -> _Plan:
    order = orders.get(request.order_id, establishment_id)
    check_eligibility(order, now)

    if order.scheduling_slot_id != request.current_slot_id:
        raise SlotMismatch(
            f'Order {order.id} is not booked in slot {request.current_slot_id}.',
            order_id=order.id,
            current_slot_id=request.current_slot_id,
        )
    if request.new_slot_id == request.current_slot_id:
        raise SlotUnavailable('The order is already booked in this slot.', slot_id=request.new_slot_id)

    new_slot = slots.get(request.new_slot_id, establishment_id)
    if new_slot is None:
        raise SlotNotFound(f'Slot {request.new_slot_id} not found.', slot_id=request.new_slot_id)
    if request.new_slot_date is not None and request.new_slot_date != new_slot.slot_date:
        raise SlotMismatch('The requested date does not match the selected slot.', slot_id=new_slot.id)
    if request.new_slot_time is not None and request.new_slot_time != new_slot.slot_time:
        raise SlotMismatch('The requested time does not match the selected slot.', slot_id=new_slot.id)
    if slot_moment(new_slot) <= now:
        raise SlotUnavailable('The selected slot is in the past.', slot_id=new_slot.id)

    return _Plan(order, request.current_slot_id, new_slot)


class _RescheduleSaga:
    def __init__(self, slots: SlotStore, orders: OrderStore, plan: _Plan, now: datetime):
        self.slots = slots
        self.orders = orders
        self.plan = plan
        self.now = now
        self.step = 'start'
        self._compensations: list[tuple[str, Callable[[], object]]] = []

    def run(self) -> ScheduledOrder:
        plan = self.plan

        self.step = 'release_current_slot'
        try:
            released = release_order_slot(self.orders.db, plan.order_id, self.now, feed=self.orders.feed)
        except SQLAlchemyError as exc:
            self._fail(UpdateFailed('Could not release the current slot.', **plan.context()), exc)
        if not released:
            self._fail(OrderCancelled(ORDER_BEING_CANCELLED, **plan.context()))
        self._compensations.append(('restore current slot', self._reopen_current_seat))

        self.step = 'reserve_new_slot'
        try:
            reserved = self.slots.try_reserve(plan.new_slot_id)
        except SQLAlchemyError as exc:
            self._fail(ReservationFailed(**plan.context()), exc)
        if reserved is None:
            self._fail(slot_unavailable(self.slots.get(plan.new_slot_id), plan.new_slot_id))
        self._compensations.append(('release new slot', lambda: self.slots.release(plan.new_slot_id)))

        self.step = 'mark_original_order'
        try:
            marked = self.orders.mark_rescheduled(plan.order_id, self.now)
        except SQLAlchemyError as exc:
            self._fail(UpdateFailed(**plan.context()), exc)
        if marked is None:
            self._fail(UpdateFailed('The order changed while it was being rescheduled.', **plan.context()))
        self._compensations.append(
            ('revert original order', lambda: self.orders.revert_rescheduled(plan.order_id, plan.previous_status))
        )

        self.step = 'create_successor'
        try:
            return self.orders.create(**plan.successor_fields)
        except SQLAlchemyError as exc:
            self._fail(OrderCreationFailed(**plan.context()), exc)

    def _fail(self, error: SchedulingError, cause: Exception | None = None):
        logger.error(
            'Reschedule of order %s failed at %s: %s',
            self.plan.order_id,
            self.step,
            cause or error.message,
            extra={'failed_step': self.step, **self.plan.context()},
        )
        failed = self._compensate()
        if failed:
            context = self.plan.context(failed_step=self.step, failed_compensations=failed, original_error=error.code)
            logger.critical(
                'Compensation failed for order %s after %s; slot counters need manual reconciliation: %s',
                self.plan.order_id,
                self.step,
                failed,
                extra=context,
            )
            raise CompensationFailed(**context) from cause
        raise error from cause

    def _reopen_current_seat(self):
        reopened = reopen_order_slot(self.orders.db, self.plan.order_id, self.now, feed=self.orders.feed)
        if reopened is not None:
            return reopened

        order = self.orders.get(self.plan.order_id)
        if order is not None and order.status == CANCELLED_STATUS and not order.is_rescheduled:
            logger.info('Order %s was cancelled during the reschedule; its seat stays released', self.plan.order_id)
            return order
        return None

    def _compensate(self) -> list[str]:
        failed = []
        while self._compensations:
            description, action = self._compensations.pop()
            logger.warning('Compensating: %s for order %s', description, self.plan.order_id)
            if not self._attempt(description, action):
                failed.append(description)
        return failed

    def _attempt(self, description: str, action) -> bool:
        for attempt in range(1, COMPENSATION_ATTEMPTS + 1):
            try:
                if action() is not None:
                    return True
                logger.error('Compensation "%s" was refused (attempt %d)', description, attempt)
            except (SQLAlchemyError, SchedulingError):
                logger.exception('Compensation "%s" raised (attempt %d)', description, attempt)
        return False


_TRANSACTION_ERRORS = {
    'release_current_slot': UpdateFailed,
    'reserve_new_slot': ReservationFailed,
    'mark_original_order': UpdateFailed,
    'create_successor': OrderCreationFailed,
    'commit': UpdateFailed,
}


def _reschedule_in_transaction(
    db: Session,
    feed: ChangeFeed,
    slots: SlotStore,
    orders: OrderStore,
    plan: _Plan,
    now: datetime,
) -> ScheduledOrder:
    step = 'release_current_slot'
    try:
        with atomic(db, feed):
            if not release_order_slot(db, plan.order_id, now, feed=feed):
                raise OrderCancelled(ORDER_BEING_CANCELLED, **plan.context())

            step = 'reserve_new_slot'
            if slots.try_reserve(plan.new_slot_id) is None:
                raise slot_unavailable(slots.get(plan.new_slot_id), plan.new_slot_id)

            step = 'mark_original_order'
            if orders.mark_rescheduled(plan.order_id, now) is None:
                raise UpdateFailed('The order changed while it was being rescheduled.', **plan.context())

            step = 'create_successor'
            successor = orders.create(**plan.successor_fields)
            step = 'commit'
    except SQLAlchemyError as exc:
        logger.error(
            'Reschedule of order %s rolled back at %s: %s',
            plan.order_id,
            step,
            exc,
            extra={'failed_step': step, **plan.context()},
        )
        raise _TRANSACTION_ERRORS[step](**plan.context()) from exc

    return successor


def _notify(notifier, event_type: str, payload: dict) -> None:
    try:
        notifier(event_type, payload)
    except Exception:
        logger.exception('Notification %s for order %s failed', event_type, payload.get('order_id'))


def reschedule_order(
    db: Session,
    establishment_id: str,
    request: RescheduleRequest,
    *,
    now: datetime | None = None,
    strategy: str | None = None,
    feed: ChangeFeed | None = None,
    notifier=notify_customer,
) -> RescheduleResult:
    now = now or datetime.now()
    strategy = strategy or config.RESCHEDULE_STRATEGY
    feed = feed or change_feed
    slots = SlotStore(db, feed)
    orders = OrderStore(db, feed)

    logger.info(
        'Rescheduling order %s from slot %s to slot %s (%s)',
        request.order_id,
        request.current_slot_id,
        request.new_slot_id,
        strategy,
    )

    try:
        plan = _plan_reschedule(slots, orders, establishment_id, request, now)
        if strategy == 'saga':
            successor = _RescheduleSaga(slots, orders, plan, now).run()
        else:
            successor = _reschedule_in_transaction(db, feed, slots, orders, plan, now)
    except SchedulingError as exc:
        return RescheduleResult(success=False, message=exc.message, error=exc.code, detail=exc.to_detail())

    scheduled_for = successor.scheduled_for
    logger.info('Order %s rescheduled as %s for %s', request.order_id, successor.id, scheduled_for)
    _notify(
        notifier,
        ORDER_RESCHEDULED,
        {
            'order_id': successor.id,
            'previous_order_id': request.order_id,
            'establishment_id': establishment_id,
            'customer_email': successor.customer_email,
            'customer_phone': successor.customer_phone,
            'scheduled_for': scheduled_for.isoformat(),
        },
    )
    return RescheduleResult(
        success=True,
        new_order_id=successor.id,
        message=f'Order rescheduled to {scheduled_for:%H:%M} on {scheduled_for:%Y-%m-%d}.',
    )


def cancel_scheduled_order(
    db: Session,
    establishment_id: str,
    order_id: str,
    reason: str | None = None,
    *,
    now: datetime | None = None,
    feed: ChangeFeed | None = None,
    notifier=notify_customer,
) -> CancellationResult:
    """Release the order's seat, then mark the order cancelled.

    The two writes are sequential. If the second one fails the seat is
    already free and the marker on the order makes a retry safe.
    """
    now = now or datetime.now()
    feed = feed or change_feed
    orders = OrderStore(db, feed)

    try:
        order = orders.get(order_id, establishment_id)
        if order is None:
            raise OrderNotFound()
        if not order.is_scheduled:
            raise NotScheduled()
        already_cancelled = order.status == CANCELLED_STATUS
        customer_email, customer_phone = order.customer_email, order.customer_phone

        try:
            released = release_order_slot(db, order_id, now, feed=feed)
        except SQLAlchemyError as exc:
            logger.error('Could not release the slot of order %s: %s', order_id, exc)
            raise UpdateFailed('Could not release the booked slot.', order_id=order_id) from exc

        if already_cancelled:
            return CancellationResult(success=True, message='Order was already cancelled.', slot_released=released)

        try:
            cancelled = orders.mark_cancelled(order_id, reason or DEFAULT_CANCEL_REASON)
        except SQLAlchemyError as exc:
            logger.error('Slot of order %s released but the order could not be marked cancelled: %s', order_id, exc)
            raise UpdateFailed(
                'The slot was released but the order could not be cancelled. Please retry.',
                order_id=order_id,
            ) from exc

        if cancelled is None:
            # Lost a race with a reschedule or another cancellation.
            current = orders.get(order_id)
            if current is not None and current.is_rescheduled:
                raise AlreadyRescheduled('This order was rescheduled; cancel the new order instead.', order_id=order_id)
            return CancellationResult(success=True, message='Order was already cancelled.', slot_released=released)
    except SchedulingError as exc:
        return CancellationResult(success=False, message=exc.message, error=exc.code)

    logger.info('Order %s cancelled (slot released: %s)', order_id, released)
    _notify(
        notifier,
        ORDER_CANCELLED,
        {
            'order_id': order_id,
            'establishment_id': establishment_id,
            'customer_email': customer_email,
            'customer_phone': customer_phone,
            'reason': reason or DEFAULT_CANCEL_REASON,
        },
    )
    return CancellationResult(success=True, message='Order cancelled.', slot_released=released)
