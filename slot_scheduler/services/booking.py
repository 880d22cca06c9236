"""
Seat accounting shared by booking, rescheduling, cancellation and the
cancellation sync.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from slot_scheduler.core import config
from slot_scheduler.core.errors import OrderCreationFailed, SlotNotFound, SlotUnavailable
from slot_scheduler.database import atomic
from slot_scheduler.models.order import PENDING_STATUS, ScheduledOrder
from slot_scheduler.models.slot import SchedulingSlot
from slot_scheduler.services.change_feed import ChangeFeed, change_feed
from slot_scheduler.services.order_store import OrderStore
from slot_scheduler.services.slot_store import SlotStore

logger = logging.getLogger(__name__)


def slot_moment(slot: SchedulingSlot) -> datetime:
    return datetime.combine(slot.slot_date, slot.slot_time)


def default_reschedule_limit(scheduled_for: datetime) -> datetime:
    return scheduled_for - timedelta(hours=config.RESCHEDULE_WINDOW_HOURS)


def slot_unavailable(slot: SchedulingSlot | None, slot_id: int) -> SlotUnavailable | SlotNotFound:
    """Explain why a conditional reservation against ``slot`` was refused."""
    if slot is None:
        return SlotNotFound(f'Slot {slot_id} not found.', slot_id=slot_id)

    label = f'{slot.slot_time:%H:%M} on {slot.slot_date:%Y-%m-%d}'
    if slot.is_blocked:
        reason, message = 'blocked', f'The {label} slot is blocked.'
    else:
        reason, message = 'full', f'The {label} slot is full ({slot.occupied}/{slot.capacity}).'

    return SlotUnavailable(
        message,
        slot_id=slot.id,
        slot_date=slot.slot_date,
        slot_time=slot.slot_time,
        occupied=slot.occupied,
        capacity=slot.capacity,
        reason=reason,
    )


def book_scheduled_order(
    db: Session,
    establishment_id: str,
    slot_id: int,
    order_fields: dict,
    *,
    now: datetime | None = None,
    feed: ChangeFeed | None = None,
) -> ScheduledOrder:
    """Create a scheduled order holding one seat in ``slot_id``.

    The seat and the order row are written in one transaction.
    """
    now = now or datetime.now()
    feed = feed or change_feed
    slots = SlotStore(db, feed)
    orders = OrderStore(db, feed)

    slot = slots.get(slot_id, establishment_id)
    if slot is None:
        raise SlotNotFound(f'Slot {slot_id} not found.', slot_id=slot_id)

    scheduled_for = slot_moment(slot)
    if scheduled_for <= now:
        raise SlotUnavailable('The selected slot is in the past.', slot_id=slot_id)

    step = 'reserve'
    try:
        with atomic(db, feed):
            if slots.try_reserve(slot_id) is None:
                raise slot_unavailable(slots.get(slot_id), slot_id)

            step = 'create_order'
            order = orders.create(
                **order_fields,
                establishment_id=establishment_id,
                status=PENDING_STATUS,
                is_scheduled=True,
                scheduled_for=scheduled_for,
                scheduling_slot_id=slot_id,
                can_reschedule=True,
                reschedule_limit=default_reschedule_limit(scheduled_for),
            )
    except SQLAlchemyError as exc:
        logger.error('Booking slot %s failed at %s: %s', slot_id, step, exc)
        raise OrderCreationFailed('Could not place the scheduled order.', slot_id=slot_id) from exc

    logger.info('Order %s booked into slot %s (%s)', order.id, slot_id, scheduled_for)
    return order


def release_order_slot(
    db: Session,
    order_id: str,
    released_at: datetime,
    *,
    feed: ChangeFeed | None = None,
) -> bool:
    """Give back the seat held by ``order_id`` at most once.

    The released marker on the order is compare-and-set in the same
    transaction as the decrement, so concurrent or repeated callers release
    a single seat between them. Returns whether this call did the release.
    """
    feed = feed or change_feed
    orders = OrderStore(db, feed)
    slots = SlotStore(db, feed)

    with atomic(db, feed):
        claimed = orders.claim_slot_release(order_id, released_at)
        if claimed is None:
            return False
        slot_id = claimed.scheduling_slot_id
        if slots.release(slot_id) is None:
            logger.warning('Order %s released slot %s but it had no occupancy left', order_id, slot_id)

    logger.info('Order %s released its seat in slot %s', order_id, slot_id)
    return True


def reopen_order_slot(
    db: Session,
    order_id: str,
    released_at: datetime,
    *,
    feed: ChangeFeed | None = None,
) -> ScheduledOrder | None:
    """Undo ``release_order_slot``: take the seat back and clear the marker together.

    Returns None when the marker is no longer the one claimed at
    ``released_at`` or the order has been cancelled since; raises
    ``SlotUnavailable`` (rolling the marker back) when the seat cannot be
    taken back.
    """
    feed = feed or change_feed
    orders = OrderStore(db, feed)
    slots = SlotStore(db, feed)

    with atomic(db, feed):
        reopened = orders.reopen_slot_release(order_id, released_at)
        if reopened is None:
            return None
        slot_id = reopened.scheduling_slot_id
        if slots.restore(slot_id) is None:
            raise SlotUnavailable(f'Slot {slot_id} has no free seat to give back.', slot_id=slot_id)

    logger.info('Order %s took its seat in slot %s back', order_id, slot_id)
    return reopened
