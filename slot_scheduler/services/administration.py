"""Staff-facing slot administration: CRUD, blocking and counter resets."""

import logging
from datetime import date, time

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from slot_scheduler.core.errors import InvalidSlot, SlotAlreadyExists
from slot_scheduler.models.slot import SchedulingSlot
from slot_scheduler.services.change_feed import ChangeFeed
from slot_scheduler.services.slot_store import SlotStore

logger = logging.getLogger(__name__)


def _validate_capacity(capacity: int) -> None:
    if capacity is None or capacity <= 0:
        raise InvalidSlot('Capacity must be a positive number of orders.', capacity=capacity)


def list_all_slots(db: Session, establishment_id: str) -> list[SchedulingSlot]:
    return SlotStore(db).list_for_establishment(establishment_id)


def create_slot(
    db: Session,
    establishment_id: str,
    slot_date: date,
    slot_time: time,
    capacity: int,
    *,
    feed: ChangeFeed | None = None,
) -> SchedulingSlot:
    _validate_capacity(capacity)

    try:
        slot = SlotStore(db, feed).create(establishment_id, slot_date, slot_time, capacity)
    except IntegrityError as exc:
        raise SlotAlreadyExists(
            f'A slot already exists at {slot_time:%H:%M} on {slot_date:%Y-%m-%d}.',
            slot_date=slot_date,
            slot_time=slot_time,
        ) from exc

    logger.info('Created slot %s for establishment=%s at %s %s (capacity %d)', slot.id, establishment_id, slot_date, slot_time, capacity)
    return slot


def update_slot(
    db: Session,
    establishment_id: str,
    slot_id: int,
    fields: dict,
    *,
    feed: ChangeFeed | None = None,
) -> SchedulingSlot:
    store = SlotStore(db, feed)
    slot = store.require(slot_id, establishment_id)

    changes = {key: value for key, value in fields.items() if value is not None}
    if not changes:
        return slot

    if 'capacity' in changes:
        _validate_capacity(changes['capacity'])
        if changes['capacity'] < slot.occupied:
            raise InvalidSlot(
                f'Capacity cannot be lower than the {slot.occupied} order(s) already booked.',
                slot_id=slot_id,
                occupied=slot.occupied,
            )

    try:
        updated = store.update(slot_id, **changes)
    except IntegrityError as exc:
        raise InvalidSlot(
            'Update conflicts with another slot or with current bookings.',
            slot_id=slot_id,
        ) from exc

    if updated is None:
        store.require(slot_id, establishment_id)
        return slot

    logger.info('Updated slot %s: %s', slot_id, sorted(changes))
    return updated


def delete_slot(db: Session, establishment_id: str, slot_id: int, *, feed: ChangeFeed | None = None) -> None:
    store = SlotStore(db, feed)
    store.require(slot_id, establishment_id)
    store.delete(slot_id)
    logger.info('Deleted slot %s for establishment=%s', slot_id, establishment_id)


def toggle_block(
    db: Session,
    establishment_id: str,
    slot_id: int,
    blocked: bool,
    *,
    feed: ChangeFeed | None = None,
) -> SchedulingSlot:
    store = SlotStore(db, feed)
    store.require(slot_id, establishment_id)
    slot = store.set_blocked(slot_id, blocked) or store.require(slot_id, establishment_id)
    logger.info('%s slot %s', 'Blocked' if blocked else 'Unblocked', slot_id)
    return slot


def reset_counter(db: Session, establishment_id: str, slot_id: int, *, feed: ChangeFeed | None = None) -> SchedulingSlot:
    """Force a slot's occupancy back to zero.

    Manual reconciliation only: the orders that still reference the slot
    keep their bookings, so running this against live bookings lets the
    slot be oversold.
    """
    store = SlotStore(db, feed)
    before = store.require(slot_id, establishment_id)
    previous = before.occupied
    slot = store.reset_occupied(slot_id) or store.require(slot_id, establishment_id)
    logger.warning('Reset occupancy of slot %s from %d to 0 (establishment=%s)', slot_id, previous, establishment_id)
    return slot
