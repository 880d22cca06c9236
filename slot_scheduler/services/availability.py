"""
Live slot availability for one establishment and date.

The derived status is recomputed from the raw row on every change-feed event
so readers never reload the whole day. If the initial load fails the reader
fails closed: it reports the error and shows no slots at all.
"""

import logging
from datetime import date, time
from threading import RLock
from typing import Callable

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from slot_scheduler.core import config
from slot_scheduler.database import SessionLocal
from slot_scheduler.services.change_feed import DELETE, ChangeEvent, ChangeFeed, Subscription, change_feed
from slot_scheduler.services.slot_store import SlotStore

logger = logging.getLogger(__name__)

AVAILABLE = 'available'
ALMOST_FULL = 'almost_full'
FULL = 'full'
BLOCKED = 'blocked'

LOAD_ERROR_MESSAGE = 'Could not load available times.'


def derive_status(capacity: int, occupied: int, is_blocked: bool) -> str:
    if is_blocked:
        return BLOCKED
    if occupied >= capacity:
        return FULL
    remaining = capacity - occupied
    if remaining <= config.ALMOST_FULL_REMAINING or occupied >= capacity * config.ALMOST_FULL_RATIO:
        return ALMOST_FULL
    return AVAILABLE


class SlotAvailability(BaseModel):
    id: int
    establishment_id: str
    slot_date: date
    slot_time: time
    capacity: int
    occupied: int
    available_spots: int
    is_blocked: bool
    availability_status: str

    @classmethod
    def from_record(cls, record: dict) -> 'SlotAvailability':
        return cls(
            id=record['id'],
            establishment_id=record['establishment_id'],
            slot_date=record['slot_date'],
            slot_time=record['slot_time'],
            capacity=record['capacity'],
            occupied=record['occupied'],
            available_spots=max(record['capacity'] - record['occupied'], 0),
            is_blocked=record['is_blocked'],
            availability_status=derive_status(record['capacity'], record['occupied'], record['is_blocked']),
        )


def list_slots(db: Session, establishment_id: str, slot_date: date | None) -> list[SlotAvailability]:
    if slot_date is None:
        return []
    return [
        SlotAvailability.from_record(slot.to_dict())
        for slot in SlotStore(db).list_for_date(establishment_id, slot_date)
    ]


class AvailabilityReader:
    """In-memory, change-feed-driven view of one establishment's slots on one date."""

    def __init__(
        self,
        establishment_id: str,
        slot_date: date | None,
        *,
        session_factory=SessionLocal,
        feed: ChangeFeed | None = None,
        on_slot_full: Callable[[SlotAvailability], None] | None = None,
        on_change: Callable[['AvailabilityReader'], None] | None = None,
    ):
        self.establishment_id = establishment_id
        self.slot_date = slot_date
        self.error: str | None = None
        self._session_factory = session_factory
        self._feed = feed or change_feed
        self._on_slot_full = on_slot_full
        self._on_change = on_change
        self._lock = RLock()
        self._slots: dict[int, SlotAvailability] = {}
        self._subscription: Subscription | None = None

    def __enter__(self) -> 'AvailabilityReader':
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def slots(self) -> list[SlotAvailability]:
        with self._lock:
            return sorted(self._slots.values(), key=lambda slot: slot.slot_time)

    @property
    def is_empty(self) -> bool:
        return not self.slots

    def open(self) -> list[SlotAvailability]:
        if self.slot_date is None:
            return []
        if self._subscription is not None:
            return self.slots

        self._subscription = self._feed.subscribe(
            'scheduling_slots',
            self.apply,
            establishment_id=self.establishment_id,
            slot_date=self.slot_date,
        )

        with self._lock:
            db = self._session_factory()
            try:
                loaded = list_slots(db, self.establishment_id, self.slot_date)
            except SQLAlchemyError:
                logger.exception(
                    'Failed to load slots for establishment=%s date=%s',
                    self.establishment_id,
                    self.slot_date,
                )
                self.error = LOAD_ERROR_MESSAGE
                self._slots = {}
                self.close()
                return []
            finally:
                db.close()

            self.error = None
            self._slots = {slot.id: slot for slot in loaded}
            logger.info('Loaded %d slot(s) for establishment=%s date=%s', len(loaded), self.establishment_id, self.slot_date)

        return self.slots

    def close(self) -> None:
        if self._subscription is not None:
            self._feed.unsubscribe(self._subscription)
            self._subscription = None

    def apply(self, event: ChangeEvent) -> None:
        with self._lock:
            if self.error is not None:
                return

            if event.event_type == DELETE:
                self._slots.pop(event.old['id'], None)
            elif self._in_scope(event.new):
                updated = SlotAvailability.from_record(event.new)
                self._slots[updated.id] = updated
                self._signal_transitions(event.old, updated)
            else:
                # Moved to another date or establishment.
                self._slots.pop(event.new['id'], None)

        if self._on_change is not None:
            self._on_change(self)

    def _in_scope(self, record: dict) -> bool:
        return record['establishment_id'] == self.establishment_id and record['slot_date'] == self.slot_date

    def _signal_transitions(self, old: dict | None, updated: SlotAvailability) -> None:
        if old is None:
            return
        if old['occupied'] < updated.capacity <= updated.occupied:
            logger.info('Slot %s at %s became full (%d/%d)', updated.id, updated.slot_time, updated.occupied, updated.capacity)
            if self._on_slot_full is not None:
                self._on_slot_full(updated)
        elif old['occupied'] > updated.occupied:
            logger.info('Slot %s at %s released (%d/%d)', updated.id, updated.slot_time, updated.occupied, updated.capacity)
