"""
Persistence for scheduling slots.

Occupancy counters are only ever changed with single conditional UPDATE
statements; an affected-row count of zero is the signal that the guard
(capacity, blocked flag, zero floor) refused the change. Nothing here
enforces cross-slot invariants; that is the booking engine's job.
"""

from datetime import date, time

from sqlalchemy import delete, select

from slot_scheduler.core.errors import SlotInUse, SlotNotFound
from slot_scheduler.models.slot import SchedulingSlot
from slot_scheduler.services.change_feed import DELETE, INSERT
from slot_scheduler.services.repository import Repository

UPDATABLE_FIELDS = {'slot_date', 'slot_time', 'capacity', 'is_blocked'}


class SlotStore(Repository):
    model = SchedulingSlot
    table = 'scheduling_slots'

    def require(self, slot_id: int, establishment_id: str | None = None) -> SchedulingSlot:
        slot = self.get(slot_id, establishment_id)
        if slot is None:
            raise SlotNotFound(f'Slot {slot_id} not found.', slot_id=slot_id)
        return slot

    def list_for_date(self, establishment_id: str, slot_date: date) -> list[SchedulingSlot]:
        return list(
            self.db.execute(
                select(SchedulingSlot)
                .where(
                    SchedulingSlot.establishment_id == establishment_id,
                    SchedulingSlot.slot_date == slot_date,
                )
                .order_by(SchedulingSlot.slot_time.asc())
            ).scalars()
        )

    def list_for_establishment(self, establishment_id: str) -> list[SchedulingSlot]:
        return list(
            self.db.execute(
                select(SchedulingSlot)
                .where(SchedulingSlot.establishment_id == establishment_id)
                .order_by(SchedulingSlot.slot_date.asc(), SchedulingSlot.slot_time.asc())
            ).scalars()
        )

    def create(self, establishment_id: str, slot_date: date, slot_time: time, capacity: int) -> SchedulingSlot:
        def operation():
            slot = SchedulingSlot(
                establishment_id=establishment_id,
                slot_date=slot_date,
                slot_time=slot_time,
                capacity=capacity,
                occupied=0,
                is_blocked=False,
            )
            self.db.add(slot)
            self.db.flush()
            return slot, [self._event(INSERT, new=slot.to_dict())]

        return self._write(operation)

    def update(self, slot_id: int, **fields) -> SchedulingSlot | None:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f'Cannot update slot fields: {sorted(unknown)}')
        return self._guarded_update(slot_id, (), fields)

    def delete(self, slot_id: int) -> None:
        def operation():
            slot = self.require(slot_id)
            snapshot = slot.to_dict()
            result = self.db.execute(
                delete(SchedulingSlot)
                .where(SchedulingSlot.id == slot_id, SchedulingSlot.occupied == 0)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise SlotInUse(
                    f'Slot {slot_id} still holds {slot.occupied} booking(s).',
                    slot_id=slot_id,
                    occupied=slot.occupied,
                )
            self.db.expunge(slot)
            return None, [self._event(DELETE, old=snapshot)]

        try:
            return self._write(operation)
        except (SlotInUse, SlotNotFound):
            if not self.deferred:
                self.db.rollback()
            raise

    # Occupancy counters

    def try_reserve(self, slot_id: int) -> SchedulingSlot | None:
        """Take one seat if the slot is open and below capacity."""
        return self._shift_occupied(
            slot_id,
            +1,
            SchedulingSlot.occupied < SchedulingSlot.capacity,
            SchedulingSlot.is_blocked.is_(False),
        )

    def restore(self, slot_id: int) -> SchedulingSlot | None:
        """Give a seat back to a booking whose release is being undone.

        The blocked flag does not apply to a booking that already existed,
        but capacity still does.
        """
        return self._shift_occupied(slot_id, +1, SchedulingSlot.occupied < SchedulingSlot.capacity)

    def release(self, slot_id: int) -> SchedulingSlot | None:
        """Free one seat, never going below zero."""
        return self._shift_occupied(slot_id, -1, SchedulingSlot.occupied > 0)

    def set_blocked(self, slot_id: int, blocked: bool) -> SchedulingSlot | None:
        return self._guarded_update(slot_id, (), {'is_blocked': blocked})

    def reset_occupied(self, slot_id: int) -> SchedulingSlot | None:
        return self._guarded_update(slot_id, (), {'occupied': 0})

    def _shift_occupied(self, slot_id: int, delta: int, *conditions) -> SchedulingSlot | None:
        return self._guarded_update(
            slot_id,
            conditions,
            {'occupied': SchedulingSlot.occupied + delta},
            old_from_new=lambda new: dict(new, occupied=new['occupied'] - delta),
        )
