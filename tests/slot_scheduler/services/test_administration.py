import logging
from datetime import date, time

import pytest

from slot_scheduler.core.errors import InvalidSlot, SlotAlreadyExists, SlotInUse, SlotNotFound
from slot_scheduler.services import administration
from slot_scheduler.services.slot_store import SlotStore

SLOT_DATE = date(2030, 1, 10)


def test_create_slot(db, feed) -> None:
    slot = administration.create_slot(db, 'est-1', SLOT_DATE, time(11, 0), 5, feed=feed)

    assert slot.id is not None
    assert (slot.capacity, slot.occupied, slot.is_blocked) == (5, 0, False)


@pytest.mark.parametrize('capacity', [0, -3])
def test_create_slot_rejects_non_positive_capacity(db, feed, capacity: int) -> None:
    with pytest.raises(InvalidSlot):
        administration.create_slot(db, 'est-1', SLOT_DATE, time(11, 0), capacity, feed=feed)


def test_create_slot_rejects_duplicate_moment(db, feed) -> None:
    administration.create_slot(db, 'est-1', SLOT_DATE, time(11, 0), 5, feed=feed)

    with pytest.raises(SlotAlreadyExists) as exception_info:
        administration.create_slot(db, 'est-1', SLOT_DATE, time(11, 0), 3, feed=feed)

    assert exception_info.value.message == 'A slot already exists at 11:00 on 2030-01-10.'
    assert len(administration.list_all_slots(db, 'est-1')) == 1


def test_same_moment_is_allowed_for_another_establishment(db, feed) -> None:
    administration.create_slot(db, 'est-1', SLOT_DATE, time(11, 0), 5, feed=feed)
    administration.create_slot(db, 'est-2', SLOT_DATE, time(11, 0), 5, feed=feed)

    assert len(administration.list_all_slots(db, 'est-2')) == 1


def test_update_slot_merges_fields(db, feed, make_slot) -> None:
    slot = make_slot(capacity=5, occupied=2)

    updated = administration.update_slot(db, 'est-1', slot.id, {'capacity': 8, 'slot_time': time(12, 30)}, feed=feed)

    assert updated.capacity == 8
    assert updated.slot_time == time(12, 30)
    assert updated.occupied == 2


def test_update_slot_rejects_capacity_below_occupancy(db, feed, make_slot) -> None:
    slot = make_slot(capacity=5, occupied=4)

    with pytest.raises(InvalidSlot):
        administration.update_slot(db, 'est-1', slot.id, {'capacity': 3}, feed=feed)

    assert SlotStore(db).get(slot.id).capacity == 5


def test_update_slot_into_existing_moment_is_rejected(db, feed, make_slot) -> None:
    make_slot(time(11, 0))
    other = make_slot(time(12, 0))

    with pytest.raises(InvalidSlot):
        administration.update_slot(db, 'est-1', other.id, {'slot_time': time(11, 0)}, feed=feed)


def test_operations_are_scoped_to_establishment(db, feed, make_slot) -> None:
    slot = make_slot(establishment_id='est-2')

    with pytest.raises(SlotNotFound):
        administration.toggle_block(db, 'est-1', slot.id, True, feed=feed)
    with pytest.raises(SlotNotFound):
        administration.delete_slot(db, 'est-1', slot.id, feed=feed)


def test_delete_slot_in_use(db, feed, make_slot) -> None:
    slot = make_slot(capacity=5, occupied=2)

    with pytest.raises(SlotInUse) as exception_info:
        administration.delete_slot(db, 'est-1', slot.id, feed=feed)

    assert exception_info.value.context['occupied'] == 2


def test_delete_empty_slot(db, feed, make_slot) -> None:
    slot = make_slot()

    administration.delete_slot(db, 'est-1', slot.id, feed=feed)

    assert administration.list_all_slots(db, 'est-1') == []


def test_toggle_block_keeps_occupancy(db, feed, make_slot) -> None:
    slot = make_slot(capacity=5, occupied=3)

    blocked = administration.toggle_block(db, 'est-1', slot.id, True, feed=feed)
    assert blocked.is_blocked is True
    assert blocked.occupied == 3

    unblocked = administration.toggle_block(db, 'est-1', slot.id, False, feed=feed)
    assert unblocked.is_blocked is False
    assert unblocked.occupied == 3


def test_reset_counter_zeroes_occupancy_and_warns(db, feed, make_slot, caplog) -> None:
    slot = make_slot(capacity=5, occupied=4)

    with caplog.at_level(logging.WARNING, logger='slot_scheduler.services.administration'):
        reset = administration.reset_counter(db, 'est-1', slot.id, feed=feed)

    assert reset.occupied == 0
    assert 'from 4 to 0' in caplog.text
