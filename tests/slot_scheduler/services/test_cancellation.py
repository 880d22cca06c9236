from datetime import date, datetime, time

from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from slot_scheduler.models.order import ScheduledOrder

from slot_scheduler.services.cancellation_sync import CancellationSync, needs_release
from slot_scheduler.services.change_feed import UPDATE, ChangeEvent, encode_event
from slot_scheduler.services.order_store import OrderStore
from slot_scheduler.services.rescheduling import RescheduleRequest, cancel_scheduled_order, reschedule_order
from slot_scheduler.services.slot_store import SlotStore

NOW = datetime(2030, 1, 1, 12, 0)


def _cancel(db, feed, order_id, reason=None, notifier=None):
    return cancel_scheduled_order(
        db,
        'est-1',
        order_id,
        reason,
        now=NOW,
        feed=feed,
        notifier=notifier or (lambda event_type, payload: True),
    )


def _occupied(db, slot) -> int:
    return SlotStore(db).get(slot.id).occupied


def test_cancel_releases_one_seat(db, feed, make_slot, make_order) -> None:
    slot = make_slot(capacity=5, occupied=3)
    order = make_order(slot)
    notifications = []

    result = _cancel(db, feed, order.id, notifier=lambda event_type, payload: notifications.append((event_type, payload)))

    assert result.success is True
    assert result.slot_released is True
    assert _occupied(db, slot) == 2

    cancelled = OrderStore(db).get(order.id)
    assert cancelled.status == 'cancelled'
    assert cancelled.cancelled_reason == 'Cancelled by customer'
    assert cancelled.slot_released_at == NOW
    assert notifications == [
        (
            'order_cancelled',
            {
                'order_id': order.id,
                'establishment_id': 'est-1',
                'customer_email': 'ana@example.com',
                'customer_phone': '+5511999990000',
                'reason': 'Cancelled by customer',
            },
        )
    ]


def test_cancel_twice_releases_only_once(db, feed, make_slot, make_order) -> None:
    slot = make_slot(capacity=5, occupied=3)
    order = make_order(slot)

    _cancel(db, feed, order.id, 'Changed my mind')
    second = _cancel(db, feed, order.id)

    assert second.success is True
    assert second.slot_released is False
    assert second.message == 'Order was already cancelled.'
    assert _occupied(db, slot) == 2
    assert OrderStore(db).get(order.id).cancelled_reason == 'Changed my mind'


def test_cancel_of_last_seat_does_not_go_negative(db, feed, make_slot, make_order) -> None:
    slot = make_slot(capacity=5, occupied=0)
    order = make_order(slot)

    result = _cancel(db, feed, order.id)

    assert result.success is True
    assert _occupied(db, slot) == 0


def test_cancel_missing_order(db, feed) -> None:
    result = _cancel(db, feed, 'PED-MISSING')

    assert result.success is False
    assert result.error == 'OrderNotFound'


def test_cancel_unscheduled_order(db, feed, make_order) -> None:
    order = make_order(None, is_scheduled=False)

    result = _cancel(db, feed, order.id)

    assert result.success is False
    assert result.error == 'NotScheduled'


def test_cancel_after_reschedule_does_not_release_old_slot_again(db, feed, make_slot, make_order) -> None:
    current = make_slot(time(11, 0), capacity=5, occupied=3)
    target = make_slot(time(14, 0), capacity=5, occupied=0)
    order = make_order(current)
    request = RescheduleRequest(order_id=order.id, current_slot_id=current.id, new_slot_id=target.id)
    reschedule_order(db, 'est-1', request, now=NOW, feed=feed, notifier=lambda *args: True)

    result = _cancel(db, feed, order.id)

    assert result.success is True
    assert result.slot_released is False
    assert _occupied(db, current) == 2
    assert _occupied(db, target) == 1


def test_failed_cancellation_keeps_seat_released_and_retry_finishes(db, feed, make_slot, make_order, monkeypatch) -> None:
    slot = make_slot(capacity=5, occupied=3)
    order = make_order(slot)

    def unavailable_database(self, order_id, reason):
        raise OperationalError('UPDATE', {}, Exception('database is locked'))

    monkeypatch.setattr(OrderStore, 'mark_cancelled', unavailable_database)
    failed = _cancel(db, feed, order.id)
    monkeypatch.undo()

    assert failed.success is False
    assert failed.error == 'UpdateFailed'
    assert _occupied(db, slot) == 2
    assert OrderStore(db).get(order.id).status == 'confirmed'

    retried = _cancel(db, feed, order.id)

    assert retried.success is True
    assert retried.message == 'Order cancelled.'
    assert retried.slot_released is False
    assert _occupied(db, slot) == 2
    assert OrderStore(db).get(order.id).status == 'cancelled'


def test_cancel_losing_race_to_reschedule_reports_it(db, feed, make_slot, make_order, monkeypatch) -> None:
    slot = make_slot(capacity=5, occupied=3)
    order = make_order(slot)
    mark_cancelled = OrderStore.mark_cancelled

    def rescheduled_first(self, order_id, reason):
        self.db.execute(
            update(ScheduledOrder)
            .where(ScheduledOrder.id == order_id)
            .values(is_rescheduled=True, status='cancelled')
        )
        self.db.commit()
        return mark_cancelled(self, order_id, reason)

    monkeypatch.setattr(OrderStore, 'mark_cancelled', rescheduled_first)

    result = _cancel(db, feed, order.id)

    assert result.success is False
    assert result.error == 'AlreadyRescheduled'
    assert OrderStore(db).get(order.id).cancelled_reason is None


def test_mark_cancelled_refuses_cancelled_order(db, feed, make_slot, make_order) -> None:
    order = make_order(make_slot(), status='cancelled', cancelled_reason='Out of stock')

    assert OrderStore(db, feed).mark_cancelled(order.id, 'Changed my mind') is None
    assert OrderStore(db).get(order.id).cancelled_reason == 'Out of stock'


# Cancellation sync

def _cancelled_event(**changes) -> ChangeEvent:
    old = {'id': 'PED-0001', 'status': 'confirmed', 'is_scheduled': True, 'scheduling_slot_id': 1, 'slot_released_at': None}
    return ChangeEvent(table='orders', event_type=UPDATE, old=old, new={**old, 'status': 'cancelled', **changes})


def test_needs_release() -> None:
    assert needs_release(_cancelled_event()) is True
    assert needs_release(_cancelled_event(slot_released_at=NOW)) is False
    assert needs_release(_cancelled_event(scheduling_slot_id=None)) is False
    assert needs_release(_cancelled_event(is_scheduled=False)) is False
    assert needs_release(_cancelled_event(status='delivered')) is False


def test_needs_release_ignores_updates_of_cancelled_orders() -> None:
    event = _cancelled_event()
    already_cancelled = ChangeEvent(table='orders', event_type=UPDATE, old=event.new, new=dict(event.new, cancelled_reason='x'))

    assert needs_release(already_cancelled) is False


def test_sync_releases_seat_for_external_cancellation(db, feed, session_factory, make_slot, make_order) -> None:
    slot = make_slot(capacity=5, occupied=3)
    order = make_order(slot)

    with CancellationSync('est-1', session_factory=session_factory, feed=feed, clock=lambda: NOW):
        OrderStore(db, feed).mark_cancelled(order.id, 'Payment failed')

    assert _occupied(db, slot) == 2
    assert OrderStore(db).get(order.id).slot_released_at == NOW


def test_sync_does_not_double_release_direct_cancellation(db, feed, session_factory, make_slot, make_order) -> None:
    slot = make_slot(capacity=5, occupied=3)
    order = make_order(slot)

    with CancellationSync(session_factory=session_factory, feed=feed, clock=lambda: NOW):
        result = _cancel(db, feed, order.id)

    assert result.slot_released is True
    assert _occupied(db, slot) == 2


def test_sync_ignores_other_establishments(db, feed, session_factory, make_slot, make_order) -> None:
    slot = make_slot(capacity=5, occupied=3)
    order = make_order(slot)

    with CancellationSync('est-2', session_factory=session_factory, feed=feed, clock=lambda: NOW):
        OrderStore(db, feed).mark_cancelled(order.id, 'Payment failed')

    assert _occupied(db, slot) == 3


def test_stopped_sync_does_nothing(db, feed, session_factory, make_slot, make_order) -> None:
    slot = make_slot(capacity=5, occupied=3)
    order = make_order(slot)
    sync = CancellationSync('est-1', session_factory=session_factory, feed=feed, clock=lambda: NOW)
    sync.start()
    sync.stop()

    OrderStore(db, feed).mark_cancelled(order.id, 'Payment failed')

    assert _occupied(db, slot) == 3
    assert feed.subscriber_count == 0


def _cancel_behind_the_feed(session_factory, order_id) -> None:
    other = session_factory()
    try:
        other.execute(update(ScheduledOrder).where(ScheduledOrder.id == order_id).values(status='cancelled'))
        other.commit()
    finally:
        other.close()


def test_sweep_releases_seat_of_order_cancelled_without_an_event(db, feed, session_factory, make_slot, make_order) -> None:
    slot = make_slot(capacity=5, occupied=3)
    order = make_order(slot)
    sync = CancellationSync('est-1', session_factory=session_factory, feed=feed, clock=lambda: NOW)

    with sync:
        _cancel_behind_the_feed(session_factory, order.id)
        assert _occupied(db, slot) == 3

        assert sync.reconcile() == 1
        assert sync.reconcile() == 0

    assert _occupied(db, slot) == 2
    assert OrderStore(db).get(order.id).slot_released_at == NOW


def test_sweep_skips_released_past_and_foreign_orders(db, feed, session_factory, make_slot, make_order) -> None:
    slot = make_slot(capacity=5, occupied=3)
    past_slot = make_slot(capacity=5, occupied=1, slot_date=date(2029, 12, 1))
    other_slot = make_slot(capacity=5, occupied=1, establishment_id='est-2')
    released = make_order(slot, id='PED-0001')
    make_order(past_slot, id='PED-0002', status='cancelled')
    make_order(other_slot, id='PED-0003', establishment_id='est-2', status='cancelled')
    _cancel(db, feed, released.id)

    sync = CancellationSync('est-1', session_factory=session_factory, feed=feed, clock=lambda: NOW)

    assert sync.reconcile() == 0
    assert _occupied(db, slot) == 2
    assert _occupied(db, past_slot) == 1
    assert _occupied(db, other_slot) == 1


def test_sync_releases_seat_for_cancellation_published_by_another_process(db, feed, session_factory, make_slot, make_order) -> None:
    slot = make_slot(capacity=5, occupied=3)
    order = make_order(slot)
    row = {
        'id': order.id,
        'establishment_id': 'est-1',
        'status': 'confirmed',
        'is_scheduled': True,
        'scheduled_for': order.scheduled_for,
        'scheduling_slot_id': slot.id,
        'slot_released_at': None,
        'total': order.total,
    }
    _cancel_behind_the_feed(session_factory, order.id)
    payload = encode_event(ChangeEvent('orders', UPDATE, new=dict(row, status='cancelled'), old=row), 'order-service')

    with CancellationSync('est-1', session_factory=session_factory, feed=feed, clock=lambda: NOW):
        feed.receive(payload)
        feed.receive(payload)

    assert _occupied(db, slot) == 2
    assert OrderStore(db).get(order.id).slot_released_at == NOW
