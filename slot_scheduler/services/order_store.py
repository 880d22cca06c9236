"""
Scheduling-side access to order rows.

The order subsystem owns these rows; this store only reads them and writes
the scheduling flags, the cancellation fields and successor orders.
"""

import uuid
from datetime import datetime

from sqlalchemy import select

from slot_scheduler.models.order import CANCELLED_STATUS, ScheduledOrder
from slot_scheduler.services.change_feed import INSERT
from slot_scheduler.services.repository import Repository

ORDER_ID_PREFIX = 'PED-'


def generate_order_id() -> str:
    return f'{ORDER_ID_PREFIX}{uuid.uuid4().hex[:10].upper()}'


class OrderStore(Repository):
    model = ScheduledOrder
    table = 'orders'

    def list_for_slot(self, slot_id: int) -> list[ScheduledOrder]:
        return list(
            self.db.execute(
                select(ScheduledOrder)
                .where(ScheduledOrder.scheduling_slot_id == slot_id)
                .order_by(ScheduledOrder.created_at.asc())
            ).scalars()
        )

    def create(self, **fields) -> ScheduledOrder:
        def operation():
            order = ScheduledOrder(**fields)
            if order.id is None:
                order.id = generate_order_id()
            self.db.add(order)
            self.db.flush()
            return order, [self._event(INSERT, new=order.to_dict())]

        return self._write(operation)

    def list_unreleased_cancellations(self, since: datetime, establishment_id: str | None = None) -> list[ScheduledOrder]:
        """Cancelled orders scheduled from ``since`` on that still hold a seat."""
        query = select(ScheduledOrder).where(
            ScheduledOrder.status == CANCELLED_STATUS,
            ScheduledOrder.is_scheduled.is_(True),
            ScheduledOrder.scheduling_slot_id.is_not(None),
            ScheduledOrder.slot_released_at.is_(None),
            ScheduledOrder.scheduled_for >= since,
        )
        if establishment_id is not None:
            query = query.where(ScheduledOrder.establishment_id == establishment_id)
        return list(self.db.execute(query.order_by(ScheduledOrder.scheduled_for.asc())).scalars())

    def mark_rescheduled(self, order_id: str, released_at: datetime) -> ScheduledOrder | None:
        """Supersede an order whose seat this reschedule claimed at ``released_at``.

        Refused if the order was already superseded or cancelled, or if the
        released marker belongs to someone else.
        """
        return self._guarded_update(
            order_id,
            (
                ScheduledOrder.is_rescheduled.is_(False),
                ScheduledOrder.status != CANCELLED_STATUS,
                ScheduledOrder.slot_released_at == released_at,
            ),
            {
                'is_rescheduled': True,
                'status': CANCELLED_STATUS,
                'reschedule_count': ScheduledOrder.reschedule_count + 1,
            },
        )

    def revert_rescheduled(self, order_id: str, previous_status: str) -> ScheduledOrder | None:
        return self._guarded_update(
            order_id,
            (ScheduledOrder.is_rescheduled.is_(True),),
            {
                'is_rescheduled': False,
                'status': previous_status,
                'reschedule_count': ScheduledOrder.reschedule_count - 1,
            },
        )

    def claim_slot_release(self, order_id: str, released_at: datetime) -> ScheduledOrder | None:
        """Compare-and-set the released marker; only one caller can win it."""
        return self._guarded_update(
            order_id,
            (
                ScheduledOrder.slot_released_at.is_(None),
                ScheduledOrder.scheduling_slot_id.is_not(None),
            ),
            {'slot_released_at': released_at},
        )

    def reopen_slot_release(self, order_id: str, released_at: datetime) -> ScheduledOrder | None:
        """Undo a claim made at ``released_at``, unless the order got cancelled meanwhile."""
        return self._guarded_update(
            order_id,
            (
                ScheduledOrder.slot_released_at == released_at,
                ScheduledOrder.status != CANCELLED_STATUS,
            ),
            {'slot_released_at': None},
        )

    def mark_cancelled(self, order_id: str, reason: str) -> ScheduledOrder | None:
        """Cancel a live order; refused once it is cancelled or superseded."""
        return self._guarded_update(
            order_id,
            (
                ScheduledOrder.status != CANCELLED_STATUS,
                ScheduledOrder.is_rescheduled.is_(False),
            ),
            {'status': CANCELLED_STATUS, 'cancelled_reason': reason},
        )
