"""
Release slot seats when orders are cancelled anywhere.

Orders can be cancelled outside ``cancel_scheduled_order`` (staff tools,
payment failures). This listener watches order updates (for one establishment, or
for all of them) and, on a transition into ``cancelled``, runs the same
once-only release the direct cancellation path uses. If the seat was
already released (direct cancel, reschedule) the event is ignored.

The feed only carries cancellations that were published to it. Orders
cancelled by a plain UPDATE that nobody announced are caught by
``reconcile``, which the service runs periodically.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from slot_scheduler.core import config
from slot_scheduler.database import SessionLocal
from slot_scheduler.models.order import CANCELLED_STATUS
from slot_scheduler.services.booking import release_order_slot
from slot_scheduler.services.change_feed import UPDATE, ChangeEvent, ChangeFeed, Subscription, change_feed
from slot_scheduler.services.order_store import OrderStore

logger = logging.getLogger(__name__)


def needs_release(event: ChangeEvent) -> bool:
    order, previous = event.new, event.old
    if order is None or order.get('status') != CANCELLED_STATUS:
        return False
    if previous is not None and previous.get('status') == CANCELLED_STATUS:
        return False
    return (
        bool(order.get('is_scheduled'))
        and order.get('scheduling_slot_id') is not None
        and order.get('slot_released_at') is None
    )


class CancellationSync:
    def __init__(
        self,
        establishment_id: str | None = None,
        customer_email: str | None = None,
        *,
        session_factory=SessionLocal,
        feed: ChangeFeed | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.establishment_id = establishment_id
        self.customer_email = customer_email
        self._session_factory = session_factory
        self._feed = feed or change_feed
        self._clock = clock
        self._subscription: Subscription | None = None

    def __enter__(self) -> 'CancellationSync':
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def start(self) -> None:
        if self._subscription is not None:
            return
        filters = {}
        if self.establishment_id:
            filters['establishment_id'] = self.establishment_id
        if self.customer_email:
            filters['customer_email'] = self.customer_email
        self._subscription = self._feed.subscribe('orders', self.handle, event_types=(UPDATE,), **filters)
        logger.info('Cancellation sync active for establishment=%s', self.establishment_id or '*')

    def stop(self) -> None:
        if self._subscription is not None:
            self._feed.unsubscribe(self._subscription)
            self._subscription = None

    def handle(self, event: ChangeEvent) -> bool:
        if not needs_release(event):
            return False

        order_id = event.new['id']
        db = self._session_factory()
        try:
            released = release_order_slot(db, order_id, self._clock(), feed=self._feed)
        except SQLAlchemyError:
            logger.exception('Cancellation sync could not release the slot of order %s', order_id)
            return False
        finally:
            db.close()

        if released:
            logger.info('Cancellation sync released slot %s for order %s', event.new['scheduling_slot_id'], order_id)
        return released

    def reconcile(self) -> int:
        """Release the seats of cancelled, upcoming orders that still hold one."""
        now = self._clock()
        released = 0
        db = self._session_factory()
        try:
            pending = OrderStore(db).list_unreleased_cancellations(now, self.establishment_id)
            for order_id in [order.id for order in pending]:
                if release_order_slot(db, order_id, now, feed=self._feed):
                    released += 1
        except SQLAlchemyError:
            logger.exception('Cancellation sweep failed after releasing %d seat(s)', released)
        finally:
            db.close()

        if released:
            logger.warning('Cancellation sweep released %d seat(s) missed by the change feed', released)
        return released


async def cancellation_sweep_loop(sync: CancellationSync, interval: float | None = None) -> None:
    """Run ``sync.reconcile`` every ``interval`` seconds until cancelled."""
    interval = interval or config.CANCELLATION_SWEEP_SECONDS
    logger.info('cancellation_sweep_loop started (every %ss)', interval)

    try:
        while True:
            try:
                await asyncio.to_thread(sync.reconcile)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception('cancellation_sweep_loop error')

            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info('cancellation_sweep_loop cancelled')
