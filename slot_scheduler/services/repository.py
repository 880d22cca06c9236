from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from slot_scheduler.database import DEFERRED_EVENTS_KEY
from slot_scheduler.services.change_feed import UPDATE, ChangeEvent, ChangeFeed, change_feed


class Repository:
    """Base for stores that commit their own writes and announce them on the change feed.

    Inside ``database.atomic`` the writes are only flushed and the events are
    queued on the session until the surrounding transaction commits.
    """

    model = None
    table: str = ''

    def __init__(self, db: Session, feed: ChangeFeed | None = None):
        self.db = db
        self.feed = feed or change_feed

    @property
    def deferred(self) -> bool:
        return DEFERRED_EVENTS_KEY in self.db.info

    def get(self, record_id, establishment_id: str | None = None):
        query = select(self.model).where(self.model.id == record_id)
        if establishment_id is not None:
            query = query.where(self.model.establishment_id == establishment_id)
        return self.db.execute(query.execution_options(populate_existing=True)).scalar_one_or_none()

    def _event(self, event_type: str, new: dict | None = None, old: dict | None = None) -> ChangeEvent:
        return ChangeEvent(table=self.table, event_type=event_type, new=new, old=old)

    def _write(self, operation):
        """Run ``operation`` (which returns ``(result, events)``) and commit it."""
        try:
            result, events = operation()
            if self.deferred:
                self.db.flush()
                self.db.info[DEFERRED_EVENTS_KEY].extend(events)
                return result
            self.db.commit()
        except SQLAlchemyError:
            if not self.deferred:
                self.db.rollback()
            raise

        self.feed.publish_all(events)
        return result

    def _guarded_update(self, record_id, conditions, values: dict, old_from_new=None):
        """UPDATE one row when ``conditions`` hold; returns the refreshed row or None.

        ``old_from_new`` rebuilds the previous row image from the new one for
        relative updates, where a separate read would race with other writers.
        """
        def operation():
            old = None
            if old_from_new is None:
                before = self.get(record_id)
                if before is None:
                    return None, []
                old = before.to_dict()

            result = self.db.execute(
                update(self.model)
                .where(self.model.id == record_id, *conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None, []

            record = self.get(record_id)
            new = record.to_dict()
            if old_from_new is not None:
                old = old_from_new(new)
            return record, [self._event(UPDATE, new=new, old=old)]

        return self._write(operation)
