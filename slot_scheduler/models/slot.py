"""Scheduling slot model definitions."""

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, Column, Date, DateTime, Integer, String, Time, UniqueConstraint

from slot_scheduler.database import Base


class SchedulingSlot(Base):
    """A bookable time slot with bounded capacity."""
    __tablename__ = "scheduling_slots"
    __table_args__ = (
        UniqueConstraint("establishment_id", "slot_date", "slot_time", name="uq_scheduling_slots_moment"),
        CheckConstraint("capacity > 0", name="ck_scheduling_slots_capacity_positive"),
        CheckConstraint("occupied >= 0", name="ck_scheduling_slots_occupied_non_negative"),
        CheckConstraint("occupied <= capacity", name="ck_scheduling_slots_occupied_within_capacity"),
    )

    id = Column(Integer, primary_key=True)
    establishment_id = Column(String, nullable=False, index=True)
    slot_date = Column(Date, nullable=False)
    slot_time = Column(Time, nullable=False)
    capacity = Column(Integer, nullable=False)
    occupied = Column(Integer, nullable=False, default=0)
    is_blocked = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "establishment_id": self.establishment_id,
            "slot_date": self.slot_date,
            "slot_time": self.slot_time,
            "capacity": self.capacity,
            "occupied": self.occupied,
            "is_blocked": self.is_blocked,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
