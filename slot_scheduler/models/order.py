"""Order model definitions.

Only the scheduling subset of an order is interpreted here; the customer,
delivery, payment and loyalty columns are carried so that a rescheduled
order can be re-created faithfully.
"""

from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String

from slot_scheduler.database import Base


ORDER_STATUSES = ("pending", "confirmed", "preparing", "ready", "delivered", "cancelled")
CANCELLED_STATUS = "cancelled"
PENDING_STATUS = "pending"


class ScheduledOrder(Base):
    """Represents a customer order, possibly holding a seat in a scheduling slot."""
    __tablename__ = "orders"

    id = Column(String, primary_key=True)
    establishment_id = Column(String, nullable=False, index=True)

    customer_name = Column(String)
    customer_email = Column(String, index=True)
    customer_phone = Column(String)

    delivery_type = Column(String)
    address = Column(JSON)
    neighborhood_id = Column(String)

    payment_method = Column(String)
    items = Column(JSON)
    total = Column(Numeric(10, 2))

    points_redeemed = Column(Integer, default=0)
    pending_points = Column(Integer, default=0)
    loyalty_customer_id = Column(String)

    status = Column(String, nullable=False, default=PENDING_STATUS)
    cancelled_reason = Column(String)

    is_scheduled = Column(Boolean, nullable=False, default=False)
    scheduled_for = Column(DateTime)
    scheduling_slot_id = Column(Integer, ForeignKey("scheduling_slots.id", ondelete="SET NULL"))
    can_reschedule = Column(Boolean, nullable=False, default=True)
    reschedule_limit = Column(DateTime)
    is_rescheduled = Column(Boolean, nullable=False, default=False)
    reschedule_count = Column(Integer, nullable=False, default=0)
    rescheduled_from_order_id = Column(String, ForeignKey("orders.id"))
    slot_released_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Copied verbatim onto the successor when an order is rescheduled.
    CARRIED_FIELDS = (
        "establishment_id",
        "customer_name",
        "customer_email",
        "customer_phone",
        "delivery_type",
        "address",
        "neighborhood_id",
        "payment_method",
        "items",
        "total",
        "points_redeemed",
        "pending_points",
        "loyalty_customer_id",
    )

    def to_dict(self) -> dict:
        return {column.name: getattr(self, column.name) for column in self.__table__.columns}
