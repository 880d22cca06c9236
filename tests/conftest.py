import os
from datetime import date, datetime, time
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from slot_scheduler.database import Base  # noqa: E402
from slot_scheduler.models.order import ScheduledOrder  # noqa: E402
from slot_scheduler.models.slot import SchedulingSlot  # noqa: E402
from slot_scheduler.models.user import StaffUser  # noqa: E402
from slot_scheduler.services.change_feed import ChangeFeed  # noqa: E402

ESTABLISHMENT = 'est-1'
SLOT_DATE = date(2030, 1, 10)


@pytest.fixture
def engine():
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine, tables=[StaffUser.__table__, SchedulingSlot.__table__, ScheduledOrder.__table__])
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine, tables=[ScheduledOrder.__table__, SchedulingSlot.__table__, StaffUser.__table__])
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def make_slot(db):
    def _make_slot(
        slot_time: time = time(11, 0),
        *,
        capacity: int = 5,
        occupied: int = 0,
        is_blocked: bool = False,
        slot_date: date = SLOT_DATE,
        establishment_id: str = ESTABLISHMENT,
    ) -> SchedulingSlot:
        slot = SchedulingSlot(
            establishment_id=establishment_id,
            slot_date=slot_date,
            slot_time=slot_time,
            capacity=capacity,
            occupied=occupied,
            is_blocked=is_blocked,
        )
        db.add(slot)
        db.commit()
        db.refresh(slot)
        return slot

    return _make_slot


@pytest.fixture
def make_order(db):
    def _make_order(slot: SchedulingSlot | None, **overrides) -> ScheduledOrder:
        scheduled_for = datetime.combine(slot.slot_date, slot.slot_time) if slot is not None else None
        fields = {
            'id': 'PED-0001',
            'establishment_id': ESTABLISHMENT,
            'customer_name': 'Ana Souza',
            'customer_email': 'ana@example.com',
            'customer_phone': '+5511999990000',
            'delivery_type': 'delivery',
            'address': {'street': 'Rua das Flores', 'number': '42', 'city': 'Sao Paulo'},
            'neighborhood_id': 'centro',
            'payment_method': 'pix',
            'items': [{'product_id': 'bolo-cenoura', 'quantity': 1}],
            'total': Decimal('89.90'),
            'points_redeemed': 10,
            'pending_points': 8,
            'loyalty_customer_id': 'loyal-7',
            'status': 'confirmed',
            'is_scheduled': True,
            'scheduled_for': scheduled_for,
            'scheduling_slot_id': slot.id if slot is not None else None,
            'can_reschedule': True,
            'reschedule_limit': None,
            'is_rescheduled': False,
            'reschedule_count': 0,
        }
        fields.update(overrides)
        order = ScheduledOrder(**fields)
        db.add(order)
        db.commit()
        db.refresh(order)
        return order

    return _make_order
