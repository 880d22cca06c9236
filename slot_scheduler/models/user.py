"""Staff user model definitions."""

from sqlalchemy import Column, Integer, String

from slot_scheduler.database import Base


STAFF_ROLES = ("admin", "staff")


class StaffUser(Base):
    """Represents an establishment staff member allowed to manage slots."""
    __tablename__ = "staff_users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True)
    establishment_id = Column(String, index=True)
    role = Column(String)  # admin/staff
