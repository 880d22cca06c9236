"""
Scheduling error taxonomy.

Every error carries a stable ``code`` (returned to callers in result objects
and HTTP bodies), the HTTP status it maps to, and a human-readable message.
Validation errors are raised before any write; the rest are raised mid-flow
after compensation has been attempted.
"""
from __future__ import annotations

from datetime import datetime

from fastapi import HTTPException, status


class SchedulingError(Exception):
    code = "SchedulingError"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Scheduling operation failed."

    def __init__(self, message: str | None = None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_detail(self) -> dict:
        detail = {"error": self.code, "message": self.message}
        for key, value in self.context.items():
            detail[key] = value.isoformat() if hasattr(value, "isoformat") else value
        return detail


# Eligibility (no side effects)

class OrderNotFound(SchedulingError):
    code = "OrderNotFound"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Order not found."


class NotScheduled(SchedulingError):
    code = "NotScheduled"
    status_code = status.HTTP_409_CONFLICT
    default_message = "This order is not scheduled."


class OrderCancelled(SchedulingError):
    code = "OrderCancelled"
    status_code = status.HTTP_409_CONFLICT
    default_message = "A cancelled order cannot be rescheduled."


class AlreadyRescheduled(SchedulingError):
    code = "AlreadyRescheduled"
    status_code = status.HTTP_409_CONFLICT
    default_message = "This order has already been rescheduled."


class RescheduleNotPermitted(SchedulingError):
    code = "RescheduleNotPermitted"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "This order does not allow rescheduling."


class DeadlineExpired(SchedulingError):
    code = "DeadlineExpired"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, deadline: datetime):
        super().__init__(
            f"Rescheduling closed at {deadline:%H:%M} on {deadline:%Y-%m-%d}.",
            deadline=deadline,
        )
        self.deadline = deadline


# Slots

class SlotNotFound(SchedulingError):
    code = "SlotNotFound"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Slot not found."


class SlotUnavailable(SchedulingError):
    code = "SlotUnavailable"
    status_code = status.HTTP_409_CONFLICT
    default_message = "The selected slot is not available."


class SlotInUse(SchedulingError):
    code = "SlotInUse"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Slot still holds active bookings and cannot be deleted."


class SlotAlreadyExists(SchedulingError):
    code = "SlotAlreadyExists"
    status_code = status.HTTP_409_CONFLICT
    default_message = "A slot already exists at this date and time."


class InvalidSlot(SchedulingError):
    code = "InvalidSlot"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid slot definition."


class SlotMismatch(SchedulingError):
    code = "SlotMismatch"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "The slot in the request does not match the order."


# Mid-flow failures

class ReservationFailed(SchedulingError):
    code = "ReservationFailed"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Could not reserve the new slot."


class UpdateFailed(SchedulingError):
    code = "UpdateFailed"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Could not update the order."


class OrderCreationFailed(SchedulingError):
    code = "OrderCreationFailed"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Could not create the rescheduled order."


class CompensationFailed(SchedulingError):
    code = "CompensationFailed"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Scheduling failed and slot counters could not be restored. An operator has been alerted."


def to_http_exception(exc: SchedulingError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


def _all_error_classes(base=SchedulingError):
    for subclass in base.__subclasses__():
        yield subclass
        yield from _all_error_classes(subclass)


ERROR_STATUS = {error_class.code: error_class.status_code for error_class in _all_error_classes()}


def status_for(code: str | None) -> int:
    return ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST)
