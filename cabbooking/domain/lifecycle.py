"""
Booking lifecycle rules.

Patterns used
-------------
- **State Pattern** over ``BOOKING_TRANSITIONS``:
  PENDING -> CONFIRMED | REJECTED, CONFIRMED -> ASSIGNED | CANCELLED,
  ASSIGNED -> IN_PROGRESS | CANCELLED, IN_PROGRESS -> COMPLETED.
- ``transition_effects`` names the columns stamped on entry to a state; the
  service writes them in the same conditional update as the status so a
  stamp can never be applied twice.
- ``authorize_status_change`` is the role guard for the generic
  status-update operation.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from cabbooking.errors import AuthorizationError, BadRequestError

from .enums import BOOKING_TRANSITIONS, TERMINAL_STATUSES, BookingStatus, UserRole


class InvalidStateTransition(BadRequestError):
    """Raised when a booking status change violates the state machine."""


def plan_transition(current: BookingStatus, target: BookingStatus) -> bool:
    """
    Validate ``current -> target``.

    Returns ``False`` when the call is an idempotent repeat that should be
    a no-op (re-starting a trip already in progress), ``True`` when a write
    is needed.  Raises ``InvalidStateTransition`` otherwise.
    """
    current, target = BookingStatus(current), BookingStatus(target)
    if current in TERMINAL_STATUSES:
        raise InvalidStateTransition(
            f"Booking is already in a final state ({current.value})"
        )
    if current is BookingStatus.IN_PROGRESS and target is BookingStatus.IN_PROGRESS:
        return False
    if target not in BOOKING_TRANSITIONS[current]:
        raise InvalidStateTransition(
            f"Cannot transition from {current.value} to {target.value}"
        )
    return True


def transition_effects(target: BookingStatus, now: datetime) -> dict:
    if target is BookingStatus.IN_PROGRESS:
        return {"actual_start": now}
    if target is BookingStatus.COMPLETED:
        return {"actual_end": now}
    return {}


def authorize_status_change(
    role: UserRole,
    target: BookingStatus,
    booking_driver_id: Optional[int],
    caller_driver_id: Optional[int] = None,
) -> None:
    role = UserRole(role)
    if role is UserRole.CUSTOMER:
        raise AuthorizationError(
            "Customers can only cancel bookings through the cancel operation"
        )
    if target is BookingStatus.CONFIRMED:
        raise InvalidStateTransition(
            "Bookings are confirmed by payment or at creation for cash bookings"
        )
    if role is UserRole.DRIVER:
        if caller_driver_id is None or booking_driver_id != caller_driver_id:
            raise AuthorizationError("This booking is not assigned to you")
        if target in (BookingStatus.ASSIGNED, BookingStatus.REJECTED):
            raise AuthorizationError("Only an admin can assign or reject bookings")
