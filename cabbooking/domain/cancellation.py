"""
Cancellation charges and refunds.

    hours_until_start = start_time - now
    PENDING booking                      -> charge 0 (nothing committed yet)
    0 <= hours_until_start < window      -> charge = round(final_amount x percent)
    otherwise                            -> charge 0
    hours_until_start < 0                -> not cancellable
    refund = max(0, paid - charge)       -> only when the payment is COMPLETED

The preview query and the cancel mutation both go through ``quote`` so the
figure shown to the customer is the figure that gets applied.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .enums import BookingStatus, PaymentStatus
from .money import round_money, to_decimal


@dataclass(frozen=True)
class CancellationQuote:
    hours_until_start: float
    cancellable: bool
    charge: int
    refund_amount: Optional[int]
    window_hours: float
    charge_percent: float

    @property
    def message(self) -> str:
        if not self.cancellable:
            return "The trip has already started and cannot be cancelled."
        if self.charge:
            return f"A cancellation charge of Rs {self.charge} will apply."
        return "No cancellation charges will apply."


class CancellationPolicy:
    def __init__(self, window_hours: float = 24, charge_percent: float = 0.20):
        self.window_hours = window_hours
        self.charge_percent = charge_percent

    def charge_for(self, final_amount: int, status: BookingStatus, hours: float) -> int:
        if status is BookingStatus.PENDING:
            return 0
        if 0 <= hours < self.window_hours:
            return round_money(to_decimal(final_amount) * to_decimal(self.charge_percent))
        return 0

    @staticmethod
    def refund_for(paid_amount: int, charge: int) -> int:
        return max(0, paid_amount - charge)

    def quote(
        self,
        final_amount: int,
        status: BookingStatus,
        start_time: datetime,
        payment_status: Optional[PaymentStatus] = None,
        paid_amount: int = 0,
        now: Optional[datetime] = None,
    ) -> CancellationQuote:
        now = now or datetime.now(timezone.utc)
        hours = (start_time - now).total_seconds() / 3600
        charge = self.charge_for(final_amount, BookingStatus(status), hours)
        refund = None
        if payment_status and PaymentStatus(payment_status) is PaymentStatus.COMPLETED:
            refund = self.refund_for(paid_amount, charge)
        return CancellationQuote(
            hours_until_start=round(hours, 2),
            cancellable=hours >= 0,
            charge=charge,
            refund_amount=refund,
            window_hours=self.window_hours,
            charge_percent=self.charge_percent,
        )
