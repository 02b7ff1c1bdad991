"""
Value objects shared by the services.

Bookings themselves live as ORM rows; these are the small immutable records
that travel between the API layer and the services.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Optional

from .enums import UserRole


# ── Caller ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Identity:
    """Authenticated caller, decoded from the bearer token."""

    user_id: int
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role is UserRole.ADMIN


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Location:
    city: str
    address: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> Location:
        return cls(data["city"], data.get("address"), data.get("lat"), data.get("lng"))


@dataclass(frozen=True)
class Passenger:
    name: str
    phone: str
    email: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def mask_phone(phone: Optional[str]) -> str:
    """``9876543210`` -> ``98******10`` for log lines."""
    if not phone or len(phone) < 4:
        return "****"
    return f"{phone[:2]}{'*' * (len(phone) - 4)}{phone[-2:]}"
