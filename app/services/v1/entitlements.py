# app/services/v1/entitlements.py
"""
Subscription-plan policy, kept free of HTTP and database access.

    emergency_entitlement(UserRole.PATIENT, "basic", 2)
    -> Entitlement(allowed=True, unlimited=False, consumes_credit=True, ...)
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from app.db.models import UserRole


class SubscriptionPlan(str, Enum):
    FREE = "free"
    BASIC = "basic"
    BASIC_FAMILY = "basic_family"
    PREMIUM = "premium"
    PREMIUM_FAMILY = "premium_family"
    ULTRA = "ultra"
    ULTRA_FAMILY = "ultra_family"

    @classmethod
    def parse(cls, value: Optional[str]) -> "SubscriptionPlan":
        """NULL and unknown plan names fall back to FREE."""
        try:
            return cls(value) if value else cls.FREE
        except ValueError:
            return cls.FREE

    @property
    def tier(self) -> str:
        return self.value.removesuffix("_family")


@dataclass(frozen=True)
class Entitlement:
    allowed: bool
    unlimited: bool = False
    consumes_credit: bool = False
    reason: Optional[str] = None


_UNLIMITED_TIERS = frozenset({"premium", "ultra"})
_DISCOUNT_BY_TIER = {"ultra": 70, "premium": 50, "basic": 30}


def emergency_entitlement(
    role: UserRole,
    plan: Optional[str],
    consultations_left: Optional[int],
) -> Entitlement:
    """Can ``role`` on ``plan`` open an emergency consultation right now?"""
    if role in (UserRole.ADMIN, UserRole.DOCTOR):
        return Entitlement(allowed=True, unlimited=True)

    tier = SubscriptionPlan.parse(plan).tier

    if tier in _UNLIMITED_TIERS:
        return Entitlement(allowed=True, unlimited=True)

    if tier == "basic":
        # NULL counter means the monthly allowance was never initialised
        if consultations_left is not None and consultations_left <= 0:
            return Entitlement(
                allowed=False,
                reason="Monthly emergency consultation limit reached",
            )
        return Entitlement(allowed=True, consumes_credit=True)

    return Entitlement(
        allowed=False,
        reason="Free plans do not include emergency consultations",
    )


def specialist_discount(plan: Optional[str]) -> int:
    """Discount percentage on specialist consultations."""
    return _DISCOUNT_BY_TIER.get(SubscriptionPlan.parse(plan).tier, 0)


def apply_discount(price_cents: int, plan: Optional[str]) -> int:
    if price_cents < 0:
        raise ValueError("price_cents must be non-negative")
    # integer maths, rounds half up
    return price_cents - (price_cents * specialist_discount(plan) + 50) // 100


__all__ = [
    "SubscriptionPlan",
    "Entitlement",
    "emergency_entitlement",
    "specialist_discount",
    "apply_discount",
]
