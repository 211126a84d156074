"""Consultation fee calculation"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from ...config import (
    DEFAULT_EMERGENCY_MULTIPLIER,
    PLATFORM_FEE_RATE,
    SUBSCRIPTION_DISCOUNT_RATE,
)
from ...errors import InvalidAmount

Number = Union[int, float, str, Decimal]

_ONE_UNIT = Decimal("1")


def to_decimal(value: Number) -> Decimal:
    """Exact decimal for a fee input; floats go through str() to drop binary noise"""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_half_up(value: Decimal) -> int:
    """Round to the nearest whole currency unit, halves away from zero"""
    return int(value.quantize(_ONE_UNIT, rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class FeeBreakdown:
    base_fee: int
    consultation_fee: int  # after subscription discount and emergency multiplier
    platform_fee: int
    total_amount: int
    subscription_discount: int
    emergency_surcharge: int

    def as_dict(self) -> dict:
        return {
            "base_fee": self.base_fee,
            "consultation_fee": self.consultation_fee,
            "platform_fee": self.platform_fee,
            "total_amount": self.total_amount,
            "subscription_discount": self.subscription_discount,
            "emergency_surcharge": self.emergency_surcharge,
        }


class FeeCalculator:
    """
    Pure fee computation.

    Order of operations: subscription discount, then emergency multiplier, then
    the platform fee on the adjusted fee. All arithmetic is Decimal so the same
    inputs always give the same amounts (dispute audits recompute them).
    """

    def __init__(
        self,
        platform_fee_rate: Number = PLATFORM_FEE_RATE,
        subscription_discount_rate: Number = SUBSCRIPTION_DISCOUNT_RATE,
        default_emergency_multiplier: Number = DEFAULT_EMERGENCY_MULTIPLIER,
    ):
        self.platform_fee_rate = to_decimal(platform_fee_rate)
        self.subscription_discount_rate = to_decimal(subscription_discount_rate)
        self.default_emergency_multiplier = to_decimal(default_emergency_multiplier)

        if not (0 <= self.platform_fee_rate < 1):
            raise ValueError("platform_fee_rate must be in [0, 1)")
        if not (0 <= self.subscription_discount_rate < 1):
            raise ValueError("subscription_discount_rate must be in [0, 1)")

    def compute(
        self,
        consultation_fee: Number,
        is_emergency: bool = False,
        has_subscription: bool = False,
        emergency_multiplier: Optional[Number] = None,
    ) -> FeeBreakdown:
        fee = to_decimal(consultation_fee)
        if fee <= 0:
            raise InvalidAmount("Consultation fee must be greater than zero")

        multiplier = (
            self.default_emergency_multiplier
            if emergency_multiplier is None
            else to_decimal(emergency_multiplier)
        )
        if multiplier <= 0:
            raise InvalidAmount("Emergency multiplier must be greater than zero")

        discounted = fee
        if has_subscription:
            discounted = fee * (1 - self.subscription_discount_rate)

        adjusted = discounted * multiplier if is_emergency else discounted
        adjusted_fee = round_half_up(adjusted)
        platform_fee = round_half_up(Decimal(adjusted_fee) * self.platform_fee_rate)
        total_amount = adjusted_fee + platform_fee

        if total_amount <= 0:
            raise InvalidAmount(f"Computed total {total_amount} is not payable")

        base_fee = round_half_up(fee)
        discounted_fee = round_half_up(discounted)
        return FeeBreakdown(
            base_fee=base_fee,
            consultation_fee=adjusted_fee,
            platform_fee=platform_fee,
            total_amount=total_amount,
            subscription_discount=base_fee - discounted_fee,
            emergency_surcharge=adjusted_fee - discounted_fee,
        )

    def split_amount(self, amount: int) -> tuple[int, int]:
        """
        Split a charged total into (doctor_payout, platform_fee).

        Inverse of compute(): the payout is the amount net of the platform
        rate, and the platform fee is whatever remains, so the two always add
        back up to the amount.
        """
        doctor_payout = round_half_up(Decimal(amount) / (1 + self.platform_fee_rate))
        return doctor_payout, amount - doctor_payout
