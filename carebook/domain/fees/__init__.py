"""Fee domain: consultation pricing and platform fee split"""

from .calculator import FeeBreakdown, FeeCalculator, round_half_up

__all__ = ["FeeBreakdown", "FeeCalculator", "round_half_up"]
