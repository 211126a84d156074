"""Escrow domain: held payments, payouts, refunds and disputes"""

from .disputes import DisputeResolver
from .ledger import EscrowLedger

__all__ = ["DisputeResolver", "EscrowLedger"]
