"""Slot domain: availability and exclusive holds"""

from .ledger import SlotLedger

__all__ = ["SlotLedger"]
