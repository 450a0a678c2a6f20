"""Ledger access — the client protocol, its simulation, and the gateway."""

from recyclemart.ledger.client import ESCROW_ACCOUNT, LedgerClient, SimulatedLedgerClient
from recyclemart.ledger.gateway import LedgerGateway

__all__ = ["ESCROW_ACCOUNT", "LedgerClient", "LedgerGateway", "SimulatedLedgerClient"]
