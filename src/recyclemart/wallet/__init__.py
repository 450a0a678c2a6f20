"""Wallet session state and transaction monitoring."""

from recyclemart.wallet.monitor import TransactionMonitor
from recyclemart.wallet.session import WalletSessionStore

__all__ = ["TransactionMonitor", "WalletSessionStore"]
