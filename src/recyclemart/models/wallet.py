"""Wallet session and ledger transaction models.

Transaction records are append-only: once written only the status field
may change (pending → confirmed / failed).
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional


class WalletMode(str, enum.Enum):
    EXISTING = "existing"
    NEW = "new"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class TransactionKind(str, enum.Enum):
    ESCROW_LOCK = "escrow_lock"
    PAYMENT = "payment"
    FAUCET = "faucet"
    TRANSFER = "transfer"


# Allowed status changes on an existing record
TRANSACTION_STATUS_TRANSITIONS: dict[TransactionStatus, frozenset] = {
    TransactionStatus.PENDING: frozenset({
        TransactionStatus.CONFIRMED,
        TransactionStatus.FAILED,
    }),
    TransactionStatus.CONFIRMED: frozenset(),
    TransactionStatus.FAILED: frozenset(),
}


@dataclass
class WalletSession:
    """Current user's connection state. Transient, one per session."""
    connected: bool = False
    address: str = ""
    balance: str = "0"
    network: str = "testnet"
    mode: Optional[WalletMode] = None
    is_new_user: bool = False


@dataclass(frozen=True)
class WalletInfo:
    """What the ledger returns when a wallet is created or connected."""
    address: str
    balance: Decimal
    mnemonic: Optional[str] = None


@dataclass(frozen=True)
class LedgerReceipt:
    """Ledger answer to a submitted transaction."""
    transaction_id: str
    status: TransactionStatus
    timestamp: datetime


@dataclass(frozen=True)
class LedgerStatus:
    status: TransactionStatus
    confirmations: int = 0


@dataclass(frozen=True)
class TransactionRequest:
    """A transfer the current wallet asks the ledger to perform."""
    to: str
    amount: Decimal
    kind: TransactionKind = TransactionKind.TRANSFER
    job_id: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class TransactionRecord:
    """Append-only log entry for a ledger transaction."""
    tx_id: str
    kind: TransactionKind
    sender: str
    recipient: str
    amount: Decimal
    status: TransactionStatus
    timestamp_utc: datetime
    job_id: Optional[str] = None

    def transition_to(self, new_status: TransactionStatus) -> None:
        """Move to new_status, validating the change is legal."""
        if new_status == self.status:
            return
        allowed = TRANSACTION_STATUS_TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise ValueError(
                f"Invalid transaction status change: {self.status.value} → {new_status.value}"
            )
        self.status = new_status
