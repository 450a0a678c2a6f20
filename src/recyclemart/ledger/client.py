"""Ledger client — the capability boundary to the distributed ledger.

The marketplace never talks to a network directly. Everything it needs
from a ledger is the small protocol below, so a real network client can
replace SimulatedLedgerClient without touching the job state machine.

SimulatedLedgerClient keeps balances and transactions in memory. It
still produces real key material (eth_account) and real keccak
transaction hashes (web3), so addresses and ids look and validate like
the genuine article. The ledger is feeless.
"""

from __future__ import annotations

import itertools
import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Protocol

from eth_account import Account
from web3 import Web3

from recyclemart.errors import LedgerError, NoWalletFoundError
from recyclemart.models.wallet import (
    LedgerReceipt,
    LedgerStatus,
    TransactionStatus,
    WalletInfo,
)
from recyclemart.persistence.store import KeyValueBackend, MemoryBackend

logger = logging.getLogger(__name__)

Account.enable_unaudited_hdwallet_features()

# Holding account for rewards locked at claim time
ESCROW_ACCOUNT = "marketplace_escrow"

_TOKEN_PLACES = Decimal("0.001")


class LedgerClient(Protocol):
    """What the marketplace requires of a ledger."""

    def initialize(self) -> bool:
        ...

    def create_wallet(self) -> WalletInfo:
        ...

    def connect_existing(self) -> WalletInfo:
        ...

    def get_balance(self, address: str) -> Decimal:
        ...

    def send_transaction(
        self, to: str, amount: Decimal, payload: dict[str, Any],
    ) -> LedgerReceipt:
        ...

    def request_faucet(self, address: str) -> bool:
        ...

    def get_transaction_status(self, transaction_id: str) -> LedgerStatus:
        ...


@dataclass
class _SimulatedTransaction:
    sender: str
    recipient: str
    amount: Decimal
    payload: dict[str, Any]
    timestamp: datetime
    confirmations: int = 0
    failed: bool = False


class SimulatedLedgerClient:
    """In-process ledger with persisted wallet identity.

    The current wallet's address is written to the key-value backend so
    connect_existing can find it in a later session. Sends are debited
    from payload["from"] when given, otherwise from the current wallet.

    Test hooks:
        fail_next(operation, times): the next calls raise LedgerError.
        latency_seconds: every call sleeps first (drives timeout tests).
        confirmations_required: status polls needed before a
            transaction reports confirmed.
    """

    def __init__(
        self,
        backend: Optional[KeyValueBackend] = None,
        network: str = "testnet",
        faucet_amount: Decimal = Decimal("100.000"),
        latency_seconds: float = 0.0,
        confirmations_required: int = 1,
        key_prefix: str = "recyclemart_",
    ) -> None:
        self._backend: KeyValueBackend = backend if backend is not None else MemoryBackend()
        self._wallet_key = key_prefix + "wallet"
        self.network = network
        self.faucet_amount = Decimal(str(faucet_amount))
        self.latency_seconds = latency_seconds
        self.confirmations_required = confirmations_required

        self._lock = threading.Lock()
        self._initialized = False
        self._current_address: Optional[str] = None
        self._balances: dict[str, Decimal] = {}
        self._funded: set[str] = set()
        self._transactions: dict[str, _SimulatedTransaction] = {}
        self._nonce = itertools.count(1)
        self._failures: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Test hooks
    # ------------------------------------------------------------------

    def fail_next(self, operation: str, times: int = 1) -> None:
        """Make the next `times` calls to operation raise LedgerError."""
        with self._lock:
            self._failures[operation] = self._failures.get(operation, 0) + times

    def mark_failed(self, transaction_id: str) -> None:
        """Have the network reject a submitted transaction."""
        with self._lock:
            self._tx(transaction_id).failed = True

    def _enter(self, operation: str) -> None:
        if self.latency_seconds > 0:
            time.sleep(self.latency_seconds)
        with self._lock:
            remaining = self._failures.get(operation, 0)
            if remaining:
                self._failures[operation] = remaining - 1
                raise LedgerError(f"Simulated ledger failure in {operation}")

    # ------------------------------------------------------------------
    # Protocol
    # ------------------------------------------------------------------

    def initialize(self) -> bool:
        self._enter("initialize")
        self._initialized = True
        return True

    def create_wallet(self) -> WalletInfo:
        """Allocate a fresh keypair and make it the current wallet."""
        self._enter("create_wallet")
        account, mnemonic = Account.create_with_mnemonic()
        address = account.address
        with self._lock:
            self._balances.setdefault(address, Decimal("0"))
            self._current_address = address
        self._backend.set(self._wallet_key, json.dumps({
            "address": address,
            "network": self.network,
            "created_utc": datetime.now(timezone.utc).isoformat(),
        }))
        logger.info("Created wallet %s on %s", address, self.network)
        return WalletInfo(address=address, balance=Decimal("0"), mnemonic=mnemonic)

    def connect_existing(self) -> WalletInfo:
        """Reconnect to the persisted wallet. Raises NoWalletFoundError."""
        self._enter("connect_existing")
        raw = self._backend.get(self._wallet_key)
        if raw is None:
            raise NoWalletFoundError("No previously created wallet found")
        address = json.loads(raw)["address"]
        with self._lock:
            self._current_address = address
            balance = self._balances.setdefault(address, Decimal("0"))
        return WalletInfo(address=address, balance=balance)

    def forget_wallet(self) -> None:
        """Drop the persisted wallet identity (the wallet itself survives)."""
        self._backend.delete(self._wallet_key)
        with self._lock:
            self._current_address = None

    def get_balance(self, address: str) -> Decimal:
        self._enter("get_balance")
        with self._lock:
            return self._balances.get(address, Decimal("0")).quantize(_TOKEN_PLACES)

    def send_transaction(
        self, to: str, amount: Decimal, payload: dict[str, Any],
    ) -> LedgerReceipt:
        """Move amount to `to`. Raises LedgerError if the sender cannot pay."""
        self._enter("send_transaction")
        amount = Decimal(str(amount))
        if amount <= 0:
            raise LedgerError(f"Transaction amount must be positive, got {amount}")

        with self._lock:
            sender = payload.get("from") or self._current_address
            if not sender:
                raise LedgerError("No wallet connected")
            available = self._balances.get(sender, Decimal("0"))
            if available < amount:
                raise LedgerError(
                    f"Insufficient balance for {sender}: "
                    f"required {amount}, available {available}"
                )
            self._balances[sender] = available - amount
            self._balances[to] = self._balances.get(to, Decimal("0")) + amount

            now = datetime.now(timezone.utc)
            digest = Web3.keccak(
                text=f"{sender}:{to}:{amount}:{next(self._nonce)}:{now.isoformat()}"
            )
            transaction_id = Web3.to_hex(digest)
            self._transactions[transaction_id] = _SimulatedTransaction(
                sender=sender,
                recipient=to,
                amount=amount,
                payload=dict(payload),
                timestamp=now,
            )

        logger.debug("Ledger transfer %s: %s → %s (%s)", transaction_id, sender, to, amount)
        return LedgerReceipt(
            transaction_id=transaction_id,
            status=TransactionStatus.PENDING,
            timestamp=now,
        )

    def request_faucet(self, address: str) -> bool:
        """Credit the faucet amount once per address. False if already funded."""
        self._enter("request_faucet")
        with self._lock:
            if address in self._funded:
                return False
            self._funded.add(address)
            self._balances[address] = (
                self._balances.get(address, Decimal("0")) + self.faucet_amount
            )
        logger.info("Faucet credited %s to %s", self.faucet_amount, address)
        return True

    def get_transaction_status(self, transaction_id: str) -> LedgerStatus:
        """Each poll adds a confirmation until the transaction settles."""
        self._enter("get_transaction_status")
        with self._lock:
            tx = self._tx(transaction_id)
            if tx.failed:
                return LedgerStatus(TransactionStatus.FAILED, tx.confirmations)
            if tx.confirmations < self.confirmations_required:
                tx.confirmations += 1
            if tx.confirmations >= self.confirmations_required:
                return LedgerStatus(TransactionStatus.CONFIRMED, tx.confirmations)
            return LedgerStatus(TransactionStatus.PENDING, tx.confirmations)

    def _tx(self, transaction_id: str) -> _SimulatedTransaction:
        tx = self._transactions.get(transaction_id)
        if tx is None:
            raise LedgerError(f"Unknown transaction: {transaction_id}")
        return tx
