"""Wallet session store — the current user's connection, address and balance.

Session lifecycle:
    disconnected → connect("new" | "existing") → connected → disconnect()

While connected, the balance is polled every balance_poll_seconds and
listeners are notified only when the value actually changed.

Stale-result guard: every call captures the session generation when it
starts. disconnect() and each new connect() bump the generation, and a
ledger answer that arrives under an older generation is dropped instead
of being written into the session. The ledger call itself is not
cancelled; only the reaction to it is.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from recyclemart.config import MarketplaceConfig
from recyclemart.errors import LedgerError, NoWalletFoundError
from recyclemart.identity.registry import IdentityRegistry
from recyclemart.ledger.gateway import LedgerGateway
from recyclemart.models.wallet import (
    TransactionRecord,
    TransactionRequest,
    WalletMode,
    WalletSession,
)
from recyclemart.persistence.store import KeyValueBackend, LocalStore, MemoryBackend
from recyclemart.scheduling import TaskScheduler
from recyclemart.wallet.monitor import TransactionMonitor

logger = logging.getLogger(__name__)

SessionListener = Callable[[WalletSession], None]

_TOKEN_PLACES = Decimal("0.001")
_BALANCE_TASK = "balance"


def _format_balance(balance: Decimal) -> str:
    return str(Decimal(str(balance)).quantize(_TOKEN_PLACES))


class WalletSessionStore:
    """Owns the WalletSession and keeps it in step with the ledger.

    Usage:
        wallet = WalletSessionStore(gateway, config, registry=registry)
        wallet.subscribe(render)
        session = wallet.connect(WalletMode.NEW)
        record = wallet.send(TransactionRequest(to=bob, amount=Decimal("2")))
        wallet.disconnect()
    """

    def __init__(
        self,
        ledger: LedgerGateway,
        config: Optional[MarketplaceConfig] = None,
        registry: Optional[IdentityRegistry] = None,
        backend: Optional[KeyValueBackend] = None,
        store: Optional[LocalStore] = None,
        monitor: Optional[TransactionMonitor] = None,
        scheduler: Optional[TaskScheduler] = None,
    ) -> None:
        self._config = config or MarketplaceConfig()
        self._ledger = ledger
        self._registry = registry
        self._backend: KeyValueBackend = backend if backend is not None else MemoryBackend()
        self._session_key = self._config.key_prefix + "session"
        self._store = store
        self._monitor = monitor
        self._scheduler = scheduler or TaskScheduler()

        self._lock = threading.RLock()
        self._generation = 0
        self._session = WalletSession(network=self._config.network)
        self._mnemonic: Optional[str] = None
        self._listeners: list[SessionListener] = []

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def session(self) -> WalletSession:
        """A snapshot of the current session."""
        with self._lock:
            return replace(self._session)

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def mnemonic(self) -> Optional[str]:
        """Recovery phrase of a wallet created in this session, if any."""
        return self._mnemonic

    @property
    def is_polling(self) -> bool:
        task = self._scheduler.get(_BALANCE_TASK)
        return task is not None and task.is_running

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register listener for session changes; returns an unsubscribe."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self, mode: WalletMode | str) -> WalletSession:
        """Connect a new or previously created wallet.

        "new" allocates an address, requests the one-time faucet credit
        and creates the holder's identity. "existing" reconnects the
        persisted wallet or raises NoWalletFoundError.
        Raises LedgerError if the ledger fails or times out.
        """
        wallet_mode = WalletMode(mode)
        if self._session.connected:
            self.disconnect()

        with self._lock:
            self._generation += 1
            generation = self._generation

        if wallet_mode == WalletMode.NEW:
            info = self._ledger.create_wallet()
            if not self._ledger.request_faucet(info.address):
                logger.info("Faucet already used by %s", info.address)
            balance = self._ledger.get_balance(info.address)
            if self._registry is not None:
                self._registry.ensure_identity(info.address)
        else:
            info = self._ledger.connect_existing()
            balance = self._ledger.get_balance(info.address)

        with self._lock:
            if generation != self._generation:
                logger.debug("Dropping stale connect result for %s", info.address)
                return replace(self._session)
            self._session = WalletSession(
                connected=True,
                address=info.address,
                balance=_format_balance(balance),
                network=self._config.network,
                mode=wallet_mode,
                is_new_user=wallet_mode == WalletMode.NEW,
            )
            self._mnemonic = info.mnemonic
            session = replace(self._session)

        self._persist_session(session)
        self._scheduler.schedule(
            _BALANCE_TASK,
            self._config.balance_poll_seconds,
            lambda: self._poll_balance(generation),
        )
        logger.info("Wallet %s connected (%s)", session.address, wallet_mode.value)
        self._notify(session)
        return session

    def disconnect(self) -> None:
        """Stop polling and clear the session. Late ledger answers are dropped."""
        with self._lock:
            self._generation += 1
            was_connected = self._session.connected
            self._session = WalletSession(network=self._config.network)
            self._mnemonic = None
            session = replace(self._session)
        self._scheduler.cancel(_BALANCE_TASK)
        self._backend.delete(self._session_key)
        if was_connected:
            logger.info("Wallet disconnected")
            self._notify(session)

    def restore(self) -> WalletSession:
        """Rebuild the session persisted by an earlier process, if any."""
        raw = self._backend.get(self._session_key)
        if raw is None:
            return self.session
        try:
            return self.connect(WalletMode.EXISTING)
        except NoWalletFoundError:
            logger.warning("Persisted session has no wallet behind it; clearing")
            self._backend.delete(self._session_key)
            return self.session

    def close(self) -> None:
        """Tear down: disconnect and stop every background task."""
        self.disconnect()
        self._scheduler.cancel_all()

    # ------------------------------------------------------------------
    # Balance and transfers
    # ------------------------------------------------------------------

    def refresh_balance(self) -> Decimal:
        """Fetch the balance; listeners hear about it only if it changed.

        Raises NoWalletFoundError when disconnected, LedgerError on ledger
        failure.
        """
        with self._lock:
            if not self._session.connected:
                raise NoWalletFoundError("No wallet connected")
            generation = self._generation
            address = self._session.address
        balance = self._ledger.get_balance(address)
        self._apply_balance(generation, balance)
        return balance

    def send(self, request: TransactionRequest) -> TransactionRecord:
        """Submit a transfer from the connected wallet. Never retried.

        Raises NoWalletFoundError when disconnected, ValueError on a
        non-positive amount, LedgerError if the ledger rejects or times out.
        """
        with self._lock:
            if not self._session.connected:
                raise NoWalletFoundError("No wallet connected")
            generation = self._generation
            sender = self._session.address
        amount = Decimal(str(request.amount))
        if amount <= 0:
            raise ValueError(f"Transfer amount must be positive, got {amount}")

        payload = dict(request.payload)
        payload.update({"from": sender, "kind": request.kind.value})
        if request.job_id is not None:
            payload["job_id"] = request.job_id
        receipt = self._ledger.send_transaction(request.to, amount, payload)

        record = TransactionRecord(
            tx_id=receipt.transaction_id,
            kind=request.kind,
            sender=sender,
            recipient=request.to,
            amount=amount,
            status=receipt.status,
            timestamp_utc=receipt.timestamp,
            job_id=request.job_id,
        )
        if self._store is not None:
            self._store.append_transaction(record)
        if self._monitor is not None:
            self._monitor.watch(record.tx_id)

        if generation == self._generation:
            try:
                self.refresh_balance()
            except (LedgerError, NoWalletFoundError) as e:
                logger.warning("Balance refresh after send failed: %s", e)
        return record

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _poll_balance(self, generation: int) -> bool:
        if generation != self._generation:
            return True
        try:
            self.refresh_balance()
        except NoWalletFoundError:
            return True
        except LedgerError as e:
            logger.warning("Balance poll failed: %s", e)
        return False

    def _apply_balance(self, generation: int, balance: Decimal) -> bool:
        formatted = _format_balance(balance)
        with self._lock:
            if generation != self._generation:
                logger.debug("Dropping stale balance %s", formatted)
                return False
            if formatted == self._session.balance:
                return False
            self._session.balance = formatted
            session = replace(self._session)
        self._notify(session)
        return True

    def _persist_session(self, session: WalletSession) -> None:
        self._backend.set(self._session_key, json.dumps({
            "address": session.address,
            "network": session.network,
            "mode": session.mode.value if session.mode else None,
            "connected_utc": datetime.now(timezone.utc).isoformat(),
        }))

    def _notify(self, session: WalletSession) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(replace(session))
