"""Tests for the wallet session store and the transaction monitor."""

import threading
import time
from decimal import Decimal

import pytest

from recyclemart.config import MarketplaceConfig
from recyclemart.errors import NoWalletFoundError
from recyclemart.identity.registry import IdentityRegistry
from recyclemart.ledger.client import SimulatedLedgerClient
from recyclemart.ledger.gateway import LedgerGateway
from recyclemart.models.wallet import (
    TransactionKind,
    TransactionRequest,
    TransactionStatus,
    WalletMode,
    WalletSession,
)
from recyclemart.persistence.store import LocalStore, MemoryBackend
from recyclemart.scheduling import StopReason
from recyclemart.wallet.monitor import TransactionMonitor
from recyclemart.wallet.session import WalletSessionStore


def _fast_config(**overrides) -> MarketplaceConfig:
    values = dict(
        balance_poll_seconds=0.02,
        tx_poll_seconds=0.01,
        tx_poll_ceiling_seconds=2.0,
    )
    values.update(overrides)
    return MarketplaceConfig().with_overrides(**values)


def _wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def _fund(client: SimulatedLedgerClient, address: str, amount: str) -> None:
    client.request_faucet("0xbenefactor")
    client.send_transaction(address, Decimal(amount), {"from": "0xbenefactor"})


class _GatedGateway(LedgerGateway):
    """Gateway whose balance reads can be held until released."""

    def __init__(self, client: SimulatedLedgerClient) -> None:
        super().__init__(client)
        self.hold = False
        self.entered = threading.Event()
        self.release = threading.Event()

    def get_balance(self, address: str) -> Decimal:
        if self.hold:
            self.entered.set()
            self.release.wait(2.0)
        return super().get_balance(address)


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def client(backend: MemoryBackend) -> SimulatedLedgerClient:
    return SimulatedLedgerClient(backend=backend)


@pytest.fixture
def gateway(client: SimulatedLedgerClient):
    gateway = LedgerGateway(client, timeout_seconds=2.0)
    yield gateway
    gateway.shutdown()


@pytest.fixture
def registry() -> IdentityRegistry:
    return IdentityRegistry()


@pytest.fixture
def wallet(gateway: LedgerGateway, registry: IdentityRegistry, backend: MemoryBackend):
    wallet = WalletSessionStore(gateway, _fast_config(), registry=registry, backend=backend)
    yield wallet
    wallet.close()


class TestConnect:
    def test_new_wallet(self, wallet: WalletSessionStore, registry: IdentityRegistry) -> None:
        seen: list[WalletSession] = []
        wallet.subscribe(seen.append)
        session = wallet.connect("new")
        assert session.connected
        assert session.address.startswith("0x")
        assert session.balance == "100.000"
        assert session.mode == WalletMode.NEW
        assert session.is_new_user
        assert wallet.mnemonic is not None
        assert registry.has_identity(session.address)
        assert [s.connected for s in seen] == [True]

    def test_existing_without_wallet(self, wallet: WalletSessionStore) -> None:
        with pytest.raises(NoWalletFoundError):
            wallet.connect(WalletMode.EXISTING)
        assert not wallet.session.connected
        assert not wallet.is_polling

    def test_existing_wallet_reconnects(
        self, wallet: WalletSessionStore, gateway: LedgerGateway, backend: MemoryBackend,
    ) -> None:
        created = wallet.connect(WalletMode.NEW)
        wallet.disconnect()

        other = WalletSessionStore(gateway, _fast_config(), backend=backend)
        session = other.connect(WalletMode.EXISTING)
        assert session.address == created.address
        assert session.balance == "100.000"
        assert not session.is_new_user
        assert other.mnemonic is None
        other.close()

    def test_reconnect_replaces_session(self, wallet: WalletSessionStore) -> None:
        first = wallet.connect(WalletMode.NEW)
        generation = wallet.generation
        second = wallet.connect(WalletMode.NEW)
        assert second.address != first.address
        assert wallet.generation > generation

    def test_unknown_mode(self, wallet: WalletSessionStore) -> None:
        with pytest.raises(ValueError):
            wallet.connect("borrowed")


class TestDisconnect:
    def test_clears_session_and_stops_polling(
        self, wallet: WalletSessionStore, backend: MemoryBackend,
    ) -> None:
        wallet.connect(WalletMode.NEW)
        assert wallet.is_polling
        assert backend.get("recyclemart_session") is not None

        seen: list[WalletSession] = []
        wallet.subscribe(seen.append)
        wallet.disconnect()
        assert not wallet.is_polling
        assert wallet.session == WalletSession()
        assert wallet.mnemonic is None
        assert backend.get("recyclemart_session") is None
        assert [s.connected for s in seen] == [False]

    def test_disconnect_when_idle_is_silent(self, wallet: WalletSessionStore) -> None:
        seen: list[WalletSession] = []
        wallet.subscribe(seen.append)
        wallet.disconnect()
        assert seen == []

    def test_unsubscribe(self, wallet: WalletSessionStore) -> None:
        seen: list[WalletSession] = []
        unsubscribe = wallet.subscribe(seen.append)
        unsubscribe()
        wallet.connect(WalletMode.NEW)
        assert seen == []


class TestBalance:
    def test_notifies_only_on_change(
        self, gateway: LedgerGateway, client: SimulatedLedgerClient,
    ) -> None:
        wallet = WalletSessionStore(gateway, _fast_config(balance_poll_seconds=60))
        session = wallet.connect(WalletMode.NEW)
        seen: list[WalletSession] = []
        wallet.subscribe(seen.append)

        wallet.refresh_balance()
        wallet.refresh_balance()
        assert seen == []

        _fund(client, session.address, "5")
        assert wallet.refresh_balance() == Decimal("105.000")
        assert [s.balance for s in seen] == ["105.000"]
        wallet.close()

    def test_polling_picks_up_changes(
        self, wallet: WalletSessionStore, client: SimulatedLedgerClient,
    ) -> None:
        session = wallet.connect(WalletMode.NEW)
        _fund(client, session.address, "2.5")
        assert _wait_until(lambda: wallet.session.balance == "102.500")

    def test_refresh_when_disconnected(self, wallet: WalletSessionStore) -> None:
        with pytest.raises(NoWalletFoundError):
            wallet.refresh_balance()

    def test_stale_balance_dropped(self, client: SimulatedLedgerClient) -> None:
        gateway = _GatedGateway(client)
        wallet = WalletSessionStore(gateway, _fast_config(balance_poll_seconds=60))
        session = wallet.connect(WalletMode.NEW)
        _fund(client, session.address, "7")

        seen: list[WalletSession] = []
        wallet.subscribe(seen.append)
        gateway.hold = True
        worker = threading.Thread(target=wallet.refresh_balance)
        worker.start()
        assert gateway.entered.wait(2.0)

        wallet.disconnect()
        gateway.release.set()
        worker.join(2.0)

        assert wallet.session.balance == "0"
        assert [s.connected for s in seen] == [False]
        wallet.close()
        gateway.shutdown()


class TestSend:
    def test_transfer(
        self, gateway: LedgerGateway, client: SimulatedLedgerClient,
    ) -> None:
        store = LocalStore(MemoryBackend())
        wallet = WalletSessionStore(gateway, _fast_config(), store=store)
        session = wallet.connect(WalletMode.NEW)

        record = wallet.send(TransactionRequest(
            to="0xbob", amount=Decimal("2"), kind=TransactionKind.TRANSFER, job_id="job-1",
        ))
        assert record.sender == session.address
        assert record.status == TransactionStatus.PENDING
        assert record.job_id == "job-1"
        assert store.get_transaction(record.tx_id).amount == Decimal("2")
        assert wallet.session.balance == "98.000"
        assert client.get_balance("0xbob") == Decimal("2.000")
        wallet.close()

    def test_watched_by_monitor(self, gateway: LedgerGateway) -> None:
        config = _fast_config()
        monitor = TransactionMonitor(gateway, config)
        wallet = WalletSessionStore(gateway, config, monitor=monitor)
        wallet.connect(WalletMode.NEW)
        record = wallet.send(TransactionRequest(to="0xbob", amount=Decimal("1")))
        assert _wait_until(lambda: monitor.status(record.tx_id) == TransactionStatus.CONFIRMED)
        monitor.stop_all()
        wallet.close()

    def test_non_positive_amount(self, wallet: WalletSessionStore) -> None:
        wallet.connect(WalletMode.NEW)
        with pytest.raises(ValueError):
            wallet.send(TransactionRequest(to="0xbob", amount=Decimal("0")))

    def test_requires_connection(self, wallet: WalletSessionStore) -> None:
        with pytest.raises(NoWalletFoundError):
            wallet.send(TransactionRequest(to="0xbob", amount=Decimal("1")))


class TestRestore:
    def test_restores_persisted_session(
        self, wallet: WalletSessionStore, gateway: LedgerGateway, backend: MemoryBackend,
    ) -> None:
        created = wallet.connect(WalletMode.NEW)

        restored = WalletSessionStore(gateway, _fast_config(), backend=backend)
        session = restored.restore()
        assert session.connected
        assert session.address == created.address
        restored.close()

    def test_nothing_to_restore(self, wallet: WalletSessionStore) -> None:
        assert not wallet.restore().connected

    def test_persisted_session_without_wallet(
        self,
        wallet: WalletSessionStore,
        gateway: LedgerGateway,
        client: SimulatedLedgerClient,
        backend: MemoryBackend,
    ) -> None:
        wallet.connect(WalletMode.NEW)
        client.forget_wallet()

        restored = WalletSessionStore(gateway, _fast_config(), backend=backend)
        assert not restored.restore().connected
        assert backend.get("recyclemart_session") is None


class TestTransactionMonitor:
    def _submit(self, client: SimulatedLedgerClient) -> str:
        client.request_faucet("0xalice")
        return client.send_transaction("0xbob", Decimal("1"), {"from": "0xalice"}).transaction_id

    def test_reports_confirmation_once(self, gateway: LedgerGateway) -> None:
        gateway.client.confirmations_required = 3
        tx_id = self._submit(gateway.client)
        monitor = TransactionMonitor(gateway, _fast_config())
        seen: list = []
        monitor.subscribe(lambda tx, status: seen.append((tx, status)))

        task = monitor.watch(tx_id)
        task.join(2.0)
        assert task.stop_reason == StopReason.COMPLETED
        assert monitor.status(tx_id) == TransactionStatus.CONFIRMED
        assert seen == [(tx_id, TransactionStatus.CONFIRMED)]

    def test_reports_failure(self, gateway: LedgerGateway) -> None:
        tx_id = self._submit(gateway.client)
        gateway.client.mark_failed(tx_id)
        monitor = TransactionMonitor(gateway, _fast_config())
        monitor.watch(tx_id).join(2.0)
        assert monitor.status(tx_id) == TransactionStatus.FAILED

    def test_ceiling_leaves_pending(self, gateway: LedgerGateway) -> None:
        gateway.client.confirmations_required = 10_000
        tx_id = self._submit(gateway.client)
        monitor = TransactionMonitor(gateway, _fast_config(tx_poll_ceiling_seconds=0.1))
        seen: list = []
        monitor.subscribe(lambda tx, status: seen.append(status))

        task = monitor.watch(tx_id)
        task.join(2.0)
        assert task.stop_reason == StopReason.CEILING
        assert monitor.status(tx_id) == TransactionStatus.PENDING
        assert seen == []

    def test_ledger_errors_retried_next_tick(self, gateway: LedgerGateway) -> None:
        tx_id = self._submit(gateway.client)
        gateway.client.fail_next("get_transaction_status", times=2)
        monitor = TransactionMonitor(gateway, _fast_config())
        task = monitor.watch(tx_id)
        task.join(2.0)
        assert task.ticks == 2
        assert monitor.status(tx_id) == TransactionStatus.CONFIRMED

    def test_stop(self, gateway: LedgerGateway) -> None:
        gateway.client.confirmations_required = 10_000
        tx_id = self._submit(gateway.client)
        monitor = TransactionMonitor(gateway, _fast_config())
        task = monitor.watch(tx_id)
        monitor.stop(tx_id)
        assert not task.is_running
        assert task.stop_reason == StopReason.CANCELLED
        assert monitor.task(tx_id) is None

    def test_settled_transactions_leave_watch_table(self, gateway: LedgerGateway) -> None:
        monitor = TransactionMonitor(gateway, _fast_config())
        tx_ids = [self._submit(gateway.client) for _ in range(3)]
        for task in [monitor.watch(tx_id) for tx_id in tx_ids]:
            task.join(2.0)
        assert monitor.watching() == []
        assert all(monitor.task(tx_id) is None for tx_id in tx_ids)
        assert monitor.status(tx_ids[-1]) == TransactionStatus.CONFIRMED

    def test_recent_results_bounded(self, gateway: LedgerGateway) -> None:
        monitor = TransactionMonitor(gateway, _fast_config(), recent_limit=1)
        first = self._submit(gateway.client)
        second = self._submit(gateway.client)
        monitor.watch(first).join(2.0)
        monitor.watch(second).join(2.0)
        assert monitor.status(first) is None
        assert monitor.status(second) == TransactionStatus.CONFIRMED
