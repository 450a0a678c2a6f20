"""Tests for the simulated ledger client and the timeout/retry gateway."""

from decimal import Decimal

import pytest

from recyclemart.errors import LedgerError, LedgerTimeoutError, NoWalletFoundError
from recyclemart.ledger.client import ESCROW_ACCOUNT, SimulatedLedgerClient
from recyclemart.ledger.gateway import LedgerGateway
from recyclemart.models.wallet import TransactionStatus
from recyclemart.persistence.store import MemoryBackend


@pytest.fixture
def client() -> SimulatedLedgerClient:
    return SimulatedLedgerClient()


def _funded(client: SimulatedLedgerClient) -> str:
    address = client.create_wallet().address
    client.request_faucet(address)
    return address


class _ExplodingClient(SimulatedLedgerClient):
    def get_balance(self, address: str) -> Decimal:
        raise RuntimeError("socket closed")


class TestWallets:
    def test_create_wallet(self, client: SimulatedLedgerClient) -> None:
        info = client.create_wallet()
        assert info.address.startswith("0x")
        assert len(info.address) == 42
        assert info.balance == Decimal("0")
        assert info.mnemonic and len(info.mnemonic.split()) == 12

    def test_connect_existing_without_wallet(self, client: SimulatedLedgerClient) -> None:
        with pytest.raises(NoWalletFoundError):
            client.connect_existing()

    def test_connect_existing_finds_persisted_wallet(self) -> None:
        backend = MemoryBackend()
        created = SimulatedLedgerClient(backend=backend).create_wallet()
        info = SimulatedLedgerClient(backend=backend).connect_existing()
        assert info.address == created.address
        assert info.mnemonic is None

    def test_forget_wallet(self, client: SimulatedLedgerClient) -> None:
        client.create_wallet()
        client.forget_wallet()
        with pytest.raises(NoWalletFoundError):
            client.connect_existing()

    def test_initialize(self, client: SimulatedLedgerClient) -> None:
        assert client.initialize() is True


class TestFaucet:
    def test_credits_once(self, client: SimulatedLedgerClient) -> None:
        address = client.create_wallet().address
        assert client.request_faucet(address) is True
        assert client.request_faucet(address) is False
        assert client.get_balance(address) == Decimal("100.000")

    def test_unknown_address_has_zero_balance(self, client: SimulatedLedgerClient) -> None:
        assert client.get_balance("0xnobody") == Decimal("0.000")


class TestSend:
    def test_moves_funds(self, client: SimulatedLedgerClient) -> None:
        sender = _funded(client)
        receipt = client.send_transaction("0xbob", Decimal("12.5"), {})
        assert receipt.status == TransactionStatus.PENDING
        assert receipt.transaction_id.startswith("0x")
        assert len(receipt.transaction_id) == 66
        assert client.get_balance(sender) == Decimal("87.500")
        assert client.get_balance("0xbob") == Decimal("12.500")

    def test_payload_sender_overrides_current_wallet(
        self, client: SimulatedLedgerClient,
    ) -> None:
        client.request_faucet("0xposter")
        client.send_transaction(ESCROW_ACCOUNT, Decimal("5"), {"from": "0xposter"})
        assert client.get_balance("0xposter") == Decimal("95.000")
        assert client.get_balance(ESCROW_ACCOUNT) == Decimal("5.000")

    def test_insufficient_balance(self, client: SimulatedLedgerClient) -> None:
        client.create_wallet()
        with pytest.raises(LedgerError, match="Insufficient"):
            client.send_transaction("0xbob", Decimal("1"), {})

    def test_non_positive_amount(self, client: SimulatedLedgerClient) -> None:
        _funded(client)
        with pytest.raises(LedgerError):
            client.send_transaction("0xbob", Decimal("0"), {})

    def test_no_wallet(self, client: SimulatedLedgerClient) -> None:
        with pytest.raises(LedgerError, match="No wallet"):
            client.send_transaction("0xbob", Decimal("1"), {})

    def test_transaction_ids_unique(self, client: SimulatedLedgerClient) -> None:
        _funded(client)
        a = client.send_transaction("0xbob", Decimal("1"), {})
        b = client.send_transaction("0xbob", Decimal("1"), {})
        assert a.transaction_id != b.transaction_id


class TestTransactionStatus:
    def test_confirms_after_required_polls(self) -> None:
        client = SimulatedLedgerClient(confirmations_required=2)
        _funded(client)
        tx_id = client.send_transaction("0xbob", Decimal("1"), {}).transaction_id
        assert client.get_transaction_status(tx_id).status == TransactionStatus.PENDING
        status = client.get_transaction_status(tx_id)
        assert status.status == TransactionStatus.CONFIRMED
        assert status.confirmations == 2

    def test_marked_failed(self, client: SimulatedLedgerClient) -> None:
        _funded(client)
        tx_id = client.send_transaction("0xbob", Decimal("1"), {}).transaction_id
        client.mark_failed(tx_id)
        assert client.get_transaction_status(tx_id).status == TransactionStatus.FAILED

    def test_unknown_transaction(self, client: SimulatedLedgerClient) -> None:
        with pytest.raises(LedgerError, match="Unknown"):
            client.get_transaction_status("0xdead")


class TestFailureInjection:
    def test_fail_next_counts_down(self, client: SimulatedLedgerClient) -> None:
        client.fail_next("initialize", times=2)
        with pytest.raises(LedgerError):
            client.initialize()
        with pytest.raises(LedgerError):
            client.initialize()
        assert client.initialize() is True


class TestGatewayRetries:
    def test_read_retried_once(self, client: SimulatedLedgerClient) -> None:
        address = _funded(client)
        gateway = LedgerGateway(client)
        client.fail_next("get_balance")
        assert gateway.get_balance(address) == Decimal("100.000")
        gateway.shutdown()

    def test_read_fails_after_retry(self, client: SimulatedLedgerClient) -> None:
        gateway = LedgerGateway(client)
        client.fail_next("get_balance", times=2)
        with pytest.raises(LedgerError):
            gateway.get_balance("0xany")
        gateway.shutdown()

    def test_send_not_retried(self, client: SimulatedLedgerClient) -> None:
        sender = _funded(client)
        gateway = LedgerGateway(client)
        client.fail_next("send_transaction")
        with pytest.raises(LedgerError):
            gateway.send_transaction("0xbob", Decimal("1"), {})
        assert client.get_balance(sender) == Decimal("100.000")
        gateway.send_transaction("0xbob", Decimal("1"))
        assert client.get_balance(sender) == Decimal("99.000")
        gateway.shutdown()

    def test_faucet_not_retried(self, client: SimulatedLedgerClient) -> None:
        gateway = LedgerGateway(client)
        client.fail_next("request_faucet")
        with pytest.raises(LedgerError):
            gateway.request_faucet("0xalice")
        assert client.get_balance("0xalice") == Decimal("0.000")
        gateway.shutdown()


class TestGatewayErrors:
    def test_timeout(self) -> None:
        client = SimulatedLedgerClient(latency_seconds=0.5)
        gateway = LedgerGateway(client, timeout_seconds=0.05, read_retries=0)
        with pytest.raises(LedgerTimeoutError, match="did not respond"):
            gateway.get_balance("0xany")
        gateway.shutdown()

    def test_timeout_is_a_ledger_error(self) -> None:
        assert issubclass(LedgerTimeoutError, LedgerError)

    def test_unexpected_exception_wrapped(self) -> None:
        gateway = LedgerGateway(_ExplodingClient(), read_retries=0)
        with pytest.raises(LedgerError, match="socket closed"):
            gateway.get_balance("0xany")
        gateway.shutdown()

    def test_no_wallet_passes_through(self, client: SimulatedLedgerClient) -> None:
        gateway = LedgerGateway(client)
        with pytest.raises(NoWalletFoundError):
            gateway.connect_existing()
        gateway.shutdown()

    def test_exposes_client(self, client: SimulatedLedgerClient) -> None:
        gateway = LedgerGateway(client)
        assert gateway.client is client
        gateway.shutdown()
