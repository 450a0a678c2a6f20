"""Ledger gateway — bounded waits and retry policy around a LedgerClient.

Every call runs on a worker thread and is abandoned after
timeout_seconds; the caller gets LedgerTimeoutError instead of hanging.
An abandoned call may still finish on the ledger side; callers that care
about late results guard against them (see WalletSessionStore).

Retry policy:
- Idempotent reads (balance, transaction status) are retried once.
- Mutating calls (sends, faucet, wallet creation) are never retried, so
  a failed send surfaces as failed and is not resubmitted.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from decimal import Decimal
from typing import Any, Callable, Optional, TypeVar

from recyclemart.errors import LedgerError, LedgerTimeoutError, NoWalletFoundError
from recyclemart.ledger.client import LedgerClient
from recyclemart.models.wallet import LedgerReceipt, LedgerStatus, WalletInfo

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LedgerGateway:
    """Wraps a LedgerClient with timeouts and error normalisation.

    Usage:
        gateway = LedgerGateway(SimulatedLedgerClient(), timeout_seconds=15)
        balance = gateway.get_balance(address)
        receipt = gateway.send_transaction(to, amount, {"job_id": job_id})
    """

    def __init__(
        self,
        client: LedgerClient,
        timeout_seconds: float = 15.0,
        read_retries: int = 1,
        max_workers: int = 4,
    ) -> None:
        self._client = client
        self.timeout_seconds = timeout_seconds
        self.read_retries = read_retries
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="ledger",
        )

    @property
    def client(self) -> LedgerClient:
        return self._client

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Protocol passthroughs
    # ------------------------------------------------------------------

    def initialize(self) -> bool:
        return self._call("initialize", self._client.initialize, idempotent=True)

    def create_wallet(self) -> WalletInfo:
        return self._call("create_wallet", self._client.create_wallet)

    def connect_existing(self) -> WalletInfo:
        return self._call("connect_existing", self._client.connect_existing)

    def get_balance(self, address: str) -> Decimal:
        return self._call(
            "get_balance", self._client.get_balance, address, idempotent=True,
        )

    def send_transaction(
        self,
        to: str,
        amount: Decimal,
        payload: Optional[dict[str, Any]] = None,
    ) -> LedgerReceipt:
        return self._call(
            "send_transaction",
            self._client.send_transaction,
            to,
            amount,
            dict(payload or {}),
        )

    def request_faucet(self, address: str) -> bool:
        return self._call("request_faucet", self._client.request_faucet, address)

    def get_transaction_status(self, transaction_id: str) -> LedgerStatus:
        return self._call(
            "get_transaction_status",
            self._client.get_transaction_status,
            transaction_id,
            idempotent=True,
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _call(
        self,
        operation: str,
        fn: Callable[..., T],
        *args: Any,
        idempotent: bool = False,
    ) -> T:
        attempts = 1 + (self.read_retries if idempotent else 0)
        attempt = 1
        while True:
            try:
                return self._call_once(operation, fn, *args)
            except LedgerError as exc:
                if attempt >= attempts:
                    raise
                logger.warning(
                    "Ledger %s failed (attempt %d/%d), retrying: %s",
                    operation, attempt, attempts, exc,
                )
                attempt += 1

    def _call_once(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            raise LedgerTimeoutError(
                f"Ledger {operation} did not respond within {self.timeout_seconds}s"
            ) from None
        except (LedgerError, NoWalletFoundError):
            raise
        except Exception as exc:
            raise LedgerError(f"Ledger {operation} failed: {exc}") from exc
