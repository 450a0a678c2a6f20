"""Transaction monitor — polls the ledger until a transaction settles.

Each watched transaction gets its own periodic task: every
tx_poll_seconds (5) the ledger is asked for the status, until the
transaction is confirmed or failed, or tx_poll_ceiling_seconds (300)
have passed. A transaction still unresolved at the ceiling stays
pending; it is never marked failed just because the ledger was slow.

Once a poll stops, the transaction leaves the watch table. Its last
status stays answerable from a bounded table of recent results.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Callable, Optional

from recyclemart.config import MarketplaceConfig
from recyclemart.errors import LedgerError
from recyclemart.ledger.gateway import LedgerGateway
from recyclemart.models.wallet import TransactionStatus
from recyclemart.scheduling import PeriodicTask, StopReason, TaskScheduler

logger = logging.getLogger(__name__)

StatusListener = Callable[[str, TransactionStatus], None]

DEFAULT_RECENT_LIMIT = 256


def _task_name(tx_id: str) -> str:
    return f"tx:{tx_id}"


class TransactionMonitor:
    """Watches submitted transactions and reports their final status.

    Usage:
        monitor = TransactionMonitor(gateway, config)
        monitor.subscribe(lambda tx_id, status: print(tx_id, status))
        monitor.watch(receipt.transaction_id)
    """

    def __init__(
        self,
        ledger: LedgerGateway,
        config: Optional[MarketplaceConfig] = None,
        scheduler: Optional[TaskScheduler] = None,
        recent_limit: int = DEFAULT_RECENT_LIMIT,
    ) -> None:
        config = config or MarketplaceConfig()
        self._ledger = ledger
        self.poll_seconds = config.tx_poll_seconds
        self.ceiling_seconds = config.tx_poll_ceiling_seconds
        self.recent_limit = recent_limit
        self._scheduler = scheduler or TaskScheduler()
        self._watching: dict[str, TransactionStatus] = {}
        self._recent: OrderedDict[str, TransactionStatus] = OrderedDict()
        self._listeners: list[StatusListener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register listener for settled transactions; returns an unsubscribe."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def watch(self, tx_id: str) -> PeriodicTask:
        """Start polling tx_id. Watching the same id again restarts its poll."""
        with self._lock:
            self._recent.pop(tx_id, None)
            self._watching.setdefault(tx_id, TransactionStatus.PENDING)
        return self._scheduler.schedule(
            _task_name(tx_id),
            self.poll_seconds,
            lambda: self._poll(tx_id),
            max_duration=self.ceiling_seconds,
            on_stop=lambda task: self._stopped(tx_id, task),
        )

    def status(self, tx_id: str) -> Optional[TransactionStatus]:
        """Last known status of a watched or recently watched transaction."""
        with self._lock:
            if tx_id in self._watching:
                return self._watching[tx_id]
            return self._recent.get(tx_id)

    def watching(self) -> list[str]:
        """Transactions whose poll is still running."""
        with self._lock:
            return list(self._watching)

    def task(self, tx_id: str) -> Optional[PeriodicTask]:
        return self._scheduler.get(_task_name(tx_id))

    def stop(self, tx_id: str) -> None:
        self._scheduler.cancel(_task_name(tx_id))

    def stop_all(self) -> None:
        self._scheduler.cancel_all()

    def _poll(self, tx_id: str) -> bool:
        try:
            result = self._ledger.get_transaction_status(tx_id)
        except LedgerError as e:
            logger.warning("Status poll for %s failed: %s", tx_id, e)
            return False
        if result.status == TransactionStatus.PENDING:
            return False

        with self._lock:
            self._watching[tx_id] = result.status
            listeners = list(self._listeners)
        for listener in listeners:
            listener(tx_id, result.status)
        return True

    def _stopped(self, tx_id: str, task: PeriodicTask) -> None:
        if task.stop_reason == StopReason.CEILING:
            logger.warning(
                "Transaction %s unresolved after %ss; left pending",
                tx_id, self.ceiling_seconds,
            )
        name = _task_name(tx_id)
        with self._lock:
            current = self._scheduler.get(name)
            # A newer watch of the same id owns the entry
            if current is not None and current is not task:
                return
            status = self._watching.pop(tx_id, None)
            if status is not None:
                self._recent[tx_id] = status
                while len(self._recent) > self.recent_limit:
                    self._recent.popitem(last=False)
        self._scheduler.discard(name, task)
