"""Local persistent store — namespaced JSON collections over a key-value backend.

Layout (each value is a JSON document under "<prefix><name>"):
    meta          {"schema_version": N}
    jobs          list of Job
    users         map address → UserProfile
    transactions  list of TransactionRecord (append-only)
    stats         single PlatformStats record

The store is the single source of truth for all entities. Only the
service layer mutates it. Each collection is read, modified and written
back as a whole under a lock, so concurrent writers never interleave
partial updates.

Fail-closed: a store written with a different schema version refuses to
open rather than misreading records.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator, Optional, Protocol

from recyclemart.errors import RecordNotFoundError
from recyclemart.models.job import (
    ContactInfo,
    DisputeRecord,
    DisputeStatus,
    Job,
    JobStatus,
    MaterialCategory,
    PlatformDecision,
    PriceVerification,
    Urgency,
)
from recyclemart.models.profile import PlatformStats, UserProfile
from recyclemart.models.wallet import (
    TransactionKind,
    TransactionRecord,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

STORE_SCHEMA_VERSION = 1
COLLECTIONS = ("jobs", "users", "transactions", "stats")
_SNAPSHOT_NAMES = ("meta",) + COLLECTIONS


class KeyValueBackend(Protocol):
    """Durable string storage, the stand-in for browser local storage."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self) -> list[str]:
        ...


class MemoryBackend:
    """Process-local backend. Contents vanish with the process."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class FileBackend:
    """One JSON file per key inside a directory.

    Writes go to a temporary file first and are swapped in with
    os.replace, so a crash never leaves a half-written value.
    """

    def __init__(self, directory: Path) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self._dir / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp_name, self._path(key))
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self) -> list[str]:
        return [p.stem for p in self._dir.glob("*.json")]


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------

def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dec(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _parse_dec(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def job_to_dict(job: Job) -> dict[str, Any]:
    pv = job.price_verification
    dispute = job.dispute
    return {
        "job_id": job.job_id,
        "title": job.title,
        "description": job.description,
        "category": job.category.value,
        "weight_kg": str(job.weight_kg),
        "location": job.location,
        "photo_url": job.photo_url,
        "reward": str(job.reward),
        "poster": job.poster,
        "status": job.status.value,
        "collector": job.collector,
        "locked_amount": _dec(job.locked_amount),
        "urgency": job.urgency.value,
        "full_address": job.full_address,
        "contact": asdict(job.contact) if job.contact else None,
        "created_utc": _dt(job.created_utc),
        "updated_utc": _dt(job.updated_utc),
        "claimed_utc": _dt(job.claimed_utc),
        "completed_utc": _dt(job.completed_utc),
        "paid_utc": _dt(job.paid_utc),
        "escrow_tx_id": job.escrow_tx_id,
        "payment_tx_id": job.payment_tx_id,
        "payment_error": job.payment_error,
        "completion_proof": job.completion_proof,
        "price_verification": None if pv is None else {
            "original_weight_kg": str(pv.original_weight_kg),
            "verified_weight_kg": str(pv.verified_weight_kg),
            "original_price": str(pv.original_price),
            "verified_price": str(pv.verified_price),
            "change_percent": str(pv.change_percent),
            "significant_reduction": pv.significant_reduction,
            "reason": pv.reason,
            "verified_utc": _dt(pv.verified_utc),
        },
        "dispute": None if dispute is None else {
            "dispute_id": dispute.dispute_id,
            "reason": dispute.reason,
            "proposed_amount": str(dispute.proposed_amount),
            "reporter": dispute.reporter,
            "status": dispute.status.value,
            "submitted_utc": _dt(dispute.submitted_utc),
            "prior_status": dispute.prior_status.value if dispute.prior_status else None,
            "user_response": dispute.user_response,
            "escalated_utc": _dt(dispute.escalated_utc),
            "review_deadline_utc": _dt(dispute.review_deadline_utc),
            "platform_decision": (
                dispute.platform_decision.value if dispute.platform_decision else None
            ),
            "final_amount": _dec(dispute.final_amount),
            "resolved_utc": _dt(dispute.resolved_utc),
        },
    }


def job_from_dict(data: dict[str, Any]) -> Job:
    pv_data = data.get("price_verification")
    dispute_data = data.get("dispute")
    contact_data = data.get("contact")
    return Job(
        job_id=data["job_id"],
        title=data["title"],
        description=data["description"],
        category=MaterialCategory(data["category"]),
        weight_kg=Decimal(data["weight_kg"]),
        location=data["location"],
        photo_url=data["photo_url"],
        reward=Decimal(data["reward"]),
        poster=data["poster"],
        status=JobStatus(data["status"]),
        collector=data.get("collector"),
        locked_amount=_parse_dec(data.get("locked_amount")),
        urgency=Urgency(data.get("urgency", Urgency.MEDIUM.value)),
        full_address=data.get("full_address"),
        contact=ContactInfo(**contact_data) if contact_data else None,
        created_utc=_parse_dt(data.get("created_utc")),
        updated_utc=_parse_dt(data.get("updated_utc")),
        claimed_utc=_parse_dt(data.get("claimed_utc")),
        completed_utc=_parse_dt(data.get("completed_utc")),
        paid_utc=_parse_dt(data.get("paid_utc")),
        escrow_tx_id=data.get("escrow_tx_id"),
        payment_tx_id=data.get("payment_tx_id"),
        payment_error=data.get("payment_error"),
        completion_proof=data.get("completion_proof") or {},
        price_verification=None if not pv_data else PriceVerification(
            original_weight_kg=Decimal(pv_data["original_weight_kg"]),
            verified_weight_kg=Decimal(pv_data["verified_weight_kg"]),
            original_price=Decimal(pv_data["original_price"]),
            verified_price=Decimal(pv_data["verified_price"]),
            change_percent=Decimal(pv_data["change_percent"]),
            significant_reduction=pv_data["significant_reduction"],
            reason=pv_data.get("reason", ""),
            verified_utc=_parse_dt(pv_data.get("verified_utc")),
        ),
        dispute=None if not dispute_data else DisputeRecord(
            dispute_id=dispute_data["dispute_id"],
            reason=dispute_data["reason"],
            proposed_amount=Decimal(dispute_data["proposed_amount"]),
            reporter=dispute_data["reporter"],
            status=DisputeStatus(dispute_data["status"]),
            submitted_utc=_parse_dt(dispute_data.get("submitted_utc")),
            prior_status=(
                JobStatus(dispute_data["prior_status"])
                if dispute_data.get("prior_status") else None
            ),
            user_response=dispute_data.get("user_response"),
            escalated_utc=_parse_dt(dispute_data.get("escalated_utc")),
            review_deadline_utc=_parse_dt(dispute_data.get("review_deadline_utc")),
            platform_decision=(
                PlatformDecision(dispute_data["platform_decision"])
                if dispute_data.get("platform_decision") else None
            ),
            final_amount=_parse_dec(dispute_data.get("final_amount")),
            resolved_utc=_parse_dt(dispute_data.get("resolved_utc")),
        ),
    )


def profile_to_dict(profile: UserProfile) -> dict[str, Any]:
    return {
        "address": profile.address,
        "jobs_posted": profile.jobs_posted,
        "jobs_completed": profile.jobs_completed,
        "total_earned": str(profile.total_earned),
        "total_spent": str(profile.total_spent),
        "reputation_score": profile.reputation_score,
        "created_utc": _dt(profile.created_utc),
        "updated_utc": _dt(profile.updated_utc),
    }


def profile_from_dict(data: dict[str, Any]) -> UserProfile:
    return UserProfile(
        address=data["address"],
        jobs_posted=int(data.get("jobs_posted", 0)),
        jobs_completed=int(data.get("jobs_completed", 0)),
        total_earned=Decimal(data.get("total_earned", "0")),
        total_spent=Decimal(data.get("total_spent", "0")),
        reputation_score=int(data.get("reputation_score", 100)),
        created_utc=_parse_dt(data.get("created_utc")),
        updated_utc=_parse_dt(data.get("updated_utc")),
    )


def transaction_to_dict(record: TransactionRecord) -> dict[str, Any]:
    return {
        "tx_id": record.tx_id,
        "kind": record.kind.value,
        "sender": record.sender,
        "recipient": record.recipient,
        "amount": str(record.amount),
        "status": record.status.value,
        "timestamp_utc": _dt(record.timestamp_utc),
        "job_id": record.job_id,
    }


def transaction_from_dict(data: dict[str, Any]) -> TransactionRecord:
    return TransactionRecord(
        tx_id=data["tx_id"],
        kind=TransactionKind(data["kind"]),
        sender=data["sender"],
        recipient=data["recipient"],
        amount=Decimal(data["amount"]),
        status=TransactionStatus(data["status"]),
        timestamp_utc=_parse_dt(data["timestamp_utc"]),
        job_id=data.get("job_id"),
    )


def stats_to_dict(stats: PlatformStats) -> dict[str, Any]:
    return {
        "total_jobs": stats.total_jobs,
        "active_jobs": stats.active_jobs,
        "completed_today": stats.completed_today,
        "active_collectors": stats.active_collectors,
        "total_rewards_paid": str(stats.total_rewards_paid),
    }


def stats_from_dict(data: dict[str, Any]) -> PlatformStats:
    return PlatformStats(
        total_jobs=int(data.get("total_jobs", 0)),
        active_jobs=int(data.get("active_jobs", 0)),
        completed_today=int(data.get("completed_today", 0)),
        active_collectors=int(data.get("active_collectors", 0)),
        total_rewards_paid=Decimal(data.get("total_rewards_paid", "0")),
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class LocalStore:
    """CRUD over the four marketplace collections.

    Usage:
        store = LocalStore(FileBackend(Path("data")))
        store.save_job(job)
        job = store.get_job(job.job_id)
        store.append_transaction(record)
    """

    def __init__(
        self,
        backend: Optional[KeyValueBackend] = None,
        key_prefix: str = "recyclemart_",
    ) -> None:
        self._backend: KeyValueBackend = backend if backend is not None else MemoryBackend()
        self._prefix = key_prefix
        self._lock = threading.RLock()
        self._initialize()

    @property
    def key_prefix(self) -> str:
        return self._prefix

    # ------------------------------------------------------------------
    # Raw access
    # ------------------------------------------------------------------

    def _key(self, name: str) -> str:
        return self._prefix + name

    def _read(self, name: str, default: Any) -> Any:
        raw = self._backend.get(self._key(name))
        if raw is None:
            return default
        return json.loads(raw)

    def _write(self, name: str, value: Any) -> None:
        self._backend.set(
            self._key(name),
            json.dumps(value, sort_keys=True, ensure_ascii=False),
        )

    def _initialize(self) -> None:
        with self._lock:
            meta = self._read("meta", None)
            if meta is None:
                self._write("meta", {"schema_version": STORE_SCHEMA_VERSION})
            elif meta.get("schema_version") != STORE_SCHEMA_VERSION:
                raise ValueError(
                    f"Store schema version {meta.get('schema_version')} is not "
                    f"supported (expected {STORE_SCHEMA_VERSION})"
                )
            if self._read("jobs", None) is None:
                self._write("jobs", [])
            if self._read("users", None) is None:
                self._write("users", {})
            if self._read("transactions", None) is None:
                self._write("transactions", [])
            if self._read("stats", None) is None:
                self._write("stats", stats_to_dict(PlatformStats()))

    # ------------------------------------------------------------------
    # Grouped writes
    # ------------------------------------------------------------------

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Group writes: if the block raises, every collection is put back.

        Holds the store lock for the whole block, so no other writer
        interleaves with it.
        """
        with self._lock:
            saved = {name: self._backend.get(self._key(name)) for name in _SNAPSHOT_NAMES}
            try:
                yield
            except Exception:
                self._restore(saved)
                raise

    def _restore(self, saved: dict[str, Optional[str]]) -> None:
        for name, raw in saved.items():
            key = self._key(name)
            try:
                if self._backend.get(key) == raw:
                    continue
                if raw is None:
                    self._backend.delete(key)
                else:
                    self._backend.set(key, raw)
            except OSError as e:
                logger.error("Could not restore %s after a failed write: %s", key, e)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def save_job(self, job: Job) -> None:
        """Insert or replace a job by id."""
        with self._lock:
            jobs = self._read("jobs", [])
            encoded = job_to_dict(job)
            for i, existing in enumerate(jobs):
                if existing["job_id"] == job.job_id:
                    jobs[i] = encoded
                    break
            else:
                jobs.append(encoded)
            self._write("jobs", jobs)

    def get_job(self, job_id: str) -> Job:
        """Load a job. Raises RecordNotFoundError on a miss."""
        for data in self._read("jobs", []):
            if data["job_id"] == job_id:
                return job_from_dict(data)
        raise RecordNotFoundError(f"Job not found: {job_id}")

    def load_jobs(
        self,
        status: Optional[JobStatus] = None,
        poster: Optional[str] = None,
        collector: Optional[str] = None,
    ) -> list[Job]:
        jobs = [job_from_dict(d) for d in self._read("jobs", [])]
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        if poster is not None:
            jobs = [j for j in jobs if j.poster == poster]
        if collector is not None:
            jobs = [j for j in jobs if j.collector == collector]
        return jobs

    def search_jobs(self, query: str) -> list[Job]:
        """Case-insensitive match on title, description, category or location."""
        term = query.strip().lower()
        if not term:
            return self.load_jobs()
        return [
            j for j in self.load_jobs()
            if term in j.title.lower()
            or term in j.description.lower()
            or term in j.category.value
            or term in j.location.lower()
        ]

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def get_user(self, address: str) -> Optional[UserProfile]:
        data = self._read("users", {}).get(address)
        return profile_from_dict(data) if data else None

    def save_user(self, profile: UserProfile) -> None:
        with self._lock:
            users = self._read("users", {})
            users[profile.address] = profile_to_dict(profile)
            self._write("users", users)

    def load_users(self) -> dict[str, UserProfile]:
        return {
            address: profile_from_dict(data)
            for address, data in self._read("users", {}).items()
        }

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def append_transaction(self, record: TransactionRecord) -> None:
        """Append a transaction record. Raises ValueError on a duplicate id."""
        with self._lock:
            transactions = self._read("transactions", [])
            if any(t["tx_id"] == record.tx_id for t in transactions):
                raise ValueError(f"Duplicate transaction ID: {record.tx_id}")
            transactions.append(transaction_to_dict(record))
            self._write("transactions", transactions)

    def get_transaction(self, tx_id: str) -> TransactionRecord:
        for data in self._read("transactions", []):
            if data["tx_id"] == tx_id:
                return transaction_from_dict(data)
        raise RecordNotFoundError(f"Transaction not found: {tx_id}")

    def update_transaction_status(
        self, tx_id: str, status: TransactionStatus,
    ) -> TransactionRecord:
        """Change the status of an existing record; nothing else may change."""
        with self._lock:
            transactions = self._read("transactions", [])
            for i, data in enumerate(transactions):
                if data["tx_id"] == tx_id:
                    record = transaction_from_dict(data)
                    record.transition_to(status)
                    transactions[i] = transaction_to_dict(record)
                    self._write("transactions", transactions)
                    return record
        raise RecordNotFoundError(f"Transaction not found: {tx_id}")

    def load_transactions(
        self,
        address: Optional[str] = None,
        kind: Optional[TransactionKind] = None,
    ) -> list[TransactionRecord]:
        records = [transaction_from_dict(d) for d in self._read("transactions", [])]
        if address is not None:
            records = [r for r in records if address in (r.sender, r.recipient)]
        if kind is not None:
            records = [r for r in records if r.kind == kind]
        return records

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def load_stats(self) -> PlatformStats:
        return stats_from_dict(self._read("stats", {}))

    def save_stats(self, stats: PlatformStats) -> None:
        with self._lock:
            self._write("stats", stats_to_dict(stats))

    # ------------------------------------------------------------------
    # Administrative
    # ------------------------------------------------------------------

    def clear_all(self) -> None:
        """Wipe every collection under this prefix and re-initialise."""
        with self.atomic():
            for key in self._backend.keys():
                if key.startswith(self._prefix):
                    self._backend.delete(key)
            self._initialize()
        logger.info("Cleared all collections under prefix %s", self._prefix)

    def export_data(self) -> dict[str, Any]:
        with self._lock:
            exported: dict[str, Any] = {"schema_version": STORE_SCHEMA_VERSION}
            for name in COLLECTIONS:
                exported[name] = self._read(name, None)
            return exported

    def import_data(self, data: dict[str, Any]) -> None:
        """Replace the collections present in data.

        Raises ValueError if data declares a different schema version.
        """
        version = data.get("schema_version", STORE_SCHEMA_VERSION)
        if version != STORE_SCHEMA_VERSION:
            raise ValueError(
                f"Cannot import schema version {version} "
                f"(expected {STORE_SCHEMA_VERSION})"
            )
        with self.atomic():
            # Decode first so a malformed payload leaves the store untouched
            if data.get("jobs") is not None:
                [job_from_dict(d) for d in data["jobs"]]
            if data.get("users") is not None:
                [profile_from_dict(d) for d in data["users"].values()]
            if data.get("transactions") is not None:
                [transaction_from_dict(d) for d in data["transactions"]]
            for name in COLLECTIONS:
                if data.get(name) is not None:
                    self._write(name, data[name])
