"""Marketplace service — unified facade for the recycling job market.

This is the primary interface for programmatic access to the
marketplace. It orchestrates:
- Job lifecycle (create, claim, complete, dispute, release payment)
- Reward pricing and completion-time price verification
- Ledger movements (escrow lock at claim, payment at release)
- User profiles, platform stats and identity/reputation updates
- Persistence (local store, optional audit event log)

All operations return a ServiceResult. Expected business failures
(bad input, illegal transitions, lost claim races, ledger outages) are
reported through ServiceResult.error_kind and never raised.

Write order: ledger transfer, then the store and registry changes as one
all-or-nothing group, then the audit events. A failed store write undoes
the whole group and the operation fails. A failed audit append after a
successful write is only a warning, since the store already holds the
change. Money already moved is never left unaccounted for: a failed
claim refunds the escrow lock, and a payment whose bookkeeping failed is
remembered so that retrying the release records it without paying twice.

Payment policy: release is explicit. A completed job stays completed
until its poster calls release_payment. A ledger failure during release
moves the job to payment_pending, from where the poster may retry.

Concurrency: every job-mutating operation holds that job's lock for its
whole read-check-write cycle, so at most one of several concurrent
claims on a job can succeed. Profile and stats updates share a separate
lock because one profile is touched by many jobs.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterator, Optional

from recyclemart.config import MarketplaceConfig
from recyclemart.errors import (
    ErrorKind,
    LedgerError,
    RecordNotFoundError,
)
from recyclemart.identity.registry import IdentityRegistry
from recyclemart.ledger.client import ESCROW_ACCOUNT, SimulatedLedgerClient
from recyclemart.ledger.gateway import LedgerGateway
from recyclemart.market.job_state_machine import JobStateMachine, PLATFORM_ACTOR
from recyclemart.market.pricing import PricingEngine, round2
from recyclemart.models.identity import ReputationEvent
from recyclemart.models.job import (
    ContactInfo,
    DisputeRecord,
    DisputeStatus,
    Job,
    JobStatus,
    MaterialCategory,
    PlatformDecision,
    Urgency,
)
from recyclemart.models.profile import PlatformStats, UserProfile
from recyclemart.models.wallet import (
    LedgerReceipt,
    TransactionKind,
    TransactionRecord,
    TransactionStatus,
)
from recyclemart.persistence.event_log import AuditEvent, EventKind, EventLog
from recyclemart.persistence.store import LocalStore

logger = logging.getLogger(__name__)

# (kind, actor, payload) of an audit event queued during a store write
PendingEvent = tuple[EventKind, str, dict[str, Any]]

# Job states that count as open work for a collector
_ACTIVE_COLLECTOR_STATES = frozenset({
    JobStatus.CLAIMED,
    JobStatus.COMPLETED,
    JobStatus.PAYMENT_PENDING,
    JobStatus.DISPUTED,
})


@dataclass
class _JobLock:
    """A job's lock and the number of callers holding or awaiting it."""
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[ErrorKind] = None

    @staticmethod
    def fail(
        kind: ErrorKind,
        *errors: str,
        data: Optional[dict[str, Any]] = None,
    ) -> ServiceResult:
        return ServiceResult(
            success=False,
            errors=list(errors),
            data=data or {},
            error_kind=kind,
        )


class MarketplaceService:
    """Recycling marketplace engine facade.

    Usage:
        config = load_config(config_dir)
        service = MarketplaceService(config, store=LocalStore(FileBackend(data_dir)))

        result = service.create_job(poster=alice, title="Boxes", ...)
        job_id = result.data["job"].job_id
        service.claim_job(job_id, collector=bob)
        service.complete_job(job_id, collector=bob)
        service.release_payment(job_id, actor=alice)
    """

    def __init__(
        self,
        config: Optional[MarketplaceConfig] = None,
        store: Optional[LocalStore] = None,
        ledger: Optional[LedgerGateway] = None,
        registry: Optional[IdentityRegistry] = None,
        event_log: Optional[EventLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config or MarketplaceConfig()
        self._store = store or LocalStore(key_prefix=self._config.key_prefix)
        self._ledger = ledger or LedgerGateway(
            SimulatedLedgerClient(
                network=self._config.network,
                faucet_amount=self._config.faucet_amount,
                latency_seconds=self._config.ledger_latency_seconds,
                key_prefix=self._config.key_prefix,
            ),
            timeout_seconds=self._config.ledger_timeout_seconds,
        )
        self._registry = registry or IdentityRegistry(self._config)
        self._event_log = event_log
        self._pricing = PricingEngine(self._config)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._monitor: Any = None
        self._audit_degraded = False

        self._locks_guard = threading.Lock()
        self._job_locks: dict[str, _JobLock] = {}
        self._accounts_lock = threading.RLock()
        # Payments sent whose store write failed, by job id
        self._unrecorded_payments: dict[str, LedgerReceipt] = {}

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def config(self) -> MarketplaceConfig:
        return self._config

    @property
    def store(self) -> LocalStore:
        return self._store

    @property
    def ledger(self) -> LedgerGateway:
        return self._ledger

    @property
    def registry(self) -> IdentityRegistry:
        return self._registry

    @property
    def pricing(self) -> PricingEngine:
        return self._pricing

    @property
    def audit_degraded(self) -> bool:
        """True once an audit append failed after its change was stored."""
        return self._audit_degraded

    def attach_monitor(self, monitor: Any) -> None:
        """Watch every submitted transaction and persist its final status.

        monitor must offer watch(tx_id) and subscribe(listener), as
        TransactionMonitor does.
        """
        self._monitor = monitor
        monitor.subscribe(self._on_transaction_update)

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    def quote_reward(
        self,
        category: MaterialCategory | str,
        weight_kg: Decimal | float | str,
        offered_reward: Optional[Decimal | float | str] = None,
    ) -> ServiceResult:
        """Suggested reward for a category and weight, without posting a job."""
        try:
            cat = MaterialCategory(category)
            weight = Decimal(str(weight_kg))
            breakdown = self._pricing.compute_reward(cat, weight)
        except (ValueError, InvalidOperation) as e:
            return ServiceResult.fail(ErrorKind.VALIDATION_ERROR, f"Invalid quote: {e}")

        data: dict[str, Any] = {"breakdown": breakdown}
        if offered_reward is not None:
            try:
                offered = Decimal(str(offered_reward))
            except InvalidOperation:
                return ServiceResult.fail(
                    ErrorKind.VALIDATION_ERROR, f"Invalid reward: {offered_reward}",
                )
            data["level"] = self._pricing.reward_level(offered, cat, weight)
        return ServiceResult(success=True, data=data)

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    def create_job(
        self,
        poster: str,
        title: str,
        description: str,
        category: MaterialCategory | str,
        weight_kg: Decimal | float | str,
        location: str,
        photo_url: str,
        reward: Optional[Decimal | float | str] = None,
        urgency: Urgency | str = Urgency.MEDIUM,
        full_address: Optional[str] = None,
        contact: Optional[ContactInfo] = None,
    ) -> ServiceResult:
        """Post a new job. reward defaults to the computed suggestion."""
        errors: list[str] = []
        if not poster:
            errors.append("Poster address is required")
        if not title or not title.strip():
            errors.append("Title is required")
        if not location or not location.strip():
            errors.append("Pickup location is required")
        if not photo_url or not photo_url.strip():
            errors.append("A photo of the items is required")

        cat: Optional[MaterialCategory] = None
        try:
            cat = MaterialCategory(category)
        except ValueError:
            errors.append(f"Unknown material category: {category}")

        urgency_value: Optional[Urgency] = None
        try:
            urgency_value = Urgency(urgency)
        except ValueError:
            errors.append(f"Unknown urgency: {urgency}")

        weight: Optional[Decimal] = None
        try:
            weight = Decimal(str(weight_kg))
            if not weight.is_finite() or weight <= 0:
                errors.append("Weight must be positive")
        except InvalidOperation:
            errors.append(f"Invalid weight: {weight_kg}")

        amount: Optional[Decimal] = None
        if reward is not None:
            try:
                amount = Decimal(str(reward))
                if not amount.is_finite():
                    errors.append(f"Invalid reward: {reward}")
            except InvalidOperation:
                errors.append(f"Invalid reward: {reward}")

        if errors:
            return ServiceResult.fail(ErrorKind.VALIDATION_ERROR, *errors)
        assert cat is not None and weight is not None and urgency_value is not None

        if amount is None:
            amount = self._pricing.compute_reward(cat, weight).reward
        amount = round2(amount)
        if amount < self._config.minimum_reward:
            return ServiceResult.fail(
                ErrorKind.VALIDATION_ERROR,
                f"Reward {amount} is below the minimum of {self._config.minimum_reward}",
            )

        now = self._clock()
        job = Job(
            job_id=f"job_{uuid.uuid4().hex[:16]}",
            title=title.strip(),
            description=(description or "").strip(),
            category=cat,
            weight_kg=weight,
            location=location.strip(),
            photo_url=photo_url.strip(),
            reward=amount,
            poster=poster,
            urgency=urgency_value,
            full_address=full_address,
            contact=contact,
            created_utc=now,
            updated_utc=now,
        )

        def _write(events: list[PendingEvent]) -> None:
            self._store.save_job(job)
            profile = self._profile(poster)
            profile.jobs_posted += 1
            profile.total_spent += amount
            self._save_profile(profile)
            self._ensure_identity(poster, events)
            self._refresh_stats()
            events.append((EventKind.JOB_CREATED, poster, {
                "job_id": job.job_id,
                "category": cat.value,
                "reward": str(amount),
            }))

        result = self._finish(_write, {"job": job})
        if result.success:
            logger.info("Job %s posted by %s (reward %s)", job.job_id, poster, amount)
        return result

    def claim_job(self, job_id: str, collector: str) -> ServiceResult:
        """Claim a posted job and lock its reward in escrow.

        A job that already has a collector yields CONFLICT, including
        when several claims race.
        """
        with self._job_lock(job_id):
            job = self._find_job(job_id)
            if job is None:
                return ServiceResult.fail(ErrorKind.NOT_FOUND, f"Job not found: {job_id}")

            if job.collector is not None:
                return ServiceResult.fail(
                    ErrorKind.CONFLICT,
                    f"Job {job_id} already claimed by {job.collector}",
                )
            errors = JobStateMachine.validate_transition(job, JobStatus.CLAIMED, collector)
            if errors:
                return ServiceResult.fail(ErrorKind.INVALID_TRANSITION, *errors)

            try:
                receipt = self._ledger.send_transaction(
                    ESCROW_ACCOUNT,
                    job.reward,
                    {
                        "from": job.poster,
                        "job_id": job_id,
                        "method": "claim_job",
                        "collector": collector,
                    },
                )
            except LedgerError as e:
                logger.warning("Escrow lock for job %s failed: %s", job_id, e)
                return ServiceResult.fail(
                    ErrorKind.EXTERNAL_SERVICE_ERROR,
                    f"Escrow lock failed for job {job_id}: {e}",
                )

            now = self._clock()
            JobStateMachine.apply_transition(job, JobStatus.CLAIMED, collector)
            job.claimed_utc = now
            job.updated_utc = now
            job.escrow_tx_id = receipt.transaction_id
            tx = self._transaction_record(
                receipt, TransactionKind.ESCROW_LOCK, job.poster, ESCROW_ACCOUNT,
                job.reward, job_id,
            )

            def _write(events: list[PendingEvent]) -> None:
                self._store.save_job(job)
                self._store.append_transaction(tx)
                self._save_profile(self._profile(collector))
                self._ensure_identity(collector, events)
                self._refresh_stats()
                events.append((EventKind.JOB_CLAIMED, collector, {
                    "job_id": job_id,
                    "locked_amount": str(job.locked_amount),
                }))
                events.append((EventKind.ESCROW_LOCKED, job.poster, {
                    "job_id": job_id,
                    "amount": str(job.reward),
                    "escrow_tx_id": receipt.transaction_id,
                }))

            result = self._finish(
                _write,
                {"job": job, "transaction": tx},
                on_failure=lambda: self._refund_escrow(job, receipt),
            )

        if result.success:
            self._watch(tx.tx_id)
            logger.info("Job %s claimed by %s", job_id, collector)
        return result

    def complete_job(
        self,
        job_id: str,
        collector: str,
        verified_weight_kg: Optional[Decimal | float | str] = None,
        reason: str = "",
        proof: Optional[dict[str, Any]] = None,
    ) -> ServiceResult:
        """Mark a claimed job done, optionally re-weighing the items.

        If the re-weighed price falls more than the configured percentage
        below the original, a reason is mandatory and the verified price
        becomes the settlement amount.
        """
        with self._job_lock(job_id):
            job = self._find_job(job_id)
            if job is None:
                return ServiceResult.fail(ErrorKind.NOT_FOUND, f"Job not found: {job_id}")

            errors = JobStateMachine.validate_transition(job, JobStatus.COMPLETED, collector)
            if errors:
                return ServiceResult.fail(ErrorKind.INVALID_TRANSITION, *errors)

            now = self._clock()
            verification = None
            if verified_weight_kg is not None:
                try:
                    verification = self._pricing.verify_price(
                        job.weight_kg,
                        job.locked_amount if job.locked_amount is not None else job.reward,
                        Decimal(str(verified_weight_kg)),
                        reason=reason,
                        now=now,
                    )
                except (ValueError, InvalidOperation) as e:
                    return ServiceResult.fail(
                        ErrorKind.VALIDATION_ERROR, f"Invalid verified weight: {e}",
                    )
                if verification.significant_reduction and not verification.reason:
                    return ServiceResult.fail(
                        ErrorKind.VALIDATION_ERROR,
                        f"Verified price for job {job_id} is {verification.change_percent}% "
                        f"below the original; a reason is required",
                        data={"price_verification": verification},
                    )

            JobStateMachine.apply_transition(job, JobStatus.COMPLETED, collector)
            job.completed_utc = now
            job.updated_utc = now
            job.price_verification = verification
            job.completion_proof = {
                "submitted_by": collector,
                "submitted_utc": now.isoformat(),
                "notes": reason.strip(),
                **(proof or {}),
            }

            late = (
                job.claimed_utc is not None
                and now - job.claimed_utc > timedelta(hours=self._config.late_completion_hours)
            )

            def _write(events: list[PendingEvent]) -> None:
                self._store.save_job(job)
                events.append((EventKind.JOB_COMPLETED, collector, {
                    "job_id": job_id,
                    "late": late,
                    "verified_price": (
                        str(verification.verified_price) if verification else None
                    ),
                }))
                if late:
                    self._apply_reputation(
                        collector, ReputationEvent.LATE_COMPLETION, events,
                    )
                self._refresh_stats()

            data: dict[str, Any] = {"job": job, "late_completion": late}
            if verification is not None:
                data["price_verification"] = verification
            return self._finish(_write, data)

    def release_payment(self, job_id: str, actor: str) -> ServiceResult:
        """Pay the collector for a completed job (poster only).

        On ledger failure the job moves to payment_pending and the result
        carries EXTERNAL_SERVICE_ERROR; calling again retries the payment.
        """
        with self._job_lock(job_id):
            job = self._find_job(job_id)
            if job is None:
                return ServiceResult.fail(ErrorKind.NOT_FOUND, f"Job not found: {job_id}")

            errors = JobStateMachine.validate_transition(job, JobStatus.PAID, actor)
            if errors:
                return ServiceResult.fail(ErrorKind.INVALID_TRANSITION, *errors)
            if job.dispute is not None and job.dispute.is_open:
                return ServiceResult.fail(
                    ErrorKind.INVALID_TRANSITION,
                    f"Job {job_id} has an open dispute",
                )

            amount = job.settlement_amount()
            net = self._pricing.collector_net(amount)
            collector = job.collector
            assert collector is not None

            receipt = self._unrecorded_payments.get(job_id)
            if receipt is not None:
                logger.info(
                    "Recording earlier payment %s for job %s", receipt.transaction_id, job_id,
                )
            else:
                try:
                    receipt = self._ledger.send_transaction(
                        collector,
                        net,
                        {
                            "from": ESCROW_ACCOUNT,
                            "job_id": job_id,
                            "method": "release_payment",
                            "gross_amount": str(amount),
                        },
                    )
                except LedgerError as e:
                    return self._payment_failed(job, actor, str(e))

            now = self._clock()
            JobStateMachine.apply_transition(job, JobStatus.PAID, actor)
            job.paid_utc = now
            job.updated_utc = now
            job.payment_tx_id = receipt.transaction_id
            job.payment_error = None
            tx = self._transaction_record(
                receipt, TransactionKind.PAYMENT, ESCROW_ACCOUNT, collector, net, job_id,
            )

            data: dict[str, Any] = {"job": job, "transaction": tx, "net_amount": net}

            def _write(events: list[PendingEvent]) -> None:
                self._store.save_job(job)
                self._store.append_transaction(tx)
                profile = self._profile(collector)
                profile.jobs_completed += 1
                profile.total_earned += net
                self._save_profile(profile)
                events.append((EventKind.PAYMENT_RELEASED, actor, {
                    "job_id": job_id,
                    "gross_amount": str(amount),
                    "net_amount": str(net),
                    "payment_tx_id": receipt.transaction_id,
                }))
                self._ensure_identity(job.poster, events)
                self._ensure_identity(collector, events)
                credential = self._registry.issue_credential(
                    job.poster, collector, self._recycling_activity(job),
                )
                data["credential"] = credential
                events.append((EventKind.CREDENTIAL_ISSUED, job.poster, {
                    "job_id": job_id,
                    "credential_id": credential.credential_id,
                    "subject": collector,
                }))
                self._apply_reputation(collector, ReputationEvent.COMPLETED, events)
                self._refresh_stats()

            def _keep_receipt() -> str:
                self._unrecorded_payments[job_id] = receipt
                return (
                    f"Payment {receipt.transaction_id} for job {job_id} was sent but "
                    f"not recorded; release again to record it without resending"
                )

            result = self._finish(_write, data, on_failure=_keep_receipt)
            if result.success:
                self._unrecorded_payments.pop(job_id, None)

        if result.success:
            self._watch(tx.tx_id)
            logger.info("Job %s paid: %s to %s", job_id, net, collector)
        return result

    def submit_dispute(
        self,
        job_id: str,
        reporter: str,
        reason: str,
        proposed_amount: Decimal | float | str,
    ) -> ServiceResult:
        """Collector challenges the stated price or condition of a job."""
        with self._job_lock(job_id):
            job = self._find_job(job_id)
            if job is None:
                return ServiceResult.fail(ErrorKind.NOT_FOUND, f"Job not found: {job_id}")

            errors = JobStateMachine.validate_transition(job, JobStatus.DISPUTED, reporter)
            if errors:
                return ServiceResult.fail(ErrorKind.INVALID_TRANSITION, *errors)

            if not reason or not reason.strip():
                return ServiceResult.fail(
                    ErrorKind.VALIDATION_ERROR, "A dispute reason is required",
                )
            escrowed = job.locked_amount if job.locked_amount is not None else job.reward
            try:
                proposed = round2(Decimal(str(proposed_amount)))
            except InvalidOperation:
                return ServiceResult.fail(
                    ErrorKind.VALIDATION_ERROR, f"Invalid proposed amount: {proposed_amount}",
                )
            if not proposed.is_finite() or proposed <= 0 or proposed > escrowed:
                return ServiceResult.fail(
                    ErrorKind.VALIDATION_ERROR,
                    f"Proposed amount must be in (0, {escrowed}], got {proposed}",
                )

            now = self._clock()
            dispute = DisputeRecord(
                dispute_id=f"dispute_{uuid.uuid4().hex[:16]}",
                reason=reason.strip(),
                proposed_amount=proposed,
                reporter=reporter,
                submitted_utc=now,
                prior_status=job.status,
            )
            JobStateMachine.apply_transition(job, JobStatus.DISPUTED, reporter)
            job.dispute = dispute
            job.updated_utc = now

            def _write(events: list[PendingEvent]) -> None:
                self._store.save_job(job)
                self._refresh_stats()
                events.append((EventKind.JOB_DISPUTED, reporter, {
                    "job_id": job_id,
                    "dispute_id": dispute.dispute_id,
                    "proposed_amount": str(proposed),
                }))

            result = self._finish(_write, {"job": job, "dispute": dispute})
            if result.success:
                logger.info("Dispute %s opened on job %s", dispute.dispute_id, job_id)
            return result

    def respond_to_dispute(
        self,
        job_id: str,
        actor: str,
        accept: bool,
        note: str = "",
    ) -> ServiceResult:
        """Poster accepts the proposed amount or escalates to the platform."""
        with self._job_lock(job_id):
            job = self._find_job(job_id)
            if job is None:
                return ServiceResult.fail(ErrorKind.NOT_FOUND, f"Job not found: {job_id}")

            dispute = job.dispute
            if (
                job.status != JobStatus.DISPUTED
                or dispute is None
                or dispute.status != DisputeStatus.PENDING_USER_RESPONSE
            ):
                return ServiceResult.fail(
                    ErrorKind.INVALID_TRANSITION,
                    f"Job {job_id} has no dispute awaiting a response "
                    f"(status: {job.status.value})",
                )
            if actor != job.poster:
                return ServiceResult.fail(
                    ErrorKind.INVALID_TRANSITION,
                    f"Only the poster of job {job_id} may respond to its dispute "
                    f"(actor: {actor})",
                )

            now = self._clock()
            dispute.user_response = ("accept" if accept else "reject") + (
                f": {note.strip()}" if note.strip() else ""
            )

            if accept:
                JobStateMachine.apply_transition(job, JobStatus.COMPLETED, actor)
                dispute.status = DisputeStatus.RESOLVED_ACCEPTED
                dispute.final_amount = dispute.proposed_amount
                dispute.resolved_utc = now
                if job.completed_utc is None:
                    job.completed_utc = now
                outcome = EventKind.DISPUTE_RESOLVED
            else:
                dispute.status = DisputeStatus.ESCALATED_TO_PLATFORM
                dispute.escalated_utc = now
                dispute.review_deadline_utc = now + timedelta(
                    days=self._config.dispute_review_days,
                )
                outcome = EventKind.DISPUTE_ESCALATED
            job.updated_utc = now

            def _write(events: list[PendingEvent]) -> None:
                self._store.save_job(job)
                events.append((EventKind.DISPUTE_RESPONDED, actor, {
                    "job_id": job_id,
                    "dispute_id": dispute.dispute_id,
                    "accepted": accept,
                }))
                events.append((outcome, actor, {
                    "job_id": job_id,
                    "dispute_id": dispute.dispute_id,
                    "final_amount": (
                        str(dispute.final_amount) if dispute.final_amount is not None else None
                    ),
                }))
                if accept:
                    # Poster concedes the listing was overstated
                    self._apply_reputation(job.poster, ReputationEvent.DISPUTED, events)
                self._refresh_stats()

            return self._finish(_write, {"job": job, "dispute": dispute})

    def resolve_dispute(
        self,
        job_id: str,
        decision: PlatformDecision | str,
    ) -> ServiceResult:
        """Platform ruling on an escalated dispute: original or proposed amount."""
        try:
            ruling = PlatformDecision(decision)
        except ValueError:
            return ServiceResult.fail(
                ErrorKind.VALIDATION_ERROR, f"Unknown platform decision: {decision}",
            )

        with self._job_lock(job_id):
            job = self._find_job(job_id)
            if job is None:
                return ServiceResult.fail(ErrorKind.NOT_FOUND, f"Job not found: {job_id}")

            dispute = job.dispute
            if dispute is None or dispute.status != DisputeStatus.ESCALATED_TO_PLATFORM:
                return ServiceResult.fail(
                    ErrorKind.INVALID_TRANSITION,
                    f"Job {job_id} has no dispute escalated to the platform",
                )
            errors = JobStateMachine.apply_transition(job, JobStatus.COMPLETED, PLATFORM_ACTOR)
            if errors:
                return ServiceResult.fail(ErrorKind.INVALID_TRANSITION, *errors)

            now = self._clock()
            escrowed = job.locked_amount if job.locked_amount is not None else job.reward
            dispute.status = DisputeStatus.RESOLVED_BY_PLATFORM
            dispute.platform_decision = ruling
            dispute.final_amount = (
                escrowed if ruling == PlatformDecision.ORIGINAL else dispute.proposed_amount
            )
            dispute.resolved_utc = now
            if job.completed_utc is None:
                job.completed_utc = now
            job.updated_utc = now

            # The side the platform rules against takes the dispute penalty
            loser = job.collector if ruling == PlatformDecision.ORIGINAL else job.poster

            def _write(events: list[PendingEvent]) -> None:
                self._store.save_job(job)
                events.append((EventKind.DISPUTE_RESOLVED, PLATFORM_ACTOR, {
                    "job_id": job_id,
                    "dispute_id": dispute.dispute_id,
                    "decision": ruling.value,
                    "final_amount": str(dispute.final_amount),
                }))
                if loser:
                    self._apply_reputation(loser, ReputationEvent.DISPUTED, events)
                self._refresh_stats()

            return self._finish(_write, {"job": job, "dispute": dispute})

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def record_transaction_status(
        self, tx_id: str, status: TransactionStatus | str,
    ) -> ServiceResult:
        """Persist a ledger status change for a recorded transaction."""
        try:
            new_status = TransactionStatus(status)
        except ValueError:
            return ServiceResult.fail(
                ErrorKind.VALIDATION_ERROR, f"Unknown transaction status: {status}",
            )
        try:
            record = self._store.update_transaction_status(tx_id, new_status)
        except RecordNotFoundError as e:
            return ServiceResult.fail(ErrorKind.NOT_FOUND, str(e))
        except ValueError as e:
            return ServiceResult.fail(ErrorKind.INVALID_TRANSITION, str(e))
        except OSError as e:
            logger.error("Could not store status of %s: %s", tx_id, e)
            return ServiceResult.fail(
                ErrorKind.EXTERNAL_SERVICE_ERROR, f"Persistence failure: {e}",
            )

        data: dict[str, Any] = {"transaction": record}
        self._audit(
            [(EventKind.TRANSACTION_STATUS_CHANGED, record.sender, {
                "tx_id": tx_id,
                "status": new_status.value,
                "job_id": record.job_id,
            })],
            data,
        )
        return ServiceResult(success=True, data=data)

    def transactions(
        self,
        address: Optional[str] = None,
        kind: Optional[TransactionKind] = None,
    ) -> list[TransactionRecord]:
        return self._store.load_transactions(address=address, kind=kind)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_job(self, job_id: str, viewer: Optional[str] = None) -> ServiceResult:
        job = self._find_job(job_id)
        if job is None:
            return ServiceResult.fail(ErrorKind.NOT_FOUND, f"Job not found: {job_id}")
        return ServiceResult(success=True, data={"job": job, "view": job.public_view(viewer)})

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        poster: Optional[str] = None,
        collector: Optional[str] = None,
    ) -> list[Job]:
        return self._store.load_jobs(status=status, poster=poster, collector=collector)

    def search_jobs(self, query: str) -> list[Job]:
        return self._store.search_jobs(query)

    def get_profile(self, address: str) -> Optional[UserProfile]:
        return self._store.get_user(address)

    def get_stats(self) -> PlatformStats:
        return self._store.load_stats()

    def analytics(self) -> dict[str, Any]:
        """Marketplace-wide figures derived from the store and registry."""
        jobs = self._store.load_jobs()
        transactions = self._store.load_transactions()
        users = self._store.load_users()

        jobs_by_category: dict[str, int] = {}
        for job in jobs:
            jobs_by_category[job.category.value] = (
                jobs_by_category.get(job.category.value, 0) + 1
            )
        total_reward = sum((j.reward for j in jobs), Decimal("0"))

        return {
            "total_jobs": len(jobs),
            "completed_jobs": sum(
                1 for j in jobs
                if j.status in (JobStatus.COMPLETED, JobStatus.PAYMENT_PENDING, JobStatus.PAID)
            ),
            "active_jobs": sum(
                1 for j in jobs if j.status in (JobStatus.POSTED, JobStatus.CLAIMED)
            ),
            "disputed_jobs": sum(1 for j in jobs if j.status == JobStatus.DISPUTED),
            "total_users": len(users),
            "total_transactions": len(transactions),
            # Escrow locks are the same money as the later payment
            "total_volume": sum(
                (t.amount for t in transactions if t.kind == TransactionKind.PAYMENT),
                Decimal("0"),
            ),
            "escrow_volume": sum(
                (t.amount for t in transactions if t.kind == TransactionKind.ESCROW_LOCK),
                Decimal("0"),
            ),
            "average_job_reward": round2(total_reward / len(jobs)) if jobs else Decimal("0"),
            "jobs_by_category": jobs_by_category,
            "recent_activity": list(reversed(transactions[-10:])),
            "trust": self._registry.trust_metrics(),
        }

    # ------------------------------------------------------------------
    # Administrative
    # ------------------------------------------------------------------

    def export_data(self) -> dict[str, Any]:
        return self._store.export_data()

    def import_data(self, data: dict[str, Any]) -> ServiceResult:
        """Replace store contents with a previous export."""
        result_data: dict[str, Any] = {}
        try:
            with self._accounts_lock, self._store.atomic():
                self._store.import_data(data)
                self._refresh_stats()
        except (ValueError, KeyError, InvalidOperation) as e:
            return ServiceResult.fail(ErrorKind.VALIDATION_ERROR, f"Import rejected: {e}")
        except OSError as e:
            logger.error("Import not stored: %s", e)
            return ServiceResult.fail(
                ErrorKind.EXTERNAL_SERVICE_ERROR, f"Persistence failure: {e}",
            )
        self._audit(
            [(EventKind.DATA_IMPORTED, PLATFORM_ACTOR, {"jobs": len(data.get("jobs") or [])})],
            result_data,
        )
        return ServiceResult(success=True, data=result_data)

    def clear_all(self) -> ServiceResult:
        """Wipe jobs, users, transactions, stats and identities together."""

        def _write(events: list[PendingEvent]) -> None:
            self._store.clear_all()
            self._registry.clear()
            self._unrecorded_payments.clear()
            events.append((EventKind.DATA_CLEARED, PLATFORM_ACTOR, {}))

        return self._finish(_write, {})

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @contextmanager
    def _job_lock(self, job_id: str) -> Iterator[None]:
        """Serialize work on one job. The entry is dropped when unused."""
        with self._locks_guard:
            entry = self._job_locks.get(job_id)
            if entry is None:
                entry = self._job_locks[job_id] = _JobLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._job_locks[job_id]

    def _find_job(self, job_id: str) -> Optional[Job]:
        try:
            return self._store.get_job(job_id)
        except RecordNotFoundError:
            return None

    def _profile(self, address: str) -> UserProfile:
        profile = self._store.get_user(address)
        if profile is None:
            now = self._clock()
            profile = UserProfile(
                address=address,
                reputation_score=self._config.initial_reputation,
                created_utc=now,
                updated_utc=now,
            )
        return profile

    def _save_profile(self, profile: UserProfile) -> None:
        profile.updated_utc = self._clock()
        self._store.save_user(profile)

    def _ensure_identity(self, address: str, events: list[PendingEvent]) -> None:
        if self._registry.has_identity(address):
            return
        identity = self._registry.ensure_identity(address)
        events.append((EventKind.IDENTITY_CREATED, address, {
            "address": address,
            "did": identity.did,
        }))

    def _apply_reputation(
        self, address: str, event: ReputationEvent, events: list[PendingEvent],
    ) -> int:
        """Update the registry score and mirror it onto the profile."""
        self._ensure_identity(address, events)
        score = self._registry.update_reputation(address, event)
        profile = self._profile(address)
        profile.reputation_score = score
        self._save_profile(profile)
        events.append((EventKind.REPUTATION_UPDATED, address, {
            "address": address,
            "event": event.value,
            "score": score,
        }))
        return score

    def _refresh_stats(self) -> None:
        """Recompute aggregate stats from the job collection."""
        jobs = self._store.load_jobs()
        today = self._clock().date()
        stats = PlatformStats(
            total_jobs=len(jobs),
            active_jobs=sum(
                1 for j in jobs if j.status in (JobStatus.POSTED, JobStatus.CLAIMED)
            ),
            completed_today=sum(
                1 for j in jobs
                if j.completed_utc is not None and j.completed_utc.date() == today
            ),
            active_collectors=len({
                j.collector for j in jobs
                if j.collector and j.status in _ACTIVE_COLLECTOR_STATES
            }),
            total_rewards_paid=sum(
                (
                    self._pricing.collector_net(j.settlement_amount())
                    for j in jobs if j.status == JobStatus.PAID
                ),
                Decimal("0"),
            ),
        )
        self._store.save_stats(stats)

    def _refund_escrow(self, job: Job, receipt: LedgerReceipt) -> Optional[str]:
        """Send a locked reward back to the poster after an unstored claim."""
        try:
            refund = self._ledger.send_transaction(
                job.poster,
                job.reward,
                {
                    "from": ESCROW_ACCOUNT,
                    "job_id": job.job_id,
                    "method": "refund_escrow",
                    "escrow_tx_id": receipt.transaction_id,
                },
            )
        except LedgerError as e:
            logger.error(
                "Escrow %s for job %s could not be refunded: %s",
                receipt.transaction_id, job.job_id, e,
            )
            return f"Escrow {receipt.transaction_id} could not be refunded: {e}"
        logger.warning(
            "Refunded escrow %s for job %s in %s",
            receipt.transaction_id, job.job_id, refund.transaction_id,
        )
        return f"Escrow {receipt.transaction_id} refunded in {refund.transaction_id}"

    def _payment_failed(self, job: Job, actor: str, reason: str) -> ServiceResult:
        """Park the job in payment_pending and report the ledger failure."""
        logger.warning("Payment for job %s failed: %s", job.job_id, reason)
        if job.status == JobStatus.COMPLETED:
            JobStateMachine.apply_transition(job, JobStatus.PAYMENT_PENDING, actor)
        job.payment_error = reason
        job.updated_utc = self._clock()

        def _write(events: list[PendingEvent]) -> None:
            self._store.save_job(job)
            events.append((EventKind.PAYMENT_FAILED, actor, {
                "job_id": job.job_id,
                "error": reason,
            }))

        errors = [f"Payment for job {job.job_id} failed: {reason}"]
        stored = self._finish(_write, {})
        errors.extend(stored.errors)
        return ServiceResult.fail(
            ErrorKind.EXTERNAL_SERVICE_ERROR, *errors, data={"job": job},
        )

    def _transaction_record(
        self,
        receipt: LedgerReceipt,
        kind: TransactionKind,
        sender: str,
        recipient: str,
        amount: Decimal,
        job_id: str,
    ) -> TransactionRecord:
        return TransactionRecord(
            tx_id=receipt.transaction_id,
            kind=kind,
            sender=sender,
            recipient=recipient,
            amount=amount,
            status=receipt.status,
            timestamp_utc=receipt.timestamp,
            job_id=job_id,
        )

    def _recycling_activity(self, job: Job) -> dict[str, Any]:
        weight = (
            job.price_verification.verified_weight_kg
            if job.price_verification is not None
            else job.weight_kg
        )
        return {
            "activity_type": "recycling_collection",
            "job_id": job.job_id,
            "category": job.category.value,
            "weight_kg": str(weight),
            "location": job.location,
            "completed_utc": job.completed_utc.isoformat() if job.completed_utc else None,
            "environmental_impact": {
                "co2_saved_kg": int(round(weight * Decimal("0.5"))),
                "energy_saved_kwh": int(round(weight * 2)),
            },
        }

    def _watch(self, tx_id: str) -> None:
        if self._monitor is not None:
            self._monitor.watch(tx_id)

    def _on_transaction_update(self, tx_id: str, status: TransactionStatus) -> None:
        result = self.record_transaction_status(tx_id, status)
        if not result.success:
            logger.warning("Could not record status of %s: %s", tx_id, result.errors)

    def _record(
        self, kind: EventKind, actor: str, payload: dict[str, Any],
    ) -> Optional[str]:
        """Append an audit event. Returns error string or None."""
        if self._event_log is None:
            return None
        try:
            self._event_log.append(
                AuditEvent.record(kind, actor, payload, occurred=self._clock())
            )
        except (ValueError, OSError) as e:
            self._audit_degraded = True
            logger.error("Audit event %s not recorded: %s", kind.value, e)
            return f"Event log failure: {e}"
        return None

    def _audit(self, events: list[PendingEvent], data: dict[str, Any]) -> None:
        """Record events for a stored change. Failures become a warning."""
        warnings = [w for w in (self._record(*event) for event in events) if w]
        if warnings:
            data["warning"] = "; ".join(warnings)

    def _finish(
        self,
        write: Callable[[list[PendingEvent]], None],
        data: dict[str, Any],
        on_failure: Optional[Callable[[], Optional[str]]] = None,
    ) -> ServiceResult:
        """Run write as one store and registry change, then audit it.

        If the store rejects any part, every collection and the registry
        are put back and on_failure runs to compensate for work that
        already left the process. Nothing is audited for a rolled-back
        change.
        """
        events: list[PendingEvent] = []
        try:
            with self._accounts_lock, self._store.atomic(), self._registry.atomic():
                write(events)
        except OSError as e:
            logger.error("Change not stored, rolled back: %s", e)
            errors = [f"Persistence failure: {e}"]
            if on_failure is not None:
                message = on_failure()
                if message:
                    errors.append(message)
            return ServiceResult.fail(ErrorKind.EXTERNAL_SERVICE_ERROR, *errors)
        self._audit(events, data)
        return ServiceResult(success=True, data=data)
