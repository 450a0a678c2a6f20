"""Job state machine — enforces valid lifecycle transitions and actor guards.

Job lifecycle:
    POSTED → CLAIMED → COMPLETED → PAID
                       COMPLETED → PAYMENT_PENDING → PAID
    CLAIMED / COMPLETED → DISPUTED → COMPLETED

State semantics:
- POSTED: visible to collectors, no collector assigned.
- CLAIMED: a collector holds the job; reward locked in escrow.
- COMPLETED: collector reports the pickup done; awaiting release.
- PAYMENT_PENDING: release attempted but the ledger payment failed.
- PAID: terminal, collector paid.
- DISPUTED: collector challenged price or condition; awaiting poster
  response or platform ruling.

Fail-closed: invalid transitions return errors and leave the job
untouched. There are no implicit transitions.
"""

from __future__ import annotations

from typing import Optional

from recyclemart.models.job import Job, JobStatus

# Actor id used for platform-side dispute rulings
PLATFORM_ACTOR = "platform"

# Valid transitions: {from_state: {allowed_to_states}}
_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.POSTED: {JobStatus.CLAIMED},
    JobStatus.CLAIMED: {JobStatus.COMPLETED, JobStatus.DISPUTED},
    JobStatus.COMPLETED: {
        JobStatus.PAID,
        JobStatus.PAYMENT_PENDING,
        JobStatus.DISPUTED,
    },
    JobStatus.PAYMENT_PENDING: {JobStatus.PAID},
    JobStatus.DISPUTED: {JobStatus.COMPLETED},
    # Terminal
    JobStatus.PAID: set(),
}


class JobStateMachine:
    """Validates and applies job status transitions.

    Pure computation: checks the transition graph and who may drive each
    edge. Side effects (stats, profiles, ledger, persistence) belong to
    the service layer.
    """

    @staticmethod
    def validate_transition(
        job: Job,
        target: JobStatus,
        actor: Optional[str] = None,
    ) -> list[str]:
        """Check if a transition is valid for actor. Returns errors (empty = OK)."""
        current = job.status
        allowed = _TRANSITIONS.get(current, set())

        if target not in allowed:
            allowed_str = ", ".join(s.value for s in sorted(allowed, key=lambda x: x.value))
            return [
                f"Invalid job transition for {job.job_id}: {current.value} → {target.value}. "
                f"Allowed from {current.value}: [{allowed_str}]"
            ]
        return JobStateMachine._check_guard(job, target, actor)

    @staticmethod
    def apply_transition(
        job: Job,
        target: JobStatus,
        actor: Optional[str] = None,
    ) -> list[str]:
        """Validate and apply a status transition.

        Returns errors if the transition is invalid. On success mutates
        job.status (and collector on claim) and returns an empty list.
        """
        errors = JobStateMachine.validate_transition(job, target, actor)
        if errors:
            return errors
        if target == JobStatus.CLAIMED:
            job.collector = actor
            job.locked_amount = job.reward
        job.status = target
        return []

    @staticmethod
    def is_terminal(status: JobStatus) -> bool:
        return not _TRANSITIONS.get(status)

    @staticmethod
    def valid_transitions(status: JobStatus) -> set[JobStatus]:
        """Return the set of valid target states from the given state."""
        return set(_TRANSITIONS.get(status, set()))

    @staticmethod
    def _check_guard(job: Job, target: JobStatus, actor: Optional[str]) -> list[str]:
        edge = f"{job.status.value} → {target.value}"

        if target == JobStatus.CLAIMED:
            if not actor:
                return [f"Claiming job {job.job_id} requires a collector"]
            if actor == job.poster:
                return [f"Poster cannot claim their own job {job.job_id} ({edge})"]
            if job.collector is not None:
                return [f"Job {job.job_id} already claimed by {job.collector}"]
            return []

        if target in (JobStatus.COMPLETED, JobStatus.DISPUTED) and job.status in (
            JobStatus.CLAIMED, JobStatus.COMPLETED,
        ):
            if actor != job.collector:
                return [
                    f"Only the collector of job {job.job_id} may drive {edge} "
                    f"(actor: {actor})"
                ]
            return []

        if target == JobStatus.COMPLETED and job.status == JobStatus.DISPUTED:
            if actor not in (job.poster, PLATFORM_ACTOR):
                return [
                    f"Only the poster or the platform may resolve the dispute on "
                    f"job {job.job_id} (actor: {actor})"
                ]
            return []

        if target in (JobStatus.PAID, JobStatus.PAYMENT_PENDING):
            if actor != job.poster:
                return [
                    f"Only the poster of job {job.job_id} may release payment "
                    f"(actor: {actor})"
                ]
            return []

        return []
