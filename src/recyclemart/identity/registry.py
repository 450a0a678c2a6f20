"""Identity and reputation registry — DIDs, credentials and bounded scores.

Reputation model:
    score' = clamp(score + delta(event), floor, ceiling)

with fixed deltas per event (completed +10, disputed -20,
credential_verified +5, late_completion -5), floor 0, ceiling 1000 and a
starting score of 100.

Invariants enforced:
- One identity per address; ensure_identity is an idempotent upsert.
- Credentials can only be issued between two existing identities.
- A credential's proof is the SHA-256 of its canonical content, so any
  change to the stored credential fails verification.
- A credential earns its subject the credential_verified bonus at most once.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator, Optional

from recyclemart.config import MarketplaceConfig
from recyclemart.errors import IdentityNotFoundError, RecordNotFoundError
from recyclemart.models.identity import (
    Credential,
    CredentialVerification,
    IdentityRecord,
    ReputationCounters,
    ReputationEvent,
)

logger = logging.getLogger(__name__)

DID_METHOD = "did:iota:"


def _credential_proof(
    credential_id: str,
    issuer_did: str,
    subject_did: str,
    activity: dict[str, Any],
    issued_utc: datetime,
    expires_utc: datetime,
) -> str:
    canonical = json.dumps(
        {
            "credential_id": credential_id,
            "issuer": issuer_did,
            "subject": subject_did,
            "activity": activity,
            "issued_utc": issued_utc.isoformat(),
            "expires_utc": expires_utc.isoformat(),
        },
        sort_keys=True,
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


class IdentityRegistry:
    """In-memory map from address to identity, credentials and reputation.

    Usage:
        registry = IdentityRegistry(config)
        registry.ensure_identity(poster)
        registry.ensure_identity(collector)
        credential = registry.issue_credential(poster, collector, activity)
        registry.update_reputation(collector, ReputationEvent.COMPLETED)
    """

    def __init__(self, config: Optional[MarketplaceConfig] = None) -> None:
        self._config = config or MarketplaceConfig()
        self._identities: dict[str, IdentityRecord] = {}
        self._credentials: dict[str, Credential] = {}
        self._rewarded_credentials: set[str] = set()
        self._verification_history: dict[str, list[CredentialVerification]] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    def ensure_identity(
        self,
        address: str,
        user_type: str = "individual",
        now: Optional[datetime] = None,
    ) -> IdentityRecord:
        """Return the identity for address, creating it on first call."""
        if not address:
            raise ValueError("Address is required to create an identity")
        with self._lock:
            existing = self._identities.get(address)
            if existing is not None:
                return existing
            if now is None:
                now = datetime.now(timezone.utc)
            record = IdentityRecord(
                address=address,
                did=f"{DID_METHOD}{address[:20]}{int(now.timestamp() * 1000)}",
                created_utc=now,
                user_type=user_type,
                reputation=ReputationCounters(score=self._config.initial_reputation),
            )
            self._identities[address] = record
        logger.info("Created identity %s for %s", record.did, address)
        return record

    def get_identity(self, address: str) -> IdentityRecord:
        """Raises IdentityNotFoundError if address has no identity."""
        record = self._identities.get(address)
        if record is None:
            raise IdentityNotFoundError(f"Identity not found: {address}")
        return record

    def has_identity(self, address: str) -> bool:
        return address in self._identities

    def identity_count(self) -> int:
        return len(self._identities)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def issue_credential(
        self,
        issuer: str,
        subject: str,
        activity: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Credential:
        """Issue a recycling-activity credential from issuer to subject.

        Raises IdentityNotFoundError if either identity is missing.
        """
        with self._lock:
            issuer_identity = self.get_identity(issuer)
            subject_identity = self.get_identity(subject)
            if now is None:
                now = datetime.now(timezone.utc)
            expires = now + timedelta(days=self._config.credential_validity_days)
            credential_id = f"vc:recycling:{uuid.uuid4().hex}"
            credential = Credential(
                credential_id=credential_id,
                issuer_did=issuer_identity.did,
                subject_did=subject_identity.did,
                issuer_address=issuer,
                subject_address=subject,
                activity=dict(activity),
                issued_utc=now,
                expires_utc=expires,
                proof=_credential_proof(
                    credential_id,
                    issuer_identity.did,
                    subject_identity.did,
                    activity,
                    now,
                    expires,
                ),
            )
            self._credentials[credential_id] = credential
            subject_identity.credential_ids.append(credential_id)
            subject_identity.reputation.verified_credentials += 1
        logger.info("Issued credential %s: %s → %s", credential_id, issuer, subject)
        return credential

    def get_credential(self, credential_id: str) -> Credential:
        credential = self._credentials.get(credential_id)
        if credential is None:
            raise RecordNotFoundError(f"Credential not found: {credential_id}")
        return credential

    def credentials_for(self, address: str) -> list[Credential]:
        identity = self.get_identity(address)
        return [self._credentials[cid] for cid in identity.credential_ids]

    def verify_credential(
        self,
        credential_id: str,
        now: Optional[datetime] = None,
    ) -> CredentialVerification:
        """Check proof, expiry and issuer; the first pass rewards the subject.

        Raises RecordNotFoundError for an unknown credential.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        with self._lock:
            credential = self.get_credential(credential_id)
            expected = _credential_proof(
                credential.credential_id,
                credential.issuer_did,
                credential.subject_did,
                credential.activity,
                credential.issued_utc,
                credential.expires_utc,
            )
            issuer = self._identities.get(credential.issuer_address)
            verification = CredentialVerification(
                credential_id=credential_id,
                signature_valid=credential.proof == expected,
                not_expired=credential.expires_utc > now,
                issuer_exists=issuer is not None and issuer.did == credential.issuer_did,
                verified_utc=now,
            )
            self._verification_history.setdefault(credential_id, []).append(verification)

            if verification.is_valid and credential_id not in self._rewarded_credentials:
                self._rewarded_credentials.add(credential_id)
                if credential.subject_address in self._identities:
                    self.update_reputation(
                        credential.subject_address,
                        ReputationEvent.CREDENTIAL_VERIFIED,
                    )
        return verification

    def verification_history(self, credential_id: str) -> list[CredentialVerification]:
        return list(self._verification_history.get(credential_id, []))

    # ------------------------------------------------------------------
    # Reputation
    # ------------------------------------------------------------------

    def update_reputation(self, address: str, event: ReputationEvent) -> int:
        """Apply the fixed delta for event and return the clamped score.

        Raises IdentityNotFoundError if address has no identity.
        """
        with self._lock:
            identity = self.get_identity(address)
            counters = identity.reputation
            previous = counters.score
            raw = previous + self._config.reputation_delta(event.value)
            counters.score = max(
                self._config.reputation_floor,
                min(self._config.reputation_ceiling, raw),
            )
            if event == ReputationEvent.COMPLETED:
                counters.completed_jobs += 1
            elif event == ReputationEvent.DISPUTED:
                counters.disputes += 1
        logger.debug(
            "Reputation %s: %s %d → %d", address, event.value, previous, counters.score,
        )
        return counters.score

    def trust_metrics(self) -> dict[str, Any]:
        """Aggregate identity counts and average reputation."""
        identities = list(self._identities.values())
        total = len(identities)
        verified = sum(1 for i in identities if i.is_verified)
        average = (
            round(sum(i.reputation.score for i in identities) / total) if total else 0
        )
        return {
            "total_identities": total,
            "verified_identities": verified,
            "total_credentials": len(self._credentials),
            "average_reputation": average,
            "trust_level": verified / total if total else 0.0,
        }

    # ------------------------------------------------------------------
    # Bulk state
    # ------------------------------------------------------------------

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Undo every registry change made in the block if it raises."""
        with self._lock:
            saved = copy.deepcopy((
                self._identities,
                self._credentials,
                self._rewarded_credentials,
                self._verification_history,
            ))
            try:
                yield
            except Exception:
                (
                    self._identities,
                    self._credentials,
                    self._rewarded_credentials,
                    self._verification_history,
                ) = saved
                raise

    def clear(self) -> None:
        """Forget every identity, credential and reputation score."""
        with self._lock:
            self._identities = {}
            self._credentials = {}
            self._rewarded_credentials = set()
            self._verification_history = {}
        logger.info("Identity registry cleared")
