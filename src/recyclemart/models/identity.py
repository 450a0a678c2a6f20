"""Decentralized-identity records, credentials and reputation events.

Reputation is a bounded integer: fixed deltas per event kind, clamped
to [0, 1000]. Credentials attest completed recycling activity and are
valid for one year from issuance.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


class ReputationEvent(str, enum.Enum):
    """Events that move a reputation score."""
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CREDENTIAL_VERIFIED = "credential_verified"
    LATE_COMPLETION = "late_completion"


@dataclass
class ReputationCounters:
    score: int = 100
    verified_credentials: int = 0
    completed_jobs: int = 0
    disputes: int = 0


@dataclass
class IdentityRecord:
    """One identity per address, owned by the IdentityRegistry."""
    address: str
    did: str
    created_utc: datetime
    user_type: str = "individual"
    credential_ids: list[str] = field(default_factory=list)
    reputation: ReputationCounters = field(default_factory=ReputationCounters)

    @property
    def is_verified(self) -> bool:
        return self.reputation.verified_credentials > 0


@dataclass(frozen=True)
class Credential:
    """An attestation of a completed recycling activity."""
    credential_id: str
    issuer_did: str
    subject_did: str
    issuer_address: str
    subject_address: str
    activity: dict[str, Any]
    issued_utc: datetime
    expires_utc: datetime
    proof: str


@dataclass(frozen=True)
class CredentialVerification:
    """Outcome of checking a credential."""
    credential_id: str
    signature_valid: bool
    not_expired: bool
    issuer_exists: bool
    verified_utc: Optional[datetime] = None

    @property
    def is_valid(self) -> bool:
        return self.signature_valid and self.not_expired and self.issuer_exists
