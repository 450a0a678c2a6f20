"""Core data models for the recycling marketplace."""

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
from recyclemart.models.identity import (
    Credential,
    CredentialVerification,
    IdentityRecord,
    ReputationEvent,
)
from recyclemart.models.wallet import (
    TransactionKind,
    TransactionRecord,
    TransactionRequest,
    TransactionStatus,
    WalletMode,
    WalletSession,
)

__all__ = [
    "ContactInfo",
    "DisputeRecord",
    "DisputeStatus",
    "Job",
    "JobStatus",
    "MaterialCategory",
    "PlatformDecision",
    "PriceVerification",
    "Urgency",
    "PlatformStats",
    "UserProfile",
    "Credential",
    "CredentialVerification",
    "IdentityRecord",
    "ReputationEvent",
    "TransactionKind",
    "TransactionRecord",
    "TransactionRequest",
    "TransactionStatus",
    "WalletMode",
    "WalletSession",
]
