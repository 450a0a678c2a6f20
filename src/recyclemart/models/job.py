"""Job models — recycling pickup postings, disputes and price verification.

Job lifecycle:
    POSTED → CLAIMED → COMPLETED → PAYMENT_PENDING → PAID
    CLAIMED / COMPLETED → DISPUTED → COMPLETED (dispute resolved)

All monetary values use Decimal. Amounts are in token units.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional


class JobStatus(str, enum.Enum):
    """Lifecycle state of a job."""
    POSTED = "posted"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    PAYMENT_PENDING = "payment_pending"
    PAID = "paid"
    DISPUTED = "disputed"


class MaterialCategory(str, enum.Enum):
    """Kind of recyclable material being collected."""
    CARDBOARD = "cardboard"
    PLASTIC = "plastic"
    GLASS = "glass"
    METAL = "metal"
    PAPER = "paper"
    ELECTRONICS = "electronics"
    OTHER = "other"


class Urgency(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DisputeStatus(str, enum.Enum):
    """Where a dispute is in its resolution flow."""
    PENDING_USER_RESPONSE = "pending_user_response"
    ESCALATED_TO_PLATFORM = "escalated_to_platform"
    RESOLVED_ACCEPTED = "resolved_accepted"
    RESOLVED_BY_PLATFORM = "resolved_by_platform"


class PlatformDecision(str, enum.Enum):
    """Platform ruling on an escalated dispute."""
    ORIGINAL = "original"
    PROPOSED = "proposed"


@dataclass(frozen=True)
class ContactInfo:
    """Pickup contact, revealed to the collector only after claim."""
    name: str
    phone: str = ""
    email: str = ""


@dataclass
class DisputeRecord:
    """A collector's challenge to a job's stated price or condition."""
    dispute_id: str
    reason: str
    proposed_amount: Decimal
    reporter: str
    status: DisputeStatus = DisputeStatus.PENDING_USER_RESPONSE
    submitted_utc: Optional[datetime] = None
    prior_status: Optional[JobStatus] = None
    user_response: Optional[str] = None
    escalated_utc: Optional[datetime] = None
    review_deadline_utc: Optional[datetime] = None
    platform_decision: Optional[PlatformDecision] = None
    final_amount: Optional[Decimal] = None
    resolved_utc: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in (
            DisputeStatus.PENDING_USER_RESPONSE,
            DisputeStatus.ESCALATED_TO_PLATFORM,
        )


@dataclass(frozen=True)
class PriceVerification:
    """Weight re-check performed by the collector at completion time."""
    original_weight_kg: Decimal
    verified_weight_kg: Decimal
    original_price: Decimal
    verified_price: Decimal
    change_percent: Decimal
    significant_reduction: bool
    reason: str = ""
    verified_utc: Optional[datetime] = None


@dataclass
class Job:
    """A recycling task posted by a recycler and fulfilled by a collector.

    Invariants (enforced by JobStateMachine and the service layer):
    - collector is None iff status is POSTED.
    - locked_amount is set exactly once, at claim, equal to reward.
    - reward >= minimum posting threshold at creation.
    """
    job_id: str
    title: str
    description: str
    category: MaterialCategory
    weight_kg: Decimal
    location: str
    photo_url: str
    reward: Decimal
    poster: str
    status: JobStatus = JobStatus.POSTED
    collector: Optional[str] = None
    locked_amount: Optional[Decimal] = None
    urgency: Urgency = Urgency.MEDIUM
    full_address: Optional[str] = None
    contact: Optional[ContactInfo] = None
    created_utc: Optional[datetime] = None
    updated_utc: Optional[datetime] = None
    claimed_utc: Optional[datetime] = None
    completed_utc: Optional[datetime] = None
    paid_utc: Optional[datetime] = None
    escrow_tx_id: Optional[str] = None
    payment_tx_id: Optional[str] = None
    payment_error: Optional[str] = None
    completion_proof: dict[str, Any] = field(default_factory=dict)
    price_verification: Optional[PriceVerification] = None
    dispute: Optional[DisputeRecord] = None

    def settlement_amount(self) -> Decimal:
        """Amount released to the collector (before the platform fee).

        A resolved dispute's final amount wins, then a verified price
        (capped at the escrowed amount), then the amount locked at claim.
        """
        escrowed = self.locked_amount if self.locked_amount is not None else self.reward
        if self.dispute is not None and self.dispute.final_amount is not None:
            return self.dispute.final_amount
        if self.price_verification is not None:
            return min(self.price_verification.verified_price, escrowed)
        return escrowed

    def public_view(self, viewer: Optional[str] = None) -> dict[str, Any]:
        """Listing fields visible to viewer; address and contact stay hidden
        until the job is claimed and viewer is the poster or collector."""
        view: dict[str, Any] = {
            "job_id": self.job_id,
            "title": self.title,
            "description": self.description,
            "category": self.category.value,
            "weight_kg": str(self.weight_kg),
            "location": self.location,
            "photo_url": self.photo_url,
            "reward": str(self.reward),
            "status": self.status.value,
            "urgency": self.urgency.value,
            "poster": self.poster,
            "collector": self.collector,
        }
        revealed = self.collector is not None and viewer in (self.poster, self.collector)
        if revealed:
            view["full_address"] = self.full_address
            view["contact"] = (
                {"name": self.contact.name, "phone": self.contact.phone, "email": self.contact.email}
                if self.contact else None
            )
        return view
