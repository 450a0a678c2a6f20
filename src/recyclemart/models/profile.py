"""User activity profiles and platform-wide aggregate stats."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional


@dataclass
class UserProfile:
    """Per-address activity counters.

    Created implicitly on first activity. reputation_score mirrors the
    identity registry and is clamped to [0, 1000].
    """
    address: str
    jobs_posted: int = 0
    jobs_completed: int = 0
    total_earned: Decimal = Decimal("0")
    total_spent: Decimal = Decimal("0")
    reputation_score: int = 100
    created_utc: Optional[datetime] = None
    updated_utc: Optional[datetime] = None


@dataclass
class PlatformStats:
    """Aggregate marketplace statistics, recomputed from jobs on each mutation."""
    total_jobs: int = 0
    active_jobs: int = 0
    completed_today: int = 0
    active_collectors: int = 0
    total_rewards_paid: Decimal = Decimal("0")
