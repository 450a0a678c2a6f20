"""Reward pricing — material value, fees, and completion-time price checks.

Reward model (amounts in token units):
    material_value  = weight_kg × average rate for the category
    convenience_fee = material_value × 0.40
    platform_fee    = (material_value + convenience_fee) × 0.05
    reward          = max(minimum, round2(material + convenience + platform_fee))

The platform fee is borne by the poster: the collector receives
reward × 0.95. The ledger is feeless, so no network fee is deducted.

Price verification rescales the originally posted price to the weight
measured at pickup, keeping its per-kg rate. A reduction of more than
20 % is "significant" and must be explained before payment.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from recyclemart.config import MarketplaceConfig
from recyclemart.currency import token_to_fiat
from recyclemart.models.job import MaterialCategory, PriceVerification

_CENT = Decimal("0.01")
_TENTH = Decimal("0.1")


def round2(value: Decimal) -> Decimal:
    """Round half-up to two decimal places."""
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class RewardBreakdown:
    """Full breakdown of a reward computation.

    Invariant: reward == max(minimum_reward, round2(material_value +
    convenience_fee + platform_fee)).
    """
    category: MaterialCategory
    weight_kg: Decimal
    rate_per_kg: Decimal
    material_value: Decimal
    convenience_fee: Decimal
    platform_fee: Decimal
    computed_total: Decimal
    reward: Decimal
    clamped_to_minimum: bool
    collector_net: Decimal
    network_fee: Decimal
    reward_fiat: Decimal


class PricingEngine:
    """Computes rewards and collector payouts from the configured rate bands.

    Usage:
        engine = PricingEngine(config)
        breakdown = engine.compute_reward(MaterialCategory.PLASTIC, Decimal("2"))
        net = engine.collector_net(breakdown.reward)
    """

    def __init__(self, config: MarketplaceConfig) -> None:
        self._config = config

    @property
    def minimum_reward(self) -> Decimal:
        return self._config.minimum_reward

    def compute_reward(
        self,
        category: MaterialCategory,
        weight_kg: Decimal,
    ) -> RewardBreakdown:
        """Compute the suggested reward for a job.

        Raises ValueError if weight_kg is not positive.
        """
        weight = Decimal(str(weight_kg))
        if weight <= 0:
            raise ValueError("Weight must be positive")

        band = self._config.rate_band(category.value)
        material_value = weight * band.average
        convenience_fee = material_value * self._config.convenience_fee_rate
        platform_fee = (material_value + convenience_fee) * self._config.platform_fee_rate
        computed_total = round2(material_value + convenience_fee + platform_fee)
        reward = max(self._config.minimum_reward, computed_total)

        return RewardBreakdown(
            category=category,
            weight_kg=weight,
            rate_per_kg=band.average,
            material_value=round2(material_value),
            convenience_fee=round2(convenience_fee),
            platform_fee=round2(platform_fee),
            computed_total=computed_total,
            reward=reward,
            clamped_to_minimum=computed_total < self._config.minimum_reward,
            collector_net=self.collector_net(reward),
            network_fee=Decimal("0"),
            reward_fiat=token_to_fiat(reward),
        )

    def collector_net(self, amount: Decimal) -> Decimal:
        """What the collector receives after the platform fee."""
        return round2(Decimal(str(amount)) * (Decimal("1") - self._config.platform_fee_rate))

    def platform_fee_on(self, amount: Decimal) -> Decimal:
        return round2(Decimal(str(amount))) - self.collector_net(amount)

    def reward_level(
        self,
        reward: Decimal,
        category: MaterialCategory,
        weight_kg: Decimal,
    ) -> str:
        """Classify a reward against raw material value: low, fair or high."""
        band = self._config.rate_band(category.value)
        material_value = Decimal(str(weight_kg)) * band.average
        if material_value <= 0:
            return "fair"
        ratio = Decimal(str(reward)) / material_value
        if ratio < Decimal("1.2"):
            return "low"
        if ratio > Decimal("2.0"):
            return "high"
        return "fair"

    def verify_price(
        self,
        original_weight_kg: Decimal,
        original_price: Decimal,
        verified_weight_kg: Decimal,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> PriceVerification:
        """Rescale the posted price to the weight measured at pickup.

        The per-kg price the poster agreed to is kept, so a custom reward
        re-weighed at the same weight verifies at the same price. The
        result never drops below the minimum reward.

        Raises ValueError if either weight is not positive.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        original_weight = Decimal(str(original_weight_kg))
        verified_weight = Decimal(str(verified_weight_kg))
        if original_weight <= 0 or verified_weight <= 0:
            raise ValueError("Weight must be positive")
        original_price = Decimal(str(original_price))
        verified_price = max(
            self._config.minimum_reward,
            round2(original_price * verified_weight / original_weight),
        )

        if original_price > 0:
            change = (original_price - verified_price) / original_price * Decimal("100")
        else:
            change = Decimal("0")
        change_percent = change.quantize(_TENTH, rounding=ROUND_HALF_UP)
        significant = (
            verified_price < original_price
            and change > self._config.significant_reduction_percent
        )

        return PriceVerification(
            original_weight_kg=original_weight,
            verified_weight_kg=verified_weight,
            original_price=original_price,
            verified_price=verified_price,
            change_percent=change_percent,
            significant_reduction=significant,
            reason=reason.strip(),
            verified_utc=now,
        )
