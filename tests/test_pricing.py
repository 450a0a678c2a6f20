"""Tests for reward pricing — proves the fee model and minimum clamp hold."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from recyclemart.config import MarketplaceConfig
from recyclemart.market.pricing import PricingEngine, round2
from recyclemart.models.job import MaterialCategory


def _now() -> datetime:
    return datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine() -> PricingEngine:
    return PricingEngine(MarketplaceConfig())


class TestRound2:
    def test_half_up(self) -> None:
        assert round2(Decimal("3.305")) == Decimal("3.31")
        assert round2(Decimal("1.764")) == Decimal("1.76")
        assert round2(Decimal("33.075")) == Decimal("33.08")


class TestComputeReward:
    def test_small_plastic_job_clamped_to_minimum(self, engine: PricingEngine) -> None:
        b = engine.compute_reward(MaterialCategory.PLASTIC, Decimal("2"))
        assert b.rate_per_kg == Decimal("0.60")
        assert b.material_value == Decimal("1.20")
        assert b.convenience_fee == Decimal("0.48")
        assert b.platform_fee == Decimal("0.08")
        assert b.computed_total == Decimal("1.76")
        assert b.reward == Decimal("5")
        assert b.clamped_to_minimum is True
        assert b.collector_net == Decimal("4.75")

    def test_cardboard_below_minimum(self, engine: PricingEngine) -> None:
        b = engine.compute_reward(MaterialCategory.CARDBOARD, Decimal("5"))
        assert b.computed_total == Decimal("3.31")
        assert b.reward == Decimal("5")

    def test_metal_above_minimum(self, engine: PricingEngine) -> None:
        b = engine.compute_reward(MaterialCategory.METAL, Decimal("10"))
        assert b.computed_total == Decimal("33.08")
        assert b.reward == Decimal("33.08")
        assert b.clamped_to_minimum is False
        assert b.collector_net == Decimal("31.43")
        assert b.reward_fiat == Decimal("37.22")

    def test_ledger_is_feeless(self, engine: PricingEngine) -> None:
        b = engine.compute_reward(MaterialCategory.GLASS, Decimal("50"))
        assert b.network_fee == Decimal("0")

    def test_reward_never_below_minimum(self, engine: PricingEngine) -> None:
        for category in MaterialCategory:
            b = engine.compute_reward(category, Decimal("0.1"))
            assert b.reward >= engine.minimum_reward

    def test_non_positive_weight_rejected(self, engine: PricingEngine) -> None:
        with pytest.raises(ValueError):
            engine.compute_reward(MaterialCategory.PAPER, Decimal("0"))
        with pytest.raises(ValueError):
            engine.compute_reward(MaterialCategory.PAPER, Decimal("-1"))

    def test_custom_minimum(self) -> None:
        engine = PricingEngine(MarketplaceConfig(minimum_reward=Decimal("1")))
        b = engine.compute_reward(MaterialCategory.PLASTIC, Decimal("2"))
        assert b.reward == Decimal("1.76")
        assert b.clamped_to_minimum is False


class TestCollectorNet:
    def test_platform_fee_deducted(self, engine: PricingEngine) -> None:
        assert engine.collector_net(Decimal("5")) == Decimal("4.75")
        assert engine.collector_net(Decimal("10")) == Decimal("9.50")

    def test_platform_fee_on(self, engine: PricingEngine) -> None:
        assert engine.platform_fee_on(Decimal("5")) == Decimal("0.25")


class TestRewardLevel:
    def test_low(self, engine: PricingEngine) -> None:
        # material value 10 × 0.45 = 4.50; ratio 1.11
        assert engine.reward_level(Decimal("5"), MaterialCategory.CARDBOARD, Decimal("10")) == "low"

    def test_fair(self, engine: PricingEngine) -> None:
        assert engine.reward_level(Decimal("7"), MaterialCategory.CARDBOARD, Decimal("10")) == "fair"

    def test_high(self, engine: PricingEngine) -> None:
        assert engine.reward_level(Decimal("10"), MaterialCategory.CARDBOARD, Decimal("10")) == "high"


class TestVerifyPrice:
    def test_no_change(self, engine: PricingEngine) -> None:
        v = engine.verify_price(
            Decimal("10"), Decimal("33.08"), Decimal("10"), now=_now(),
        )
        assert v.verified_price == Decimal("33.08")
        assert v.change_percent == Decimal("0.0")
        assert v.significant_reduction is False
        assert v.verified_utc == _now()

    def test_significant_reduction(self, engine: PricingEngine) -> None:
        # half the weight at the same per-kg price
        v = engine.verify_price(
            Decimal("10"), Decimal("33.08"), Decimal("5"),
            reason="  half was wet cardboard  ",
        )
        assert v.verified_price == Decimal("16.54")
        assert v.change_percent == Decimal("50.0")
        assert v.significant_reduction is True
        assert v.reason == "half was wet cardboard"

    def test_small_reduction_not_significant(self, engine: PricingEngine) -> None:
        # 33.08 × 0.9 = 29.772, a 10 % drop
        v = engine.verify_price(
            Decimal("10"), Decimal("33.08"), Decimal("9"),
        )
        assert v.verified_price == Decimal("29.77")
        assert v.significant_reduction is False

    def test_increase_not_significant(self, engine: PricingEngine) -> None:
        v = engine.verify_price(
            Decimal("10"), Decimal("33.08"), Decimal("20"),
        )
        assert v.verified_price > v.original_price
        assert v.significant_reduction is False

    def test_invalid_weight(self, engine: PricingEngine) -> None:
        with pytest.raises(ValueError):
            engine.verify_price(
                Decimal("10"), Decimal("33.08"), Decimal("0"),
            )

    def test_custom_reward_same_weight_unchanged(self, engine: PricingEngine) -> None:
        # Poster offered 10 for 2 kg plastic, well above the suggested 5
        v = engine.verify_price(Decimal("2"), Decimal("10"), Decimal("2"))
        assert v.verified_price == Decimal("10.00")
        assert v.significant_reduction is False

    def test_custom_reward_keeps_rate(self, engine: PricingEngine) -> None:
        v = engine.verify_price(Decimal("2"), Decimal("10"), Decimal("1.5"))
        assert v.verified_price == Decimal("7.50")
        assert v.change_percent == Decimal("25.0")
        assert v.significant_reduction is True

    def test_rescaled_price_clamped_to_minimum(self, engine: PricingEngine) -> None:
        v = engine.verify_price(Decimal("2"), Decimal("6"), Decimal("1"))
        assert v.verified_price == Decimal("5")
        assert v.change_percent == Decimal("16.7")
        assert v.significant_reduction is False
