"""Marketplace configuration — pricing, reputation, lifecycle and wallet knobs.

Parameters live in config/marketplace_params.json. The dataclass
defaults mirror that file, so MarketplaceConfig() is usable on its own
(tests, embedding) while deployments tune the JSON.

Usage:
    config = MarketplaceConfig.from_config_dir(Path("config"))
    band = config.rate_band("plastic")
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

CONFIG_FILENAME = "marketplace_params.json"
SCHEMA_VERSION = 1


@dataclass(frozen=True)
class RateBand:
    """Per-kilogram market rate for one material category."""
    minimum: Decimal
    maximum: Decimal
    average: Decimal


def _default_rate_bands() -> dict[str, RateBand]:
    raw = {
        "cardboard": ("0.30", "0.60", "0.45"),
        "plastic": ("0.40", "0.80", "0.60"),
        "glass": ("0.10", "0.30", "0.20"),
        "metal": ("1.50", "3.00", "2.25"),
        "paper": ("0.20", "0.50", "0.35"),
        "electronics": ("5.00", "15.00", "10.00"),
        "other": ("0.25", "0.50", "0.35"),
    }
    return {
        name: RateBand(Decimal(lo), Decimal(hi), Decimal(avg))
        for name, (lo, hi, avg) in raw.items()
    }


def _default_reputation_deltas() -> dict[str, int]:
    return {
        "completed": 10,
        "disputed": -20,
        "credential_verified": 5,
        "late_completion": -5,
    }


@dataclass(frozen=True)
class MarketplaceConfig:
    """Resolved marketplace parameters."""
    # Pricing
    minimum_reward: Decimal = Decimal("5")
    convenience_fee_rate: Decimal = Decimal("0.40")
    platform_fee_rate: Decimal = Decimal("0.05")
    significant_reduction_percent: Decimal = Decimal("20")
    rate_bands: dict[str, RateBand] = field(default_factory=_default_rate_bands)

    # Reputation
    initial_reputation: int = 100
    reputation_floor: int = 0
    reputation_ceiling: int = 1000
    reputation_deltas: dict[str, int] = field(default_factory=_default_reputation_deltas)

    # Lifecycle
    late_completion_hours: int = 48
    dispute_review_days: int = 3
    credential_validity_days: int = 365

    # Wallet / ledger
    network: str = "testnet"
    faucet_amount: Decimal = Decimal("100.000")
    balance_poll_seconds: float = 10.0
    tx_poll_seconds: float = 5.0
    tx_poll_ceiling_seconds: float = 300.0
    ledger_timeout_seconds: float = 15.0
    ledger_latency_seconds: float = 0.0

    # Storage
    key_prefix: str = "recyclemart_"

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> MarketplaceConfig:
        """Load parameters from config_dir/marketplace_params.json."""
        path = Path(config_dir) / CONFIG_FILENAME
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MarketplaceConfig:
        """Build a config from the JSON structure. Missing sections keep defaults.

        Raises ValueError on an unsupported schema_version.
        """
        version = data.get("schema_version", SCHEMA_VERSION)
        if version != SCHEMA_VERSION:
            raise ValueError(
                f"Unsupported config schema_version {version} "
                f"(expected {SCHEMA_VERSION})"
            )

        kwargs: dict[str, Any] = {}
        pricing = data.get("pricing", {})
        for key in (
            "minimum_reward",
            "convenience_fee_rate",
            "platform_fee_rate",
            "significant_reduction_percent",
        ):
            if key in pricing:
                kwargs[key] = Decimal(str(pricing[key]))
        if "rate_bands" in pricing:
            kwargs["rate_bands"] = {
                name: RateBand(
                    minimum=Decimal(str(band["min"])),
                    maximum=Decimal(str(band["max"])),
                    average=Decimal(str(band["avg"])),
                )
                for name, band in pricing["rate_bands"].items()
            }

        reputation = data.get("reputation", {})
        if "initial_score" in reputation:
            kwargs["initial_reputation"] = int(reputation["initial_score"])
        if "floor" in reputation:
            kwargs["reputation_floor"] = int(reputation["floor"])
        if "ceiling" in reputation:
            kwargs["reputation_ceiling"] = int(reputation["ceiling"])
        if "deltas" in reputation:
            kwargs["reputation_deltas"] = {
                k: int(v) for k, v in reputation["deltas"].items()
            }

        lifecycle = data.get("lifecycle", {})
        for key in ("late_completion_hours", "dispute_review_days", "credential_validity_days"):
            if key in lifecycle:
                kwargs[key] = int(lifecycle[key])

        wallet = data.get("wallet", {})
        if "network" in wallet:
            kwargs["network"] = str(wallet["network"])
        if "faucet_amount" in wallet:
            kwargs["faucet_amount"] = Decimal(str(wallet["faucet_amount"]))
        for key in (
            "balance_poll_seconds",
            "tx_poll_seconds",
            "tx_poll_ceiling_seconds",
            "ledger_timeout_seconds",
            "ledger_latency_seconds",
        ):
            if key in wallet:
                kwargs[key] = float(wallet[key])

        storage = data.get("storage", {})
        if "key_prefix" in storage:
            kwargs["key_prefix"] = str(storage["key_prefix"])

        config = cls(**kwargs)
        errors = config.validate()
        if errors:
            raise ValueError("Invalid marketplace config: " + "; ".join(errors))
        return config

    def validate(self) -> list[str]:
        """Check internal consistency. Returns errors (empty = OK)."""
        errors: list[str] = []
        if self.minimum_reward < 0:
            errors.append("minimum_reward must be non-negative")
        if not Decimal("0") <= self.platform_fee_rate < Decimal("1"):
            errors.append("platform_fee_rate must be in [0, 1)")
        if self.convenience_fee_rate < 0:
            errors.append("convenience_fee_rate must be non-negative")
        if "other" not in self.rate_bands:
            errors.append("rate_bands must define an 'other' fallback category")
        for name, band in self.rate_bands.items():
            if not band.minimum <= band.average <= band.maximum:
                errors.append(f"rate band '{name}' must satisfy min <= avg <= max")
        if self.reputation_floor > self.reputation_ceiling:
            errors.append("reputation floor exceeds ceiling")
        if not self.reputation_floor <= self.initial_reputation <= self.reputation_ceiling:
            errors.append("initial reputation outside [floor, ceiling]")
        for key in ("balance_poll_seconds", "tx_poll_seconds", "ledger_timeout_seconds"):
            if getattr(self, key) <= 0:
                errors.append(f"{key} must be positive")
        return errors

    def rate_band(self, category: str) -> RateBand:
        """Rate band for a category, falling back to 'other'."""
        return self.rate_bands.get(category, self.rate_bands["other"])

    def reputation_delta(self, event: str) -> int:
        return self.reputation_deltas.get(event, 0)

    def with_overrides(self, **overrides: Any) -> MarketplaceConfig:
        """Return a copy with selected fields replaced (e.g. short poll intervals)."""
        values = {name: getattr(self, name) for name in self.__dataclass_fields__}
        values.update(overrides)
        return MarketplaceConfig(**values)


def load_config(config_dir: Optional[Path] = None) -> MarketplaceConfig:
    """Load from config_dir when it holds a params file, else use defaults."""
    if config_dir is not None and (Path(config_dir) / CONFIG_FILENAME).exists():
        return MarketplaceConfig.from_config_dir(Path(config_dir))
    return MarketplaceConfig()
