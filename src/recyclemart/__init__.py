"""RecycleMart — peer-to-peer recycling marketplace with simulated ledger payments."""

__version__ = "0.1.0"
