"""Decentralized identity and reputation."""

from recyclemart.identity.registry import IdentityRegistry

__all__ = ["IdentityRegistry"]
