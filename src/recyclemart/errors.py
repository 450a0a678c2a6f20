"""Error taxonomy for the marketplace.

Components raise the exceptions below. The service layer catches them
and converts them into a ServiceResult carrying an ErrorKind, so callers
never have to handle exceptions for expected business conditions.
"""

from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    """Classification of a failed service operation."""
    VALIDATION_ERROR = "validation_error"
    INVALID_TRANSITION = "invalid_transition"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    EXTERNAL_SERVICE_ERROR = "external_service_error"
    IDENTITY_NOT_FOUND = "identity_not_found"
    NO_WALLET_FOUND = "no_wallet_found"


class MarketplaceError(Exception):
    """Base class for marketplace component errors."""
    kind: ErrorKind = ErrorKind.VALIDATION_ERROR


class RecordNotFoundError(MarketplaceError, KeyError):
    """A job, user, transaction or credential lookup missed."""
    kind = ErrorKind.NOT_FOUND

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else "Record not found"


class IdentityNotFoundError(RecordNotFoundError):
    """No identity is registered for an address."""
    kind = ErrorKind.IDENTITY_NOT_FOUND


class LedgerError(MarketplaceError):
    """The ledger client failed or did not answer in time."""
    kind = ErrorKind.EXTERNAL_SERVICE_ERROR


class LedgerTimeoutError(LedgerError):
    """A ledger call did not resolve within the configured window."""


class NoWalletFoundError(MarketplaceError):
    """connect("existing") found no previously persisted wallet."""
    kind = ErrorKind.NO_WALLET_FOUND
