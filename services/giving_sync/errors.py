"""
Error taxonomy for the sync engine.

Every failure raised by the gateways and the engine is a ``SyncError``
tagged with an ``ErrorKind`` and a ``retryable`` flag; callers branch on
``error.kind`` instead of catching specific exception classes. The
subclasses only preset the kind so raise sites read naturally.

A lock held by another run and an idempotency hit are outcomes, not
errors, and never appear here.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Category of a sync failure."""

    TRANSIENT = "transient"            # 429/5xx/transport, retried with backoff
    CONFIGURATION = "configuration"    # missing mapping, account, credentials
    AUTHENTICATION = "authentication"  # ledger token invalid after refresh
    UPSTREAM = "upstream"              # non-retryable HTTP error from an API
    DATA = "data"                      # payload that cannot be interpreted


class SyncError(Exception):
    """Base exception carrying a tagged error kind."""

    default_kind = ErrorKind.DATA

    def __init__(
        self,
        message: str,
        kind: Optional[ErrorKind] = None,
        retryable: bool = False,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind
        self.retryable = retryable
        self.status_code = status_code
        self.body = body

    def to_record(self, **context: Any) -> "ErrorRecord":
        """Convert into a collectable error record."""
        if self.status_code is not None:
            context.setdefault("status_code", self.status_code)
        return ErrorRecord(kind=self.kind, message=self.message, context=context)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class ConfigurationError(SyncError):
    """Missing or invalid configuration (accounts, mappings, credentials)."""

    default_kind = ErrorKind.CONFIGURATION


class SourceAPIError(SyncError):
    """Error returned by the giving platform API."""

    default_kind = ErrorKind.UPSTREAM


class LedgerAPIError(SyncError):
    """Error returned by the ledger API."""

    default_kind = ErrorKind.UPSTREAM


class TokenRefreshError(SyncError):
    """The ledger access token could not be refreshed. Always fatal."""

    default_kind = ErrorKind.AUTHENTICATION


class LockLostError(SyncError):
    """The run lock lease was taken over by another run mid-commit."""

    default_kind = ErrorKind.TRANSIENT


@dataclass
class ErrorRecord:
    """One collected per-group/per-item error."""

    kind: ErrorKind
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException, **context: Any) -> "ErrorRecord":
        """Wrap any exception; non-SyncErrors are recorded as DATA errors."""
        if isinstance(exc, SyncError):
            return exc.to_record(**context)
        return cls(
            kind=ErrorKind.DATA,
            message=f"{type(exc).__name__}: {exc}",
            context=context,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "context": self.context,
        }

    def __str__(self) -> str:
        return self.message
