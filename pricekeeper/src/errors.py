"""Error kinds and exception taxonomy shared by every keeper component.

Components that validate data (PriceAggregator, UpdateProtocol) report
failures as values tagged with an :class:`ErrorKind`. Components that own a
resource (PriceFeedAccount, ledger clients) raise the matching exception.
:func:`error_for` converts a kind back into its exception so the two styles
meet at the scheduler.

Taxonomy:
    - ValidationError: malformed input, fixable by the caller
    - AuthorizationError: wrong signer, never retried with the same signer
    - StaleDataError: quote or command too old, fixable by refetching
    - TransportError: submission/network failure, retried with backoff
    - CircuitOpenError: feed suspended, always surfaced to the operator
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Distinct failure tags used in results, logs and scheduler state."""

    MISSING_ACCOUNT = "missing_account"
    NOT_INITIALIZED = "not_initialized"
    ALREADY_INITIALIZED = "already_initialized"
    UNAUTHORIZED = "unauthorized"
    NON_POSITIVE_PRICE = "non_positive_price"
    CONFIDENCE_OUT_OF_RANGE = "confidence_out_of_range"
    NON_POSITIVE_SEQUENCE = "non_positive_sequence"
    STALE_TIMESTAMP = "stale_timestamp"
    INSUFFICIENT_SOURCES = "insufficient_sources"
    REPLAYED_SEQUENCE = "replayed_sequence"
    TOO_MANY_OUTLIERS = "too_many_outliers"
    DRIFT_TOO_LARGE = "drift_too_large"
    CIRCUIT_OPEN = "circuit_open"
    UNSUPPORTED_VERSION = "unsupported_version"
    MALFORMED_DATA = "malformed_data"
    INVALID_PARAMETER = "invalid_parameter"
    TRANSPORT = "transport"

    def __str__(self) -> str:
        return self.value


class KeeperError(Exception):
    """Base exception for keeper errors.

    :ivar kind: The failure tag for this error.
    """

    default_kind = ErrorKind.INVALID_PARAMETER

    def __init__(self, message: str = "", kind: ErrorKind | None = None) -> None:
        """Initialize the error.

        :param message: Human readable description.
        :param kind: Failure tag; defaults to the class's ``default_kind``.
        """
        self.kind = kind or self.default_kind
        super().__init__(message or self.kind.value)


class ValidationError(KeeperError):
    """Raised when input parameters are malformed."""

    pass


class NotInitializedError(ValidationError):
    """Raised when operating on an account that was never initialized."""

    default_kind = ErrorKind.NOT_INITIALIZED


class AlreadyInitializedError(ValidationError):
    """Raised when initializing an account a second time."""

    default_kind = ErrorKind.ALREADY_INITIALIZED


class UnsupportedVersionError(ValidationError):
    """Raised when decoding a layout version this code does not know.

    :ivar version: The version byte found in the data.
    """

    default_kind = ErrorKind.UNSUPPORTED_VERSION

    def __init__(self, version: int) -> None:
        self.version = version
        super().__init__(f"Unsupported layout version {version}")


class MalformedDataError(ValidationError):
    """Raised when encoded bytes are truncated or inconsistent."""

    default_kind = ErrorKind.MALFORMED_DATA


class AccountNotFoundError(ValidationError):
    """Raised by ledger clients when an account address holds no data."""

    default_kind = ErrorKind.MISSING_ACCOUNT


class AuthorizationError(KeeperError):
    """Raised when the signer is not the account's authority."""

    default_kind = ErrorKind.UNAUTHORIZED


class StaleDataError(KeeperError):
    """Raised when a quote or command timestamp is too old."""

    default_kind = ErrorKind.STALE_TIMESTAMP


class TransportError(KeeperError):
    """Raised when a submission or network call fails."""

    default_kind = ErrorKind.TRANSPORT


class CircuitOpenError(KeeperError):
    """Raised when a feed is suspended by its circuit breaker."""

    default_kind = ErrorKind.CIRCUIT_OPEN


_KIND_TO_ERROR: dict[ErrorKind, type[KeeperError]] = {
    ErrorKind.MISSING_ACCOUNT: AccountNotFoundError,
    ErrorKind.NOT_INITIALIZED: NotInitializedError,
    ErrorKind.ALREADY_INITIALIZED: AlreadyInitializedError,
    ErrorKind.UNAUTHORIZED: AuthorizationError,
    ErrorKind.STALE_TIMESTAMP: StaleDataError,
    ErrorKind.REPLAYED_SEQUENCE: StaleDataError,
    ErrorKind.MALFORMED_DATA: MalformedDataError,
    ErrorKind.CIRCUIT_OPEN: CircuitOpenError,
    ErrorKind.TRANSPORT: TransportError,
}


def error_for(kind: ErrorKind, message: str = "") -> KeeperError:
    """Build the exception that corresponds to a failure kind.

    :param kind: Failure tag.
    :param message: Optional description.
    :returns: Exception instance (not raised).

    .. code-block:: python

        >>> error_for(ErrorKind.UNAUTHORIZED).__class__.__name__
        'AuthorizationError'
        >>> error_for(ErrorKind.NON_POSITIVE_PRICE).__class__.__name__
        'ValidationError'
    """
    if kind is ErrorKind.UNSUPPORTED_VERSION:
        return ValidationError(message, kind=kind)
    cls = _KIND_TO_ERROR.get(kind, ValidationError)
    return cls(message, kind=kind)
