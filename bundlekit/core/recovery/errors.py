"""
Error Classification

Maps raw failures from chain providers and bundle relays into a closed
taxonomy. Each kind is either retryable (transient) or terminal.

Classification is an ordered rule table. Each rule matches on an explicit
code, an exception type or a message substring, and the first matching
rule wins.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple, Type

import httpx


class ErrorKind(str, Enum):
    """Categories of errors for retry decisions."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    SERVER = "server"
    GAS_ESTIMATION = "gas_estimation"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    REVERTED = "reverted"
    NONCE_TOO_LOW = "nonce_too_low"
    GAS_PRICE_TOO_LOW = "gas_price_too_low"
    CONTRACT = "contract"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"
    # Raised by the executor's breaker gate, never by classify_error
    CIRCUIT_OPEN = "circuit_open"


KIND_DESCRIPTIONS: Dict[ErrorKind, str] = {
    ErrorKind.NETWORK: "Network connectivity issues",
    ErrorKind.TIMEOUT: "Request timeout",
    ErrorKind.RATE_LIMITED: "Rate limit exceeded",
    ErrorKind.SERVER: "Server-side error",
    ErrorKind.GAS_ESTIMATION: "Gas estimation failed",
    ErrorKind.INSUFFICIENT_FUNDS: "Insufficient funds",
    ErrorKind.REVERTED: "Transaction reverted",
    ErrorKind.NONCE_TOO_LOW: "Nonce too low",
    ErrorKind.GAS_PRICE_TOO_LOW: "Gas price too low",
    ErrorKind.CONTRACT: "Smart contract error",
    ErrorKind.VALIDATION: "Input validation error",
    ErrorKind.CONFIGURATION: "Configuration error",
    ErrorKind.UNKNOWN: "Unknown error type",
    ErrorKind.CIRCUIT_OPEN: "Circuit breaker is open",
}

RETRYABLE_KINDS: FrozenSet[ErrorKind] = frozenset(
    {
        ErrorKind.NETWORK,
        ErrorKind.TIMEOUT,
        ErrorKind.RATE_LIMITED,
        ErrorKind.SERVER,
        ErrorKind.GAS_ESTIMATION,
        ErrorKind.NONCE_TOO_LOW,
        ErrorKind.GAS_PRICE_TOO_LOW,
    }
)


def is_retryable(kind: ErrorKind) -> bool:
    """Whether failures of this kind may be retried."""
    return kind in RETRYABLE_KINDS


@dataclass
class ClassifiedError:
    """One classified failure occurrence."""

    kind: ErrorKind
    retryable: bool
    message: str
    code: Any = None
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def description(self) -> str:
        return KIND_DESCRIPTIONS[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "retryable": self.retryable,
            "message": self.message,
            "code": self.code,
            "description": self.description,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }


# =============================================================================
# Exceptions
# =============================================================================


class BundlerError(Exception):
    """Base class for errors raised by bundlekit itself."""

    default_code: Optional[str] = None

    def __init__(
        self,
        message: str,
        code: Any = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code if code is not None else self.default_code
        self.details = details or {}


class ConfigurationError(BundlerError):
    """Invalid or missing configuration."""

    default_code = "CONFIGURATION_ERROR"


class CircuitOpenError(BundlerError):
    """The circuit breaker rejected an attempt before it started."""

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, name: str, state: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Circuit breaker '{name}' is open - operation not allowed",
            details={"breaker": name, **(state or {})},
        )
        self.name = name


class GasEstimationError(BundlerError):
    """The provider could not produce a usable gas quote."""

    default_code = "GAS_ESTIMATION_FAILED"


class RpcError(BundlerError):
    """JSON-RPC error object returned by a chain node."""


class RelayError(BundlerError):
    """Error body returned by the bundle relay."""


class BundleAssemblyError(BundlerError):
    """A bundle step could not be constructed."""

    def __init__(
        self,
        message: str,
        step: Optional[str] = None,
        index: Optional[int] = None,
        code: Any = None,
    ):
        super().__init__(message, code=code, details={"step": step, "index": index})
        self.step = step
        self.index = index


class BundleSimulationError(BundlerError):
    """The relay simulated the bundle and reported a failing transaction."""

    default_code = "TRANSACTION_REVERTED"


class TransactionNotPendingError(BundlerError, LookupError):
    """finish() was called for an id with no pending record."""


# =============================================================================
# Classification rules
# =============================================================================


@dataclass(frozen=True)
class ClassificationRule:
    """Maps explicit codes, exception types and message fragments to a kind."""

    kind: ErrorKind
    codes: FrozenSet[Any] = frozenset()
    exception_types: Tuple[Type[BaseException], ...] = ()
    patterns: Tuple[str, ...] = ()
    min_code: Optional[int] = None

    def matches_code(self, error: BaseException, code: Any) -> bool:
        if self.exception_types and isinstance(error, self.exception_types):
            return True
        if code is None:
            return False
        if isinstance(code, str) and code.upper() in self.codes:
            return True
        if isinstance(code, int) and not isinstance(code, bool):
            if code in self.codes:
                return True
            if self.min_code is not None and code >= self.min_code:
                return True
        return False

    def matches_message(self, message: str) -> bool:
        return any(p in message for p in self.patterns)

    def matches(self, error: BaseException, code: Any, message: str) -> bool:
        return self.matches_code(error, code) or self.matches_message(message)


CLASSIFICATION_RULES: Tuple[ClassificationRule, ...] = (
    # Setup failures stay terminal whatever their message mentions
    ClassificationRule(
        ErrorKind.CONFIGURATION,
        codes=frozenset({"CONFIGURATION_ERROR"}),
        exception_types=(ConfigurationError,),
    ),
    ClassificationRule(
        ErrorKind.NETWORK,
        codes=frozenset({"NETWORK_ERROR"}),
        exception_types=(httpx.NetworkError, ConnectionError),
        patterns=("network", "connection"),
    ),
    ClassificationRule(
        ErrorKind.TIMEOUT,
        codes=frozenset({"TIMEOUT"}),
        exception_types=(httpx.TimeoutException, asyncio.TimeoutError, TimeoutError),
        patterns=("timeout", "timed out"),
    ),
    ClassificationRule(
        ErrorKind.RATE_LIMITED,
        codes=frozenset({"RATE_LIMITED", 429}),
        patterns=("rate limit", "too many requests"),
    ),
    ClassificationRule(
        ErrorKind.SERVER,
        codes=frozenset({"SERVER_ERROR"}),
        min_code=500,
        patterns=("server error", "internal error"),
    ),
    ClassificationRule(
        ErrorKind.GAS_ESTIMATION,
        codes=frozenset({"GAS_ESTIMATION_FAILED", "UNPREDICTABLE_GAS_LIMIT"}),
        patterns=("gas estimation", "cannot estimate gas"),
    ),
    ClassificationRule(
        ErrorKind.INSUFFICIENT_FUNDS,
        codes=frozenset({"INSUFFICIENT_FUNDS"}),
        patterns=("insufficient funds", "insufficient balance"),
    ),
    ClassificationRule(
        ErrorKind.REVERTED,
        codes=frozenset({"TRANSACTION_REVERTED"}),
        patterns=("revert",),
    ),
    ClassificationRule(
        ErrorKind.NONCE_TOO_LOW,
        codes=frozenset({"NONCE_EXPIRED", "NONCE_TOO_LOW"}),
        patterns=("nonce",),
    ),
    ClassificationRule(
        ErrorKind.GAS_PRICE_TOO_LOW,
        codes=frozenset({"GAS_PRICE_TOO_LOW", "REPLACEMENT_UNDERPRICED"}),
        patterns=("gas price", "underpriced"),
    ),
    ClassificationRule(
        ErrorKind.CONTRACT,
        codes=frozenset({"CALL_EXCEPTION", "CONTRACT_ERROR"}),
        patterns=("contract", "call exception"),
    ),
    ClassificationRule(
        ErrorKind.VALIDATION,
        codes=frozenset({"INVALID_ARGUMENT", "VALIDATION_ERROR"}),
        patterns=("invalid", "validation"),
    ),
)


def error_code(error: BaseException) -> Any:
    """Best-effort extraction of an explicit error code."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return getattr(error, "code", None)


def classify_kind(
    error: BaseException,
    rules: Tuple[ClassificationRule, ...] = CLASSIFICATION_RULES,
) -> ErrorKind:
    """Return the kind of the first rule matching by code, type or message."""
    code = error_code(error)
    message = str(error).lower()
    for rule in rules:
        if rule.matches(error, code, message):
            return rule.kind

    return ErrorKind.UNKNOWN


def classify_error(
    error: BaseException,
    context: Optional[Dict[str, Any]] = None,
) -> ClassifiedError:
    """
    Classify an exception.

    Total: anything that matches no rule is UNKNOWN (terminal). Does not log;
    callers decide what to record.
    """
    kind = classify_kind(error)
    return ClassifiedError(
        kind=kind,
        retryable=is_retryable(kind),
        message=str(error) or error.__class__.__name__,
        code=error_code(error),
        context=dict(context or {}),
    )
