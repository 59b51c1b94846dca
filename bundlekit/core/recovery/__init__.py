"""
Error Recovery Module

Provides error classification, backoff policy, circuit breaking and the
retry executor used for every remote call the engine makes.
"""

from .errors import (
    BundleAssemblyError,
    BundlerError,
    BundleSimulationError,
    CircuitOpenError,
    ClassifiedError,
    ConfigurationError,
    ErrorKind,
    GasEstimationError,
    RelayError,
    RpcError,
    TransactionNotPendingError,
    classify_error,
    is_retryable,
)
from .executor import RetryExecutor, get_classification, transaction_defaults
from .strategies import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    RetryPolicy,
)

__all__ = [
    # Errors
    "BundlerError",
    "ConfigurationError",
    "CircuitOpenError",
    "GasEstimationError",
    "RpcError",
    "RelayError",
    "BundleAssemblyError",
    "BundleSimulationError",
    "TransactionNotPendingError",
    "ErrorKind",
    "ClassifiedError",
    "classify_error",
    "is_retryable",
    # Executor
    "RetryExecutor",
    "transaction_defaults",
    "get_classification",
    # Strategies
    "RetryPolicy",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
]
