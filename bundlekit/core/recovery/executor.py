"""
Retry Executor

Runs one asynchronous operation with bounded retries: the circuit breaker
gates every attempt, failures are classified, and retryable kinds back off
according to the retry policy.

Only two outcomes leave execute(): the operation's result, or the last
exception it raised (annotated with `classification` and `attempts`). The one
exception to this is the breaker gate, which raises CircuitOpenError.
"""

import asyncio
import logging
import random
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Coroutine,
    Dict,
    Optional,
    TypeVar,
)

from .errors import (
    CircuitOpenError,
    ClassifiedError,
    ErrorKind,
    classify_error,
)
from .strategies import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    RetryPolicy,
)

if TYPE_CHECKING:
    from ..execution.tracker import TransactionLifecycleTracker

T = TypeVar("T")

Operation = Callable[[], Coroutine[Any, Any, T]]
Sleep = Callable[[float], Awaitable[None]]


class RetryExecutor:
    """
    Executes operations with retry, backoff and circuit breaking.

    The executor owns no policy of its own: it is parameterized by an
    explicit RetryPolicy and a CircuitBreaker, which may be shared with
    other executors protecting the same dependency.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        breaker: Optional[CircuitBreaker] = None,
        *,
        name: str = "default",
        tracker: Optional["TransactionLifecycleTracker"] = None,
        sleep: Sleep = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        logger: Optional[logging.Logger] = None,
    ):
        self.name = name
        self.policy = policy or RetryPolicy()
        self.logger = logger or logging.getLogger(__name__)
        self.breaker = breaker or CircuitBreaker(name=name, logger=self.logger)
        self.tracker = tracker
        self._sleep = sleep
        self._rng = rng
        self._trial_in_flight = False

    async def execute(
        self,
        operation: Operation,
        context: Optional[Dict[str, Any]] = None,
        *,
        operation_id: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> T:
        """
        Execute an operation with retries.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt
            context: Extra fields for logs and the classified error
            operation_id: When set (and a tracker is attached), the whole
                execution is recorded as one transaction record
            timeout_ms: Deadline applied to each attempt

        Returns:
            The operation's result

        Raises:
            The last exception raised by the operation, or CircuitOpenError
        """
        ctx = dict(context or {})
        tracked = False
        if self.tracker is not None and operation_id is not None:
            tracked = self.tracker.start(operation_id, ctx)

        try:
            result = await self._run(operation, ctx, timeout_ms)
        except BaseException as exc:
            # Cancellation also closes the record
            if tracked:
                self.tracker.fail(operation_id, exc)
            raise

        if tracked:
            self.tracker.succeed(operation_id)
        return result

    async def _run(
        self,
        operation: Operation,
        ctx: Dict[str, Any],
        timeout_ms: Optional[int],
    ) -> T:
        operation_name = ctx.get("operation", "operation")
        max_attempts = self.policy.max_attempts
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            trial = self._admit(attempt, last_error)
            self.logger.debug(
                f"{operation_name} attempt {attempt}/{max_attempts}",
                extra={"executor": self.name, "context": ctx},
            )

            try:
                result = await self._invoke(operation, timeout_ms)
            except Exception as exc:
                last_error = exc
                classified = classify_error(
                    exc, {**ctx, "attempt": attempt, "maxAttempts": max_attempts}
                )
                self.breaker.on_failure(exc)
                annotate(exc, classified, attempt)

                if not classified.retryable:
                    self.logger.error(
                        f"{operation_name} failed with non-retryable "
                        f"{classified.kind.value} error: {classified.message}",
                        extra={"error": classified.to_dict()},
                    )
                    raise

                if attempt >= max_attempts:
                    self.logger.error(
                        f"{operation_name} failed after {attempt} attempts: "
                        f"{classified.message}",
                        extra={"error": classified.to_dict()},
                    )
                    raise

                delay_ms = self.policy.delay(attempt, self._rng)
                self.logger.warning(
                    f"{operation_name} attempt {attempt}/{max_attempts} failed "
                    f"({classified.kind.value}). Retrying in {delay_ms}ms",
                    extra={
                        "errorKind": classified.kind.value,
                        "delayMs": delay_ms,
                        "nextAttempt": attempt + 1,
                    },
                )
                await self._sleep(delay_ms / 1000.0)
            else:
                self.breaker.on_success()
                if attempt > 1:
                    self.logger.info(
                        f"{operation_name} succeeded on attempt {attempt}",
                        extra={"executor": self.name, "context": ctx},
                    )
                return result
            finally:
                if trial:
                    self._trial_in_flight = False

        # max_attempts >= 1 is enforced by RetryPolicy, so the loop always
        # returns or raises.
        raise AssertionError("unreachable")

    def _admit(self, attempt: int, last_error: Optional[Exception]) -> bool:
        """Breaker gate. Returns True when this attempt is the half-open trial."""
        if not self.breaker.can_execute():
            self._reject(attempt, last_error)

        if self.breaker.state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                self._reject(attempt, last_error)
            self._trial_in_flight = True
            return True
        return False

    def _reject(self, attempt: int, last_error: Optional[Exception]) -> None:
        error = CircuitOpenError(self.breaker.name, self.breaker.snapshot())
        classified = ClassifiedError(
            kind=ErrorKind.CIRCUIT_OPEN,
            retryable=False,
            message=str(error),
            context={"executor": self.name},
        )
        annotate(error, classified, attempt - 1)
        self.logger.warning(str(error), extra={"error": classified.to_dict()})
        raise error from last_error

    async def _invoke(self, operation: Operation, timeout_ms: Optional[int]) -> T:
        if timeout_ms is None:
            return await operation()
        return await asyncio.wait_for(operation(), timeout=timeout_ms / 1000.0)


def annotate(error: BaseException, classified: ClassifiedError, attempts: int) -> None:
    """Attach classification metadata to an exception being propagated."""
    error.classification = classified
    error.attempts = attempts


def get_classification(error: BaseException) -> ClassifiedError:
    """The classification attached by the executor, or a fresh one."""
    classified = getattr(error, "classification", None)
    if isinstance(classified, ClassifiedError):
        return classified
    return classify_error(error)


# Transaction preset: slower, more patient retries and a more sensitive breaker
TRANSACTION_RETRY_POLICY = RetryPolicy(
    max_attempts=5,
    base_delay_ms=2000,
    max_delay_ms=60000,
    exponential_base=2,
    jitter_fraction=0.2,
)

TRANSACTION_BREAKER_CONFIG = CircuitBreakerConfig(
    failure_threshold=3,
    recovery_timeout_ms=120000,
    monitoring_period_ms=600000,
)

_POLICY_FIELDS = ("max_attempts", "base_delay_ms", "max_delay_ms", "exponential_base", "jitter_fraction")
_BREAKER_FIELDS = ("failure_threshold", "recovery_timeout_ms", "monitoring_period_ms")


def transaction_defaults(
    name: str = "transactions",
    *,
    breaker: Optional[CircuitBreaker] = None,
    tracker: Optional["TransactionLifecycleTracker"] = None,
    sleep: Sleep = asyncio.sleep,
    logger: Optional[logging.Logger] = None,
    **overrides: Any,
) -> RetryExecutor:
    """
    Build an executor with the transaction preset.

    Keyword overrides may name any RetryPolicy or CircuitBreakerConfig
    field; None values are ignored.
    """
    unknown = set(overrides) - set(_POLICY_FIELDS) - set(_BREAKER_FIELDS)
    if unknown:
        raise TypeError(f"Unknown transaction_defaults overrides: {sorted(unknown)}")

    policy = RetryPolicy(
        **{
            f: overrides[f] if overrides.get(f) is not None else getattr(TRANSACTION_RETRY_POLICY, f)
            for f in _POLICY_FIELDS
        }
    )
    if breaker is None:
        breaker = CircuitBreaker(
            name=name,
            config=CircuitBreakerConfig(
                **{
                    f: overrides[f]
                    if overrides.get(f) is not None
                    else getattr(TRANSACTION_BREAKER_CONFIG, f)
                    for f in _BREAKER_FIELDS
                }
            ),
            logger=logger,
        )
    return RetryExecutor(
        policy,
        breaker,
        name=name,
        tracker=tracker,
        sleep=sleep,
        logger=logger,
    )
