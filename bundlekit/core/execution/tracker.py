"""
Transaction lifecycle tracking.

Records start/finish of every tracked operation and aggregates success rate,
gas, fees and throughput. A record lives in exactly one of the pending,
completed or failed maps.
"""

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Union

from ..recovery.errors import TransactionNotPendingError
from .models import Metrics, TransactionRecord, TransactionStatus, utcnow

logger = logging.getLogger(__name__)


class TransactionLifecycleTracker:
    """
    Tracks operations from start to finish.

    Running aggregates (counts, gas, fees, durations) are never reduced when
    old completed/failed records are evicted from retention.
    """

    def __init__(
        self,
        max_retained: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_retained < 1:
            raise ValueError("max_retained must be at least 1")
        self.max_retained = max_retained
        self._clock = clock
        self._lock = threading.Lock()
        self._started_at = clock()

        self._pending: Dict[str, TransactionRecord] = {}
        self._completed: "OrderedDict[str, TransactionRecord]" = OrderedDict()
        self._failed: "OrderedDict[str, TransactionRecord]" = OrderedDict()
        self._start_clock: Dict[str, float] = {}

        self._total_count = 0
        self._success_count = 0
        self._fail_count = 0
        self._total_gas_used = 0
        self._total_fee_paid = 0
        self._total_success_duration_ms = 0.0

    def start(self, tx_id: str, metadata: Optional[Dict[str, Any]] = None) -> bool:
        """Create a pending record. Returns False (and changes nothing) for a known id."""
        with self._lock:
            if tx_id in self._pending or tx_id in self._completed or tx_id in self._failed:
                duplicate = True
            else:
                duplicate = False
                self._pending[tx_id] = TransactionRecord(id=tx_id, metadata=dict(metadata or {}))
                self._start_clock[tx_id] = self._clock()
                self._total_count += 1

        if duplicate:
            logger.warning(f"Transaction {tx_id} is already tracked; ignoring duplicate start")
            return False
        logger.info(f"Transaction started monitoring: {tx_id}", extra={"txId": tx_id})
        return True

    def finish(
        self,
        tx_id: str,
        status: Union[TransactionStatus, str],
        *,
        gas_used: int = 0,
        effective_price: int = 0,
        error: Optional[Union[BaseException, str]] = None,
    ) -> TransactionRecord:
        """Move a pending record to success or failed and update aggregates."""
        status = TransactionStatus(status)
        if status == TransactionStatus.PENDING:
            raise ValueError("finish() requires a terminal status")

        with self._lock:
            record = self._pending.pop(tx_id, None)
            if record is None:
                raise TransactionNotPendingError(f"No pending transaction with id {tx_id}")

            duration_ms = (self._clock() - self._start_clock.pop(tx_id)) * 1000.0
            record.status = status
            record.end_time = utcnow()
            record.duration_ms = duration_ms

            if status == TransactionStatus.SUCCESS:
                record.gas_used = gas_used
                record.effective_price = effective_price
                self._success_count += 1
                self._total_gas_used += gas_used
                self._total_fee_paid += gas_used * effective_price
                self._total_success_duration_ms += duration_ms
                self._retain(self._completed, record)
            else:
                if isinstance(error, BaseException):
                    record.error = str(error) or error.__class__.__name__
                else:
                    record.error = error if error is not None else "Unknown error"
                self._fail_count += 1
                self._retain(self._failed, record)

        if status == TransactionStatus.SUCCESS:
            logger.info(
                f"Transaction successful: {tx_id}",
                extra={"gasUsed": gas_used, "gasPrice": effective_price, "durationMs": duration_ms},
            )
        else:
            logger.error(
                f"Transaction failed: {tx_id}",
                extra={"txError": record.error, "durationMs": duration_ms},
            )
        return record

    def succeed(self, tx_id: str, *, gas_used: int = 0, effective_price: int = 0) -> TransactionRecord:
        return self.finish(
            tx_id, TransactionStatus.SUCCESS, gas_used=gas_used, effective_price=effective_price
        )

    def fail(self, tx_id: str, error: Optional[Union[BaseException, str]] = None) -> TransactionRecord:
        return self.finish(tx_id, TransactionStatus.FAILED, error=error)

    def get(self, tx_id: str) -> Optional[TransactionRecord]:
        with self._lock:
            return (
                self._pending.get(tx_id)
                or self._completed.get(tx_id)
                or self._failed.get(tx_id)
            )

    def metrics(self) -> Metrics:
        with self._lock:
            uptime = self._clock() - self._started_at
            finished = self._success_count + self._fail_count
            return Metrics(
                total_count=self._total_count,
                success_count=self._success_count,
                fail_count=self._fail_count,
                pending_count=len(self._pending),
                total_gas_used=self._total_gas_used,
                total_fee_paid=self._total_fee_paid,
                average_price=(
                    self._total_fee_paid // self._total_gas_used if self._total_gas_used else 0
                ),
                success_rate=(
                    self._success_count / self._total_count if self._total_count else 0.0
                ),
                average_duration_ms=(
                    self._total_success_duration_ms / self._success_count
                    if self._success_count
                    else 0.0
                ),
                throughput_per_minute=finished / (uptime / 60.0) if uptime > 0 else 0.0,
                uptime_seconds=uptime,
            )

    def recent_completed(self, limit: int = 10) -> List[TransactionRecord]:
        with self._lock:
            return list(self._completed.values())[-limit:] if limit > 0 else []

    def recent_failed(self, limit: int = 5) -> List[TransactionRecord]:
        with self._lock:
            return list(self._failed.values())[-limit:] if limit > 0 else []

    def report(self, recent_success: int = 10, recent_failed: int = 5) -> Dict[str, Any]:
        """Snapshot of metrics plus the most recent completed and failed records."""
        report = {
            "timestamp": utcnow().isoformat(),
            "metrics": self.metrics().to_dict(),
            "recentTransactions": [r.to_dict() for r in self.recent_completed(recent_success)],
            "recentFailures": [r.to_dict() for r in self.recent_failed(recent_failed)],
        }
        logger.info("Transaction monitoring report generated", extra={"report": report})
        return report

    def _retain(self, bucket: "OrderedDict[str, TransactionRecord]", record: TransactionRecord) -> None:
        bucket[record.id] = record
        while len(bucket) > self.max_retained:
            bucket.popitem(last=False)
