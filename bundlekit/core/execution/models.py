"""
Execution models and types.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .gas import GasPriceEstimator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionStatus(str, Enum):
    """Tracked operation lifecycle status."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class StepKind(str, Enum):
    """Bundle step kinds, declared in their required logical order."""
    DEPLOY = "deploy"
    APPROVE_BASE = "approve_base"           # Approve the base asset to the position manager
    APPROVE_TOKEN = "approve_token"         # Approve the new token to the position manager
    CREATE_POOL = "create_pool"
    ADD_LIQUIDITY = "add_liquidity"
    APPROVE_ROUTER = "approve_router"
    SWAP = "swap"
    FEE_TRANSFER = "fee_transfer"


STEP_ORDER: Dict[StepKind, int] = {kind: index for index, kind in enumerate(StepKind)}


@dataclass(frozen=True)
class FeeData:
    """Network fee data as reported by the chain provider."""
    gas_price: Optional[int]
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None


@dataclass(frozen=True)
class GasQuote:
    """One price observation after multiplier and clamping."""
    price: int
    observed_base_fee: int                      # Raw provider price, diagnostic only
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price": str(self.price),
            "observedBaseFee": str(self.observed_base_fee),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class TransactionRecord:
    """One tracked operation."""
    id: str
    status: TransactionStatus = TransactionStatus.PENDING
    metadata: Dict[str, Any] = field(default_factory=dict)
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    duration_ms: Optional[float] = None
    gas_used: int = 0
    effective_price: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "metadata": self.metadata,
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat() if self.end_time else None,
            "durationMs": self.duration_ms,
            "gasUsed": self.gas_used,
            "effectivePrice": str(self.effective_price),
            "error": self.error,
        }


@dataclass
class Metrics:
    """Aggregate over all tracked records."""
    total_count: int = 0
    success_count: int = 0
    fail_count: int = 0
    pending_count: int = 0
    total_gas_used: int = 0
    total_fee_paid: int = 0
    average_price: int = 0
    success_rate: float = 0.0
    average_duration_ms: float = 0.0
    throughput_per_minute: float = 0.0
    uptime_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalTransactions": self.total_count,
            "successfulTransactions": self.success_count,
            "failedTransactions": self.fail_count,
            "pendingTransactions": self.pending_count,
            "totalGasUsed": self.total_gas_used,
            "totalFeesPaid": str(self.total_fee_paid),
            "averageGasPrice": str(self.average_price),
            "successRate": f"{self.success_rate * 100:.2f}%",
            "averageTransactionTimeMs": round(self.average_duration_ms, 2),
            "throughputPerMinute": round(self.throughput_per_minute, 4),
            "uptime": f"{int(self.uptime_seconds)}s",
        }


@dataclass
class StepContext:
    """Everything a step builder may use while producing its signed payload."""
    index: int
    nonce: int
    gas_price: int
    sender: str
    chain_id: int
    estimator: Optional["GasPriceEstimator"] = None
    # Results of earlier steps in the same bundle, keyed by step kind
    previous: Dict[StepKind, "PreparedStep"] = field(default_factory=dict)


StepBuilder = Callable[[StepContext], Awaitable[str]]


@dataclass
class BundleStep:
    """One unit of a multi-step bundle."""
    kind: StepKind
    build: StepBuilder
    description: str = ""
    nonce_offset: Optional[int] = None          # If set, must equal the step position


@dataclass
class PreparedStep:
    """A built, signed step ready for submission."""
    kind: StepKind
    index: int
    nonce: int
    payload: str                                # Hex, without 0x prefix


@dataclass
class Bundle:
    """Ordered steps sharing one nonce base, one gas price and one target block."""
    bundle_id: str
    nonce_base: int
    gas_price: int
    target_block: int
    steps: List[PreparedStep] = field(default_factory=list)

    @property
    def payloads(self) -> List[str]:
        return [step.payload for step in self.steps]

    @property
    def nonces(self) -> List[int]:
        return [step.nonce for step in self.steps]

    @property
    def target_block_hex(self) -> str:
        return hex(self.target_block)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bundleId": self.bundle_id,
            "nonceBase": self.nonce_base,
            "gasPrice": str(self.gas_price),
            "targetBlock": self.target_block,
            "steps": [
                {"kind": s.kind.value, "index": s.index, "nonce": s.nonce}
                for s in self.steps
            ],
        }


@dataclass
class BundleExecution:
    """Outcome of one simulate-then-submit run."""
    bundle: Bundle
    simulation: Dict[str, Any]
    submission: Dict[str, Any]
    gas_quote: Optional[GasQuote] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bundle": self.bundle.to_dict(),
            "simulation": self.simulation,
            "submission": self.submission,
            "gasQuote": self.gas_quote.to_dict() if self.gas_quote else None,
        }
