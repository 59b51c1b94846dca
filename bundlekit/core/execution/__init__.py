"""
Execution Module

Gas estimation, lifecycle tracking and bundle orchestration.
"""

from .bundle import BundleOrchestrator, steps_in_order, validate_step_order
from .gas import GasPriceEstimator
from .models import (
    Bundle,
    BundleExecution,
    BundleStep,
    FeeData,
    GasQuote,
    Metrics,
    PreparedStep,
    StepContext,
    StepKind,
    TransactionRecord,
    TransactionStatus,
)
from .tracker import TransactionLifecycleTracker

__all__ = [
    "BundleOrchestrator",
    "steps_in_order",
    "validate_step_order",
    "GasPriceEstimator",
    "TransactionLifecycleTracker",
    "Bundle",
    "BundleExecution",
    "BundleStep",
    "FeeData",
    "GasQuote",
    "Metrics",
    "PreparedStep",
    "StepContext",
    "StepKind",
    "TransactionRecord",
    "TransactionStatus",
]
