"""
Bundle orchestration.

Assembles an ordered list of dependent steps that share one gas price and a
contiguous nonce range, then drives simulate-then-submit against the relay.
The bundle is atomic by construction: a failing simulation aborts the whole
bundle and nothing is re-assembled here.
"""

import logging
import uuid
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple

from eth_utils import is_hex, remove_0x_prefix

from ..recovery.errors import BundleAssemblyError, BundleSimulationError
from ..recovery.executor import RetryExecutor
from .gas import GasPriceEstimator
from .models import (
    STEP_ORDER,
    Bundle,
    BundleExecution,
    BundleStep,
    GasQuote,
    PreparedStep,
    StepContext,
    StepKind,
)

if TYPE_CHECKING:
    from ...providers.base import BundleRelay, ChainProvider
    from .tracker import TransactionLifecycleTracker

logger = logging.getLogger(__name__)

DEFAULT_BLOCKS_AHEAD = 5


def validate_step_order(steps: Sequence[BundleStep]) -> None:
    """Steps must follow the logical order of StepKind (any subset, no reordering)."""
    if not steps:
        raise BundleAssemblyError("Bundle has no steps")

    previous: Optional[StepKind] = None
    for index, step in enumerate(steps):
        if previous is not None and STEP_ORDER[step.kind] < STEP_ORDER[previous]:
            raise BundleAssemblyError(
                f"Step {index} ({step.kind.value}) cannot follow {previous.value}",
                step=step.kind.value,
                index=index,
                code="VALIDATION_ERROR",
            )
        if step.nonce_offset is not None and step.nonce_offset != index:
            raise BundleAssemblyError(
                f"Step {index} ({step.kind.value}) is declared at position {step.nonce_offset}",
                step=step.kind.value,
                index=index,
                code="VALIDATION_ERROR",
            )
        previous = step.kind


def normalize_payload(raw: Any, step: BundleStep, index: int) -> str:
    """Signed payloads are submitted as hex without the 0x prefix."""
    if isinstance(raw, bytes):
        raw = raw.hex()
    if not isinstance(raw, str):
        raise BundleAssemblyError(
            f"Step {index} ({step.kind.value}) produced a non-hex payload",
            step=step.kind.value,
            index=index,
            code="VALIDATION_ERROR",
        )
    payload = remove_0x_prefix(raw)
    if not payload or not is_hex(payload):
        raise BundleAssemblyError(
            f"Step {index} ({step.kind.value}) produced an invalid hex payload",
            step=step.kind.value,
            index=index,
            code="VALIDATION_ERROR",
        )
    return payload


class BundleOrchestrator:
    """
    Builds bundles and submits them through the relay.

    Provider calls (gas price, nonce, block height) run through
    `provider_executor`; relay calls run through `executor`. Each executor
    carries its own circuit breaker, so relay trouble does not trip the
    provider breaker and vice versa.
    """

    def __init__(
        self,
        provider: "ChainProvider",
        relay: "BundleRelay",
        estimator: GasPriceEstimator,
        executor: RetryExecutor,
        *,
        sender: str,
        chain_id: int,
        network_tag: str,
        provider_executor: Optional[RetryExecutor] = None,
        tracker: Optional["TransactionLifecycleTracker"] = None,
        blocks_ahead: int = DEFAULT_BLOCKS_AHEAD,
        builders: Optional[Dict[str, str]] = None,
        relay_timeout_ms: Optional[int] = None,
    ):
        if blocks_ahead < 1:
            raise ValueError("blocks_ahead must be at least 1")
        self.provider = provider
        self.relay = relay
        self.estimator = estimator
        self.executor = executor
        self.provider_executor = provider_executor or executor
        self.tracker = tracker
        self.sender = sender
        self.chain_id = chain_id
        self.network_tag = network_tag
        self.blocks_ahead = blocks_ahead
        self.builders = builders
        self.relay_timeout_ms = relay_timeout_ms

    async def assemble(
        self,
        steps: Sequence[BundleStep],
        bundle_id: Optional[str] = None,
    ) -> Tuple[Bundle, GasQuote]:
        """Fetch price, nonce base and height, then build every step in order."""
        validate_step_order(steps)
        bundle_id = bundle_id or uuid.uuid4().hex

        quote = await self.provider_executor.execute(
            self.estimator.estimate,
            {"operation": "gas_price_estimation", "bundleId": bundle_id},
        )
        nonce_base = await self.provider_executor.execute(
            lambda: self.provider.get_transaction_count(self.sender, "pending"),
            {"operation": "nonce_lookup", "bundleId": bundle_id},
        )
        height = await self.provider_executor.execute(
            self.provider.get_block_number,
            {"operation": "block_height", "bundleId": bundle_id},
        )

        bundle = Bundle(
            bundle_id=bundle_id,
            nonce_base=nonce_base,
            gas_price=quote.price,
            target_block=height + self.blocks_ahead,
        )
        logger.info(
            "Starting bundle assembly",
            extra={
                "bundleId": bundle_id,
                "gasPrice": str(quote.price),
                "nonce": nonce_base,
                "futureBlock": bundle.target_block,
            },
        )

        built: Dict[StepKind, PreparedStep] = {}
        for index, step in enumerate(steps):
            ctx = StepContext(
                index=index,
                nonce=nonce_base + index,
                gas_price=quote.price,
                sender=self.sender,
                chain_id=self.chain_id,
                estimator=self.estimator,
                previous=dict(built),
            )
            try:
                raw = await step.build(ctx)
            except BundleAssemblyError:
                raise
            except Exception as exc:
                raise BundleAssemblyError(
                    f"Failed to build step {index} ({step.kind.value}): {exc}",
                    step=step.kind.value,
                    index=index,
                    code=getattr(exc, "code", None),
                ) from exc

            prepared = PreparedStep(
                kind=step.kind,
                index=index,
                nonce=ctx.nonce,
                payload=normalize_payload(raw, step, index),
            )
            bundle.steps.append(prepared)
            built[step.kind] = prepared

        logger.info(
            "Bundle transactions prepared",
            extra={"bundleId": bundle_id, "transactionCount": len(bundle.steps)},
        )
        return bundle, quote

    async def simulate(self, bundle: Bundle) -> Dict[str, Any]:
        result = await self.executor.execute(
            lambda: self.relay.simulate(bundle.payloads, bundle.target_block_hex, self.network_tag),
            {"operation": "bundle_simulation", "bundleId": bundle.bundle_id},
            timeout_ms=self.relay_timeout_ms,
        )

        failures = self.relay.simulation_failures(result)
        if failures:
            first = failures[0]
            reason = first.get("revert") or first.get("error") or "unknown"
            raise BundleSimulationError(
                f"Bundle simulation reverted at transaction {first.get('index')}: {reason}",
                details={"bundleId": bundle.bundle_id, "failures": failures},
            )

        logger.info("Bundle simulation completed", extra={"bundleId": bundle.bundle_id})
        return result

    async def submit(self, bundle: Bundle) -> Dict[str, Any]:
        result = await self.executor.execute(
            lambda: self.relay.submit(
                bundle.payloads, bundle.target_block_hex, self.network_tag, self.builders
            ),
            {"operation": "bundle_submission", "bundleId": bundle.bundle_id},
            timeout_ms=self.relay_timeout_ms,
        )
        logger.info(
            "Bundle submitted successfully",
            extra={"bundleId": bundle.bundle_id, "targetBlock": bundle.target_block},
        )
        return result

    async def execute(self, steps: Sequence[BundleStep]) -> BundleExecution:
        """Assemble, simulate and submit one bundle."""
        bundle_id = uuid.uuid4().hex
        tracked = False
        if self.tracker is not None:
            tracked = self.tracker.start(
                bundle_id, {"operation": "bundle_execution", "steps": len(steps)}
            )

        try:
            bundle, quote = await self.assemble(steps, bundle_id)
            simulation = await self.simulate(bundle)
            submission = await self.submit(bundle)
        except BaseException as exc:
            if tracked:
                self.tracker.fail(bundle_id, exc)
            raise

        if tracked:
            self.tracker.succeed(bundle_id)
        return BundleExecution(
            bundle=bundle,
            simulation=simulation,
            submission=submission,
            gas_quote=quote,
        )


def steps_in_order(builders: Dict[StepKind, Any]) -> List[BundleStep]:
    """Build BundleSteps from a kind -> builder mapping in logical order."""
    return [
        BundleStep(kind=kind, build=builders[kind])
        for kind in StepKind
        if kind in builders
    ]
