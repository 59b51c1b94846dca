"""
Tests for bundle assembly and simulate-then-submit orchestration.
"""

import asyncio

import httpx
import pytest
from unittest.mock import AsyncMock

from bundlekit.core.execution.bundle import (
    BundleOrchestrator,
    normalize_payload,
    steps_in_order,
    validate_step_order,
)
from bundlekit.core.execution.gas import GasPriceEstimator
from bundlekit.core.execution.models import BundleStep, FeeData, StepKind, TransactionStatus
from bundlekit.core.execution.tracker import TransactionLifecycleTracker
from bundlekit.core.recovery import (
    BundleAssemblyError,
    BundleSimulationError,
    ErrorKind,
    RelayError,
    RetryExecutor,
    RetryPolicy,
    get_classification,
)
from bundlekit.providers.base import BundleRelay

GWEI = 10**9
SENDER = "0x" + "11" * 20


class FakeProvider:
    def __init__(self, nonce=7, height=100, gas_price=10 * GWEI):
        self.get_fee_data = AsyncMock(return_value=FeeData(gas_price=gas_price))
        self.get_transaction_count = AsyncMock(return_value=nonce)
        self.get_block_number = AsyncMock(return_value=height)
        self.estimate_gas = AsyncMock(return_value=21000)


class FakeRelay(BundleRelay):
    name = "fake"

    def __init__(self, failures=None):
        self.simulate = AsyncMock(return_value={"results": []})
        self.submit = AsyncMock(return_value={"bundleHash": "0xabc"})
        self.failures = failures or []

    async def ready(self):
        return True

    async def health_check(self):
        return {"status": "healthy"}

    async def simulate(self, payloads, target_block_hex, network_tag):
        raise NotImplementedError

    async def submit(self, payloads, target_block_hex, network_tag, builders=None):
        raise NotImplementedError

    def simulation_failures(self, result):
        return self.failures


class RecordingBuilder:
    """Step builder that signs nothing and remembers its context."""

    def __init__(self):
        self.contexts = []

    async def __call__(self, ctx):
        self.contexts.append(ctx)
        return "0x" + format(ctx.nonce, "064x")


def make_orchestrator(provider=None, relay=None, tracker=None, sleep=None):
    provider = provider or FakeProvider()
    relay = relay or FakeRelay()
    estimator = GasPriceEstimator(
        provider, min_price=5 * GWEI, max_price=50 * GWEI, multiplier_percent=120
    )
    executor = RetryExecutor(RetryPolicy(max_attempts=3), sleep=sleep or AsyncMock())
    return BundleOrchestrator(
        provider,
        relay,
        estimator,
        executor,
        sender=SENDER,
        chain_id=56,
        network_tag="BSC-Mainnet",
        tracker=tracker,
    )


def make_steps(builder, kinds):
    return [BundleStep(kind=kind, build=builder) for kind in kinds]


FULL_BUNDLE = [
    StepKind.DEPLOY,
    StepKind.APPROVE_BASE,
    StepKind.APPROVE_TOKEN,
    StepKind.CREATE_POOL,
    StepKind.ADD_LIQUIDITY,
    StepKind.APPROVE_ROUTER,
    StepKind.SWAP,
    StepKind.FEE_TRANSFER,
]


# =============================================================================
# Assembly
# =============================================================================

class TestAssembly:
    """Tests for nonce, gas price and target block assignment."""

    @pytest.mark.asyncio
    async def test_nonces_are_contiguous(self):
        builder = RecordingBuilder()
        orchestrator = make_orchestrator(FakeProvider(nonce=7))

        bundle, _ = await orchestrator.assemble(make_steps(builder, FULL_BUNDLE))

        assert bundle.nonce_base == 7
        assert bundle.nonces == list(range(7, 7 + len(FULL_BUNDLE)))
        assert [ctx.index for ctx in builder.contexts] == list(range(len(FULL_BUNDLE)))

    @pytest.mark.asyncio
    async def test_single_gas_price_and_target_block(self):
        builder = RecordingBuilder()
        orchestrator = make_orchestrator(FakeProvider(height=100, gas_price=10 * GWEI))

        bundle, quote = await orchestrator.assemble(make_steps(builder, FULL_BUNDLE[:3]))

        assert quote.price == 12 * GWEI
        assert {ctx.gas_price for ctx in builder.contexts} == {12 * GWEI}
        assert bundle.gas_price == 12 * GWEI
        assert bundle.target_block == 105
        assert bundle.target_block_hex == "0x69"

    @pytest.mark.asyncio
    async def test_pending_nonce_requested_for_sender(self):
        provider = FakeProvider()
        orchestrator = make_orchestrator(provider)

        await orchestrator.assemble(make_steps(RecordingBuilder(), [StepKind.SWAP]))

        provider.get_transaction_count.assert_awaited_once_with(SENDER, "pending")

    @pytest.mark.asyncio
    async def test_payloads_have_no_prefix(self):
        orchestrator = make_orchestrator(FakeProvider(nonce=1))

        bundle, _ = await orchestrator.assemble(make_steps(RecordingBuilder(), [StepKind.SWAP]))

        assert bundle.payloads == ["0" * 63 + "1"]

    @pytest.mark.asyncio
    async def test_later_steps_see_earlier_results(self):
        builder = RecordingBuilder()
        orchestrator = make_orchestrator()

        await orchestrator.assemble(make_steps(builder, [StepKind.DEPLOY, StepKind.CREATE_POOL]))

        assert builder.contexts[0].previous == {}
        assert list(builder.contexts[1].previous) == [StepKind.DEPLOY]

    @pytest.mark.asyncio
    async def test_builder_failure_is_wrapped(self):
        async def broken(ctx):
            raise ValueError("cannot encode")

        relay = FakeRelay()
        orchestrator = make_orchestrator(relay=relay)
        steps = [
            BundleStep(kind=StepKind.DEPLOY, build=RecordingBuilder()),
            BundleStep(kind=StepKind.CREATE_POOL, build=broken),
        ]

        with pytest.raises(BundleAssemblyError) as exc_info:
            await orchestrator.execute(steps)

        assert exc_info.value.step == "create_pool"
        assert exc_info.value.index == 1
        assert isinstance(exc_info.value.__cause__, ValueError)
        relay.simulate.assert_not_awaited()
        relay.submit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_retries_are_transparent(self):
        provider = FakeProvider()
        provider.get_block_number = AsyncMock(side_effect=[httpx.ConnectError("down"), 100])
        sleep = AsyncMock()
        orchestrator = make_orchestrator(provider, sleep=sleep)

        bundle, _ = await orchestrator.assemble(make_steps(RecordingBuilder(), [StepKind.SWAP]))

        assert bundle.target_block == 105
        assert sleep.await_count == 1

    @pytest.mark.asyncio
    async def test_declared_offsets_are_checked_not_overwritten(self):
        builder = RecordingBuilder()
        steps = [
            BundleStep(kind=StepKind.DEPLOY, build=builder, nonce_offset=0),
            BundleStep(kind=StepKind.SWAP, build=builder),
        ]

        bundle, _ = await make_orchestrator(FakeProvider(nonce=7)).assemble(steps)

        assert bundle.nonces == [7, 8]
        assert [s.index for s in bundle.steps] == [0, 1]
        assert [s.nonce_offset for s in steps] == [0, None]

    @pytest.mark.asyncio
    async def test_mismatched_offset_rejected_before_network(self):
        provider = FakeProvider()
        steps = [
            BundleStep(kind=StepKind.DEPLOY, build=RecordingBuilder()),
            BundleStep(kind=StepKind.SWAP, build=RecordingBuilder(), nonce_offset=3),
        ]

        with pytest.raises(BundleAssemblyError) as exc_info:
            await make_orchestrator(provider).assemble(steps)

        assert exc_info.value.index == 1
        assert exc_info.value.code == "VALIDATION_ERROR"
        assert get_classification(exc_info.value).kind == ErrorKind.VALIDATION
        assert steps[1].nonce_offset == 3
        provider.get_fee_data.assert_not_awaited()


class TestStepValidation:
    """Tests for step ordering and payload checks."""

    def test_empty_bundle(self):
        with pytest.raises(BundleAssemblyError):
            validate_step_order([])

    def test_out_of_order(self):
        builder = RecordingBuilder()

        with pytest.raises(BundleAssemblyError) as exc_info:
            validate_step_order(make_steps(builder, [StepKind.SWAP, StepKind.DEPLOY]))

        assert exc_info.value.index == 1
        assert get_classification(exc_info.value).kind == ErrorKind.VALIDATION

    def test_subset_in_order_is_valid(self):
        validate_step_order(
            make_steps(RecordingBuilder(), [StepKind.APPROVE_ROUTER, StepKind.SWAP, StepKind.SWAP])
        )

    def test_normalize_bytes_payload(self):
        step = BundleStep(kind=StepKind.SWAP, build=RecordingBuilder())

        assert normalize_payload(b"\x01\xff", step, 0) == "01ff"

    @pytest.mark.parametrize("raw", ["0xzz", "", "0x", None])
    def test_normalize_rejects_bad_payload(self, raw):
        step = BundleStep(kind=StepKind.SWAP, build=RecordingBuilder())

        with pytest.raises(BundleAssemblyError):
            normalize_payload(raw, step, 0)

    def test_steps_in_order(self):
        swap, deploy = RecordingBuilder(), RecordingBuilder()

        steps = steps_in_order({StepKind.SWAP: swap, StepKind.DEPLOY: deploy})

        assert [s.kind for s in steps] == [StepKind.DEPLOY, StepKind.SWAP]
        assert steps[1].build is swap


# =============================================================================
# Simulate then submit
# =============================================================================

class TestExecution:
    """Tests for the full simulate-then-submit flow."""

    @pytest.mark.asyncio
    async def test_simulate_then_submit(self):
        relay = FakeRelay()
        tracker = TransactionLifecycleTracker()
        orchestrator = make_orchestrator(relay=relay, tracker=tracker)

        execution = await orchestrator.execute(make_steps(RecordingBuilder(), FULL_BUNDLE))

        payloads, block_hex, network = relay.simulate.await_args.args
        assert payloads == execution.bundle.payloads
        assert block_hex == execution.bundle.target_block_hex
        assert network == "BSC-Mainnet"
        relay.submit.assert_awaited_once()
        assert execution.submission == {"bundleHash": "0xabc"}
        assert tracker.metrics().success_count == 1
        assert tracker.get(execution.bundle.bundle_id).status == TransactionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_simulation_failure_aborts_submission(self):
        relay = FakeRelay(failures=[{"index": 2, "revert": "STF"}])
        tracker = TransactionLifecycleTracker()
        orchestrator = make_orchestrator(relay=relay, tracker=tracker)

        with pytest.raises(BundleSimulationError) as exc_info:
            await orchestrator.execute(make_steps(RecordingBuilder(), FULL_BUNDLE))

        assert "STF" in str(exc_info.value)
        assert get_classification(exc_info.value).kind == ErrorKind.REVERTED
        relay.submit.assert_not_awaited()
        assert tracker.metrics().fail_count == 1

    @pytest.mark.asyncio
    async def test_transient_relay_failure_is_retried(self):
        relay = FakeRelay()
        relay.simulate = AsyncMock(side_effect=[httpx.ConnectError("relay down"), {"results": []}])
        sleep = AsyncMock()
        orchestrator = make_orchestrator(relay=relay, sleep=sleep)

        await orchestrator.execute(make_steps(RecordingBuilder(), [StepKind.SWAP]))

        assert relay.simulate.await_count == 2
        relay.submit.assert_awaited_once()
        assert sleep.await_count == 1

    @pytest.mark.asyncio
    async def test_malformed_bundle_rejected_without_retry(self):
        relay = FakeRelay()
        relay.simulate = AsyncMock(side_effect=RelayError("invalid bundle", code=-32602))
        sleep = AsyncMock()
        tracker = TransactionLifecycleTracker()
        orchestrator = make_orchestrator(relay=relay, tracker=tracker, sleep=sleep)

        with pytest.raises(RelayError) as exc_info:
            await orchestrator.execute(make_steps(RecordingBuilder(), [StepKind.SWAP]))

        relay.simulate.assert_awaited_once()
        sleep.assert_not_awaited()
        relay.submit.assert_not_awaited()
        assert tracker.metrics().fail_count == 1
        classified = get_classification(exc_info.value)
        assert classified.kind == ErrorKind.VALIDATION
        assert classified.retryable is False

    @pytest.mark.asyncio
    async def test_cancelled_execution_is_recorded_as_failed(self):
        started = asyncio.Event()

        async def hanging(ctx):
            started.set()
            await asyncio.sleep(10)

        relay = FakeRelay()
        tracker = TransactionLifecycleTracker()
        orchestrator = make_orchestrator(relay=relay, tracker=tracker)
        task = asyncio.create_task(
            orchestrator.execute([BundleStep(kind=StepKind.SWAP, build=hanging)])
        )
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        metrics = tracker.metrics()
        assert metrics.fail_count == 1
        assert metrics.pending_count == 0
        relay.simulate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_submission_uses_same_bundle(self):
        relay = FakeRelay()
        orchestrator = make_orchestrator(relay=relay)

        execution = await orchestrator.execute(make_steps(RecordingBuilder(), [StepKind.SWAP]))

        sim_args = relay.simulate.await_args.args
        submit_args = relay.submit.await_args.args
        assert submit_args[:3] == sim_args
        assert execution.to_dict()["bundle"]["bundleId"] == execution.bundle.bundle_id

    def test_blocks_ahead_must_be_positive(self):
        provider = FakeProvider()
        estimator = GasPriceEstimator(provider, min_price=0, max_price=1)

        with pytest.raises(ValueError):
            BundleOrchestrator(
                provider,
                FakeRelay(),
                estimator,
                RetryExecutor(),
                sender=SENDER,
                chain_id=56,
                network_tag="BSC-Mainnet",
                blocks_ahead=0,
            )
