"""
Tests for engine wiring, the bundle runner and the CLI.
"""

import json
import logging
import sys

import pytest
import structlog
from unittest.mock import AsyncMock

import cli
from bundlekit.config import Settings
from bundlekit.core.execution.models import (
    Bundle,
    BundleExecution,
    BundleStep,
    FeeData,
    GasQuote,
    PreparedStep,
    StepKind,
)
from bundlekit.core.recovery.errors import BundleSimulationError, ConfigurationError
from bundlekit.runner import build_engine, load_steps_factory, resolve_steps, run_bundle

SENDER = "0x" + "11" * 20


async def build_swap(ctx):
    return "0x" + "ab" * 32


def swap_steps(settings):
    return [BundleStep(kind=StepKind.SWAP, build=build_swap)]


async def async_swap_steps(settings):
    return swap_steps(settings)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        sender_address=SENDER,
        bloxroute_auth_header="auth",
        enable_logging=False,
        bloxroute_max_retries=4,
        bloxroute_retry_delay_ms=500,
        bloxroute_timeout_ms=10000,
    )


STEPS_MODULE_SOURCE = '''
from bundlekit.core.execution.models import BundleStep, StepKind


async def build_swap(ctx):
    return "0x" + "ab" * 32


def swap_steps(settings):
    return [BundleStep(kind=StepKind.SWAP, build=build_swap)]


async def async_swap_steps(settings):
    return swap_steps(settings)
'''


@pytest.fixture
def steps_module(tmp_path, monkeypatch):
    """An importable steps module living outside the test package."""
    (tmp_path / "bundle_steps_fixture.py").write_text(STEPS_MODULE_SOURCE)
    monkeypatch.syspath_prepend(str(tmp_path))
    yield "bundle_steps_fixture"
    sys.modules.pop("bundle_steps_fixture", None)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def make_execution():
    bundle = Bundle(
        bundle_id="b1",
        nonce_base=3,
        gas_price=12,
        target_block=105,
        steps=[PreparedStep(kind=StepKind.SWAP, index=0, nonce=3, payload="ab")],
    )
    return BundleExecution(
        bundle=bundle,
        simulation={"results": []},
        submission={"bundleHash": "0xabc"},
        gas_quote=GasQuote(price=12, observed_base_fee=10),
    )


class TestStepsFactory:
    """Tests for loading bundle steps from an import path."""

    def test_load_valid_path(self, steps_module):
        factory = load_steps_factory(f"{steps_module}:swap_steps")

        assert callable(factory)
        assert factory.__name__ == "swap_steps"

    @pytest.mark.parametrize(
        "path",
        [
            "",
            "no_colon_here",
            "bundlekit.does_not_exist:factory",
            "bundlekit.core.execution.bundle:DEFAULT_BLOCKS_AHEAD",
        ],
    )
    def test_invalid_paths(self, path):
        with pytest.raises(ConfigurationError):
            load_steps_factory(path)

    @pytest.mark.asyncio
    async def test_resolve_sync_and_async(self, settings):
        assert [s.kind for s in await resolve_steps(swap_steps, settings)] == [StepKind.SWAP]
        assert [s.kind for s in await resolve_steps(async_swap_steps, settings)] == [StepKind.SWAP]

    @pytest.mark.asyncio
    async def test_resolve_rejects_wrong_type(self, settings):
        with pytest.raises(ConfigurationError):
            await resolve_steps(lambda s: ["not a step"], settings)


class TestBuildEngine:
    """Tests for wiring collaborators from settings."""

    def test_executors_follow_settings(self, settings):
        engine = build_engine(settings)

        assert engine.provider_executor.policy.max_attempts == settings.max_retries
        assert engine.provider_executor.breaker.config.failure_threshold == 5
        assert engine.relay_executor.policy.max_attempts == 4
        assert engine.relay_executor.policy.base_delay_ms == 500
        assert engine.relay_executor.policy.max_delay_ms == 10000
        assert engine.relay_executor.breaker.config.failure_threshold == 3
        assert engine.provider_executor.breaker is not engine.relay_executor.breaker

    def test_network_preset_applied(self, settings):
        engine = build_engine(settings)

        assert engine.estimator.multiplier_percent == 120
        assert engine.orchestrator.chain_id == 56
        assert engine.orchestrator.network_tag == "BSC-Mainnet"
        assert engine.orchestrator.blocks_ahead == 5
        assert engine.alerts.enabled is False

    @pytest.mark.asyncio
    async def test_gas_multiplier_update_reaches_running_engine(self, settings):
        engine = build_engine(settings)
        engine.provider.get_fee_data = AsyncMock(return_value=FeeData(gas_price=10 * 10**9))

        assert engine.update_gas_multiplier(200) is True
        quote = await engine.estimator.estimate()

        assert quote.price == 20 * 10**9
        assert settings.network_config.gas_multiplier_percent == 200

    def test_rejected_gas_multiplier_update_changes_nothing(self, settings):
        engine = build_engine(settings)

        assert engine.update_gas_multiplier(400) is False
        assert engine.estimator.multiplier_percent == 120
        assert settings.network_config.gas_multiplier_percent == 120


class TestRunBundle:
    """Tests for one end-to-end run with a stubbed orchestrator."""

    @pytest.mark.asyncio
    async def test_missing_credentials_abort_before_network(self, monkeypatch):
        monkeypatch.delenv("SENDER_ADDRESS", raising=False)
        monkeypatch.delenv("BLOXROUTE_AUTH_HEADER", raising=False)
        settings = Settings(_env_file=None, enable_logging=False)

        with pytest.raises(ConfigurationError):
            await run_bundle(settings, steps=[])

    @pytest.mark.asyncio
    async def test_success_alerts(self, settings):
        engine = build_engine(settings)
        engine.orchestrator.execute = AsyncMock(return_value=make_execution())
        engine.alerts.notify = AsyncMock(return_value={})

        execution = await run_bundle(settings, swap_steps(settings), engine=engine)

        assert execution.bundle.bundle_id == "b1"
        message, data = engine.alerts.notify.await_args.args
        assert "Bundle submitted" in message
        assert data["targetBlock"] == 105

    @pytest.mark.asyncio
    async def test_failure_alerts_and_reraises(self, settings):
        engine = build_engine(settings)
        error = BundleSimulationError("Bundle simulation reverted at transaction 0: STF")
        engine.orchestrator.execute = AsyncMock(side_effect=error)
        engine.alerts.notify = AsyncMock(return_value={})

        with pytest.raises(BundleSimulationError):
            await run_bundle(settings, swap_steps(settings), engine=engine)

        message, data = engine.alerts.notify.await_args.args
        assert "failed" in message
        assert data["kind"] == "reverted"

    @pytest.mark.asyncio
    async def test_steps_loaded_from_settings(self, settings, steps_module):
        settings = settings.model_copy(update={"steps_factory": f"{steps_module}:async_swap_steps"})
        engine = build_engine(settings)
        engine.orchestrator.execute = AsyncMock(return_value=make_execution())

        await run_bundle(settings, engine=engine)

        steps = engine.orchestrator.execute.await_args.args[0]
        assert [s.kind for s in steps] == [StepKind.SWAP]


class TestCli:
    """Tests for the command line entry point."""

    @pytest.fixture(autouse=True)
    def cli_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("ENABLE_LOGGING", "false")
        monkeypatch.setenv("LOG_DIR", str(tmp_path))
        for key in ("SENDER_ADDRESS", "STEPS_FACTORY", "NETWORK"):
            monkeypatch.delenv(key, raising=False)

    @pytest.mark.asyncio
    async def test_config_command_redacts(self, monkeypatch, capsys, restore_root_logger):
        monkeypatch.setenv("BLOXROUTE_AUTH_HEADER", "super-secret")

        code = await cli.main(["config"])

        assert code == cli.EXIT_OK
        exported = json.loads(capsys.readouterr().out)
        assert exported["bloxroute_auth_header"] == "***REDACTED***"

    @pytest.mark.asyncio
    async def test_run_without_configuration(self, monkeypatch, capsys, restore_root_logger):
        monkeypatch.delenv("BLOXROUTE_AUTH_HEADER", raising=False)

        code = await cli.main(["run"])

        assert code == cli.EXIT_CONFIG
        assert "Configuration error" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_no_command_prints_help(self, capsys):
        assert await cli.main([]) == cli.EXIT_OK
        assert "usage" in capsys.readouterr().out
