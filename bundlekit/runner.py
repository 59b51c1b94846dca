"""
Engine wiring.

Builds every collaborator from Settings, runs one bundle and reports the
outcome through logs and alert channels.
"""

import importlib
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

from .alerts import AlertChannel, AlertDispatcher, DiscordChannel, TelegramChannel
from .config import Settings
from .core.execution.bundle import BundleOrchestrator
from .core.execution.gas import GasPriceEstimator
from .core.execution.models import BundleExecution, BundleStep
from .core.execution.tracker import TransactionLifecycleTracker
from .core.recovery.errors import ConfigurationError
from .core.recovery.executor import RetryExecutor, get_classification, transaction_defaults
from .core.recovery.strategies import CircuitBreaker, CircuitBreakerConfig, RetryPolicy
from .providers.chain import JsonRpcChainProvider
from .providers.relay import BloxrouteRelay

logger = logging.getLogger(__name__)

StepsFactory = Callable[[Settings], Any]


@dataclass
class Engine:
    """Everything one bundle run needs."""

    settings: Settings
    provider: JsonRpcChainProvider
    relay: BloxrouteRelay
    estimator: GasPriceEstimator
    tracker: TransactionLifecycleTracker
    provider_executor: RetryExecutor
    relay_executor: RetryExecutor
    orchestrator: BundleOrchestrator
    alerts: AlertDispatcher

    def update_gas_multiplier(self, percent: int) -> bool:
        """Apply a multiplier change to the settings and the live estimator."""
        if not self.settings.update_gas_multiplier(percent):
            return False
        return self.estimator.update_multiplier(percent)

    async def close(self) -> None:
        await self.provider.close()


def load_steps_factory(path: str) -> StepsFactory:
    """Resolve a 'package.module:callable' import path."""
    if not path or ":" not in path:
        raise ConfigurationError(
            f"STEPS_FACTORY must look like 'package.module:callable', got {path!r}"
        )

    module_name, _, attr = path.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import steps module {module_name!r}: {e}") from e

    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigurationError(f"{path!r} is not a callable")
    return factory


async def resolve_steps(factory: StepsFactory, settings: Settings) -> List[BundleStep]:
    """Call the factory; it may be sync or async."""
    steps = factory(settings)
    if inspect.isawaitable(steps):
        steps = await steps
    steps = list(steps or [])
    if not all(isinstance(step, BundleStep) for step in steps):
        raise ConfigurationError("Steps factory must return BundleStep instances")
    return steps


def build_alerts(settings: Settings) -> AlertDispatcher:
    channels: List[AlertChannel] = []
    if settings.has_telegram:
        channels.append(TelegramChannel(settings.telegram_bot_token, settings.telegram_chat_id))
    if settings.has_discord:
        channels.append(DiscordChannel(settings.discord_webhook_url))
    return AlertDispatcher(channels)


def build_engine(settings: Settings) -> Engine:
    """Wire the engine from settings. Raises ConfigurationError on bad setup."""
    network = settings.network_config

    provider = JsonRpcChainProvider(network.rpc_url)
    relay = BloxrouteRelay(
        settings.bloxroute_api_endpoint,
        settings.bloxroute_auth_header,
        timeout_ms=settings.bloxroute_timeout_ms,
    )
    estimator = GasPriceEstimator(
        provider,
        min_price=network.min_gas_price,
        max_price=network.max_gas_price,
        multiplier_percent=network.gas_multiplier_percent,
        limit_buffer=settings.gas_estimation_buffer,
        history_size=settings.gas_history_size,
    )
    tracker = TransactionLifecycleTracker()

    provider_executor = RetryExecutor(
        RetryPolicy(
            max_attempts=settings.max_retries,
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
            exponential_base=settings.retry_exponential_base,
            jitter_fraction=settings.retry_jitter,
        ),
        CircuitBreaker(
            name="provider",
            config=CircuitBreakerConfig(
                failure_threshold=settings.circuit_failure_threshold,
                recovery_timeout_ms=settings.circuit_recovery_timeout_ms,
                monitoring_period_ms=settings.circuit_monitoring_period_ms,
            ),
        ),
        name="provider",
    )
    relay_executor = transaction_defaults(
        "relay",
        max_attempts=settings.bloxroute_max_retries,
        base_delay_ms=settings.bloxroute_retry_delay_ms,
        max_delay_ms=max(settings.bloxroute_retry_delay_ms, settings.bloxroute_timeout_ms),
    )

    orchestrator = BundleOrchestrator(
        provider,
        relay,
        estimator,
        relay_executor,
        sender=settings.sender_address,
        chain_id=network.chain_id,
        network_tag=network.relay_network_tag,
        provider_executor=provider_executor,
        tracker=tracker,
        blocks_ahead=settings.target_block_offset,
        relay_timeout_ms=settings.bloxroute_timeout_ms,
    )

    return Engine(
        settings=settings,
        provider=provider,
        relay=relay,
        estimator=estimator,
        tracker=tracker,
        provider_executor=provider_executor,
        relay_executor=relay_executor,
        orchestrator=orchestrator,
        alerts=build_alerts(settings),
    )


async def run_bundle(
    settings: Settings,
    steps: Optional[Sequence[BundleStep]] = None,
    engine: Optional[Engine] = None,
) -> BundleExecution:
    """
    Run one bundle end to end.

    Setup problems raise ConfigurationError before anything touches the
    network. A failed run alerts and then re-raises the terminal error.
    """
    settings.validate_required()
    engine = engine or build_engine(settings)

    logger.info("Bundle engine starting", extra={"config": settings.export_config()})

    try:
        if steps is None:
            steps = await resolve_steps(load_steps_factory(settings.steps_factory), settings)

        try:
            execution = await engine.orchestrator.execute(steps)
        except Exception as e:
            classified = get_classification(e)
            await engine.alerts.notify(
                f"❌ Bundle execution failed: {e}",
                {
                    "kind": classified.kind.value,
                    "attempts": getattr(e, "attempts", None),
                    "network": settings.network,
                },
            )
            raise

        await engine.alerts.notify(
            "✅ Bundle submitted",
            {
                "bundleId": execution.bundle.bundle_id,
                "targetBlock": execution.bundle.target_block,
                "transactions": len(execution.bundle.steps),
                "gasPrice": str(execution.gas_quote.price),
            },
        )
        return execution
    finally:
        logger.info("Monitoring report", extra={"report": engine.tracker.report()})
        await engine.close()
