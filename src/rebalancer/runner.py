"""Cycle runner - sweeps in-flight transfers, then rebalances."""

import asyncio
import logging
import signal
import time
from typing import Optional

from rebalancer.bridges.factory import RebalanceAdapter
from rebalancer.chains import BalanceOracle, ChainService, DryRunChainService, RpcBalanceOracle
from rebalancer.config import Settings, get_settings, load_rebalance_config
from rebalancer.context import ProcessingContext
from rebalancer.errors import ConfigurationError
from rebalancer.ledger.database import close_redis, get_redis
from rebalancer.ledger.models import TransferRecord
from rebalancer.ledger.store import RebalanceLedger
from rebalancer.metrics import Metrics, NoopMetrics, PrometheusMetrics, maybe_start_http_server
from rebalancer.services.callbacks import execute_destination_callbacks
from rebalancer.services.rebalance import rebalance_inventory

logger = logging.getLogger(__name__)


def build_context(
    settings: Optional[Settings] = None,
    chain_service: Optional[ChainService] = None,
    balances: Optional[BalanceOracle] = None,
    metrics: Optional[Metrics] = None,
) -> ProcessingContext:
    """Assemble collaborators from settings.

    Live submission needs a signing `ChainService`; without one the runner
    only works in dry-run mode.
    """
    settings = settings or get_settings()
    config = load_rebalance_config(settings.routes_file)
    ledger = RebalanceLedger(get_redis())

    if chain_service is None:
        if not settings.dry_run:
            raise ConfigurationError("DRY_RUN is off but no signing chain service was provided")
        if not settings.own_address:
            raise ConfigurationError("OWN_ADDRESS must be set")
        chain_service = DryRunChainService(settings.own_address, config, settings.receipt_timeout)

    if balances is None:
        if not settings.own_address:
            raise ConfigurationError("OWN_ADDRESS must be set")
        balances = RpcBalanceOracle(settings.own_address, config, rpc_timeout=settings.balance_timeout)

    if metrics is None:
        metrics = PrometheusMetrics() if settings.metrics_port else NoopMetrics()

    return ProcessingContext(
        config=config,
        ledger=ledger,
        adapters=RebalanceAdapter(config, ledger, settings),
        chain_service=chain_service,
        balances=balances,
        metrics=metrics,
        quote_timeout=settings.quote_timeout,
        submission_timeout=settings.submission_timeout,
        receipt_timeout=settings.receipt_timeout,
        balance_timeout=settings.balance_timeout,
        max_concurrency=settings.max_concurrency,
    )


async def run_cycle(context: ProcessingContext) -> list[TransferRecord]:
    """Run the sweeper, then the orchestrator, once."""
    started = time.monotonic()

    # Store connectivity is fatal to the cycle
    await context.ledger.redis.ping()

    retired = await execute_destination_callbacks(context)
    created = await rebalance_inventory(context)

    duration = time.monotonic() - started
    context.metrics.record_cycle(duration)
    logger.info(f"Cycle finished in {duration:.1f}s: {retired} retired, {len(created)} created")
    return created


async def run_loop(
    context: ProcessingContext,
    interval: float,
    stop: Optional[asyncio.Event] = None,
) -> None:
    """Run cycles until `stop` is set."""
    stop = stop or asyncio.Event()
    while not stop.is_set():
        try:
            await run_cycle(context)
        except Exception as e:
            logger.error(f"Cycle failed: {e}")
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass


async def _main(settings: Settings) -> None:
    context = build_context(settings)
    maybe_start_http_server(settings.metrics_port)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await run_loop(context, settings.poll_interval_seconds, stop)
    finally:
        await close_redis()
        logger.info("Shutdown complete")


def main():
    """Main entry point."""
    settings = get_settings()

    log_level = logging.DEBUG if settings.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    logger.info("Starting rebalancer...")
    logger.info(f"Settings: {settings.get_safe_dict()}")

    try:
        asyncio.run(_main(settings))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")


if __name__ == "__main__":
    main()
