"""
Telemetry Bus - Main Entry Point

Usage:
    python -m telemetry_bus.main --config config/default.yaml
    python -m telemetry_bus.main --config config/default.yaml --verbose
"""

# Load .env FIRST before any other imports
from dotenv import load_dotenv
load_dotenv()

import argparse
import asyncio
import sys

from telemetry_bus import __version__
from telemetry_bus.core.bus import EventBus
from telemetry_bus.handlers import TelemetryStore, default_handlers
from telemetry_bus.infrastructure.config import AppConfig, init_config
from telemetry_bus.infrastructure.graceful_shutdown import GracefulShutdown
from telemetry_bus.infrastructure.logging import bind_context, configure_logging, get_logger
from telemetry_bus.infrastructure.metrics import metrics

STATS_INTERVAL_SECONDS = 60.0


async def report_stats(bus: EventBus) -> None:
    """Log bus stats and refresh the uptime gauge periodically."""
    logger = get_logger(__name__)
    while True:
        await asyncio.sleep(STATS_INTERVAL_SECONDS)
        metrics.update_uptime()
        stats = bus.get_stats()
        logger.info(
            "Bus stats",
            published=stats["published"],
            committed=stats["committed"],
            retried=stats["retried"],
            dead_lettered=stats["dead_lettered"],
            commit_rate_per_second=stats["commit_rate_per_second"],
            queue_depths={t: q["depth"] for t, q in stats["queues"].items()},
        )


async def run(config: AppConfig) -> None:
    """Open storage, start the bus and wait for a shutdown signal."""
    logger = get_logger(__name__)

    store = TelemetryStore(
        config.storage.db_path,
        busy_timeout_seconds=config.storage.busy_timeout_seconds,
    )
    await store.initialize()

    bus = EventBus(default_handlers(store), config)

    if config.observability.metrics_enabled:
        metrics.start_server(config.observability.metrics_port)
        metrics.set_bus_info(__version__, config.environment)

    await bus.start()
    stats_task = asyncio.create_task(report_stats(bus))

    async def stop_stats() -> None:
        stats_task.cancel()
        try:
            await stats_task
        except asyncio.CancelledError:
            pass

    shutdown = GracefulShutdown(
        shutdown_timeout_seconds=config.bus.shutdown_grace_seconds + 5.0,
    )
    # Bus drain first: queued events and pending retries still need the store
    shutdown.register_cleanup(
        "event_bus",
        bus.stop,
        priority=10,
        timeout_seconds=config.bus.shutdown_grace_seconds + 2.0,
    )
    shutdown.register_cleanup("stats_reporter", stop_stats, priority=20, timeout_seconds=2.0)
    shutdown.install_signal_handlers()

    logger.info(
        "Telemetry bus ready",
        db_path=config.storage.db_path,
        event_types=[t for t in bus.get_stats()["queues"]],
    )

    await shutdown.wait_for_shutdown()


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Storefront telemetry event bus"
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to configuration file (default: TELEMETRY_BUS_CONFIG_PATH or built-in defaults)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    return parser.parse_args()


async def async_main() -> None:
    """Async entry point."""
    args = parse_args()

    config = init_config(args.config)

    configure_logging(
        log_level="DEBUG" if args.verbose else config.observability.log_level,
        log_format=config.observability.log_format,
    )
    bind_context(environment=config.environment)

    logger = get_logger(__name__)
    logger.info(
        "Telemetry bus starting",
        version=__version__,
        environment=config.environment,
        config_file=args.config,
        overrides=config.diff_from_defaults(),
    )

    await run(config)


def main() -> None:
    """Main entry point."""
    try:
        asyncio.run(async_main())
    except KeyboardInterrupt:
        pass
    except FileNotFoundError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
