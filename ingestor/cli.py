"""CLI entry point for the AMS worker, report refresh and worker controls."""

from __future__ import annotations

import argparse
import json
import signal
import sys
from datetime import datetime
from typing import Callable

from ingestor.azure_sql import SqlEntityStore
from ingestor.config import IngestorConfig, get_config
from ingestor.control_store import ControlStore
from ingestor.exceptions import ConfigurationError, CredentialError, IngestorError, InvalidControlValueError
from ingestor.logging_utils import get_logger, setup_logging
from ingestor.models import Aggregation, EntityType, ReportKey
from ingestor.notifications import MetadataNotifier
from ingestor.queue_client import SqsQueueClient
from ingestor.refresh import ReportRefreshOrchestrator
from ingestor.report_store import ReportDatasetStore
from ingestor.reporting_api import AdsReportingClient
from ingestor.router import PayloadRouter
from ingestor.worker import IngestionWorker

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="AMS stream ingestion worker and report dataset refresh",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m ingestor.cli worker
  python -m ingestor.cli speed 5
  python -m ingestor.cli refresh --account-id A1 --country-code US \\
      --timestamp 2024-01-08T00:00:00Z --aggregation daily --entity-type target
        """,
    )

    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default=None)
    parser.add_argument("--log-format", choices=["json", "text"], default=None)

    sub = parser.add_subparsers(dest="command", required=True)

    worker = sub.add_parser("worker", help="Run the queue ingestion loop until SIGINT/SIGTERM")
    worker.add_argument("--max-iterations", type=int, default=None, help="Stop after N poll cycles")

    refresh = sub.add_parser("refresh", help="Run one refresh cycle for a report dataset row")
    refresh.add_argument("--account-id", required=True)
    refresh.add_argument("--country-code", required=True)
    refresh.add_argument("--timestamp", required=True, help="Bucket start, ISO 8601 (naive means UTC)")
    refresh.add_argument("--aggregation", choices=[a.value for a in Aggregation], required=True)
    refresh.add_argument("--entity-type", choices=[e.value for e in EntityType], required=True)
    refresh.add_argument("--ensure", action="store_true", help="Create the row as 'missing' if absent")

    sub.add_parser("status", help="Print the worker control row")
    sub.add_parser("start", help="Enable the worker")
    sub.add_parser("stop", help="Disable the worker")

    speed = sub.add_parser("speed", help="Set messages per second (0 = unlimited)")
    speed.add_argument("messages_per_second", type=int)

    sub.add_parser("queue-metrics", help="Print queue depth, age and throughput for the queue and its DLQ")
    sub.add_parser("check", help="Check database and queue connectivity")

    return parser.parse_args(argv)


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _token_provider(config: IngestorConfig) -> Callable[[], str]:
    def provide() -> str:
        if not config.ads_api_access_token:
            raise ConfigurationError("ADS_API_ACCESS_TOKEN must be set to call the reporting API")
        return config.ads_api_access_token

    return provide


def run_worker(config: IngestorConfig, args: argparse.Namespace) -> int:
    control_store = ControlStore(config)
    entity_store = SqlEntityStore(config)
    queue = SqsQueueClient(config)
    router = PayloadRouter(entity_store)
    worker = IngestionWorker(
        config,
        control_store,
        queue,
        router,
        connectivity_checks=[("database", control_store.test_connection), ("queue", queue.test_connection)],
    )

    def _on_signal(signum, _frame):
        logger.info("Received signal", extra={"signal": signal.Signals(signum).name})
        worker.request_shutdown()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    try:
        metrics = worker.run(max_iterations=args.max_iterations)
    finally:
        control_store.close()
        entity_store.close()
    logger.info("Worker summary", extra=metrics.to_dict())
    return 0


def run_refresh(config: IngestorConfig, args: argparse.Namespace) -> int:
    timestamp = datetime.fromisoformat(args.timestamp.replace("Z", "+00:00"))
    key = ReportKey(
        account_id=args.account_id,
        country_code=args.country_code.upper(),
        timestamp=timestamp,
        aggregation=Aggregation(args.aggregation),
        entity_type=EntityType(args.entity_type),
    )

    store = ReportDatasetStore(config)
    entity_store = SqlEntityStore(config)
    client = AdsReportingClient(
        config,
        token_provider=_token_provider(config),
        store=entity_store,
        counts_store=store,
    )
    notifier = MetadataNotifier(config.notification_queue_size)
    try:
        if args.ensure:
            store.ensure(key)
        orchestrator = ReportRefreshOrchestrator(store, client, notifier=notifier, config=config)
        result = orchestrator.refresh(key)
    finally:
        notifier.close()
        client.close()
        entity_store.close()
        store.close()

    _print(result.to_dict())
    return 0 if result.success else 1


def run_control(config: IngestorConfig, args: argparse.Namespace) -> int:
    store = ControlStore(config)
    try:
        if args.command == "start":
            record = store.set_enabled(True)
        elif args.command == "stop":
            record = store.set_enabled(False)
        elif args.command == "speed":
            record = store.set_rate(args.messages_per_second)
        else:
            record = store.get_status()
    finally:
        store.close()
    _print(record.to_dict())
    return 0


def run_queue_metrics(config: IngestorConfig, args: argparse.Namespace) -> int:
    _print(SqsQueueClient(config).queue_metrics())
    return 0


def run_check(config: IngestorConfig, args: argparse.Namespace) -> int:
    checks = {
        "database": ControlStore(config).test_connection,
        "queue": SqsQueueClient(config).test_connection,
    }
    results: dict[str, str] = {}
    for name, check in checks.items():
        try:
            check()
            results[name] = "ok"
        except IngestorError as e:
            logger.error(f"Connectivity check failed: {name}", extra={"error": str(e)})
            results[name] = str(e)
    _print(results)
    return 0 if all(v == "ok" for v in results.values()) else 1


COMMANDS: dict[str, Callable[[IngestorConfig, argparse.Namespace], int]] = {
    "worker": run_worker,
    "refresh": run_refresh,
    "status": run_control,
    "start": run_control,
    "stop": run_control,
    "speed": run_control,
    "queue-metrics": run_queue_metrics,
    "check": run_check,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point for CLI execution."""
    args = parse_args(argv)
    setup_logging(level=args.log_level or "INFO", json_format=(args.log_format or "json") == "json")

    try:
        config = get_config()
        if args.log_level is None or args.log_format is None:
            setup_logging(
                level=args.log_level or config.log_level,
                json_format=(args.log_format or config.log_format) == "json",
            )
        return COMMANDS[args.command](config, args)

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except CredentialError as e:
        logger.error(f"Credential error: {e}")
        return 1
    except InvalidControlValueError as e:
        logger.error(f"Invalid control value: {e}")
        return 1
    except IngestorError as e:
        logger.error(f"Command '{args.command}' failed: {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
