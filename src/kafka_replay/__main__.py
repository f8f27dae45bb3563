"""
Entry point for running the replay engine.

Usage:
    # Run the engine with config.yaml from the working directory
    python -m kafka_replay

    # Submit jobs from a YAML file at startup
    python -m kafka_replay --jobs jobs.yaml

    # Run with a custom config file and metrics port
    python -m kafka_replay --config /etc/kafka-replay/config.yaml --metrics-port 9090

Jobs file format (a YAML list of job specifications):
    - cluster_id: prod-eu
      source_topic: orders
      target_topic: orders.replay
      start_timestamp: 2025-01-15T00:00:00Z
      end_timestamp: 2025-01-15T06:00:00Z
      filter:
        key: {kind: prefix, prefix: "customer-42"}
    - cluster_id: prod-eu
      source_topic: orders
      consumer_group_id: billing
      start_offset: 0
      schedule: {kind: cron, expression: "0 2 * * *", timezone: Europe/Berlin}

The process keeps job state in memory. Jobs left PENDING or RUNNING at
shutdown are lost when the process exits.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from prometheus_client import start_http_server

from kafka_replay.common.exceptions import ReplayError
from kafka_replay.common.log_setup import setup_logging
from kafka_replay.common.logging import get_logger
from kafka_replay.config import DEFAULT_CONFIG_PATH, ReplayConfig
from kafka_replay.engine.service import ReplayEngine
from kafka_replay.kafka.connection import StaticConnectionProvider
from kafka_replay.kafka.factory import AIOKafkaClientFactory
from kafka_replay.schemas.jobs import ImmediateSchedule, ReplayJobSpec
from kafka_replay.store import InMemoryJobStore

# Placeholder logger until setup_logging() is called in main()
logger = logging.getLogger(__name__)

# Set by signal handlers; the engine finishes in-flight batches before exiting
_shutdown_event: Optional[asyncio.Event] = None


def get_shutdown_event() -> asyncio.Event:
    """Get or create the global shutdown event."""
    global _shutdown_event
    if _shutdown_event is None:
        _shutdown_event = asyncio.Event()
    return _shutdown_event


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Run the Kafka message replay engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run with config.yaml from the working directory
    python -m kafka_replay

    # Submit the jobs in jobs.yaml and keep running
    python -m kafka_replay --jobs jobs.yaml

    # Run with custom metrics port
    python -m kafka_replay --metrics-port 9090
        """,
    )

    parser.add_argument(
        "--config",
        type=str,
        default=str(DEFAULT_CONFIG_PATH),
        help="Path to config.yaml (default: ./config.yaml; env vars override)",
    )

    parser.add_argument(
        "--jobs",
        type=str,
        default=None,
        help="YAML file with a list of job specifications to submit at startup",
    )

    parser.add_argument(
        "--metrics-port",
        type=int,
        default=8000,
        help="Port for Prometheus metrics server (default: 8000)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )

    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Log directory path (default: from LOG_DIR env var or ./logs)",
    )

    return parser.parse_args(argv)


def load_job_specs(path: Path) -> List[Dict[str, Any]]:
    """
    Read job specifications from a YAML file.

    Raises:
        ValueError: If the file does not contain a list of mappings
    """
    with open(path, "r") as f:
        data = yaml.safe_load(f) or []
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise ValueError(f"{path} must contain a YAML list of job specifications")
    return data


async def submit_jobs(engine: ReplayEngine, specs: List[Dict[str, Any]]) -> int:
    """Submit each spec, logging and skipping the ones that are rejected."""
    submitted = 0
    for index, raw in enumerate(specs):
        try:
            spec = ReplayJobSpec.model_validate(raw)
            if isinstance(spec.schedule, ImmediateSchedule):
                job = await engine.submit_immediate(spec)
            else:
                job = await engine.submit_scheduled(spec)
        except (ValueError, ReplayError) as e:
            logger.error(f"Job #{index} rejected: {e}")
            continue
        logger.info(
            f"Submitted job #{index}",
            extra={"job_id": job.id, "source_topic": job.source_topic},
        )
        submitted += 1
    return submitted


async def run_engine(config: ReplayConfig, job_specs: List[Dict[str, Any]]) -> None:
    """Run the engine until the shutdown event is set.

    On shutdown the engine stops claiming jobs and running jobs stop after
    their in-flight batch is acknowledged.
    """
    engine = ReplayEngine(
        config,
        InMemoryJobStore(),
        StaticConnectionProvider(config.clusters),
        AIOKafkaClientFactory(config.kafka),
    )
    shutdown_event = get_shutdown_event()

    async with engine:
        if job_specs:
            count = await submit_jobs(engine, job_specs)
            logger.info(f"Submitted {count}/{len(job_specs)} jobs from file")
        await shutdown_event.wait()
        logger.info("Shutdown signal received, stopping replay engine...")


def setup_signal_handlers(loop: asyncio.AbstractEventLoop):
    """Set up signal handlers for graceful shutdown.

    Shutdown Behavior:
    - First CTRL+C (SIGINT/SIGTERM): Sets the global shutdown event. Running
      jobs finish their current batch and are requeued.
    - Second CTRL+C: Forces immediate shutdown by cancelling all tasks.

    Note: Signal handlers are not supported on Windows. On Windows,
    KeyboardInterrupt is used instead.
    """

    def handle_signal(sig):
        logger.info(f"Received signal {sig.name}, initiating graceful shutdown...")
        shutdown_event = get_shutdown_event()
        if not shutdown_event.is_set():
            shutdown_event.set()
        else:
            logger.warning("Received second signal, forcing immediate shutdown...")
            for task in asyncio.all_tasks(loop):
                task.cancel()

    if sys.platform == "win32":
        logger.debug("Signal handlers not supported on Windows, using KeyboardInterrupt")
        return

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    global logger
    args = parse_args(argv)

    log_level = getattr(logging, args.log_level)

    # JSON logs: set JSON_LOGS=false for human-readable file logs
    json_logs = os.getenv("JSON_LOGS", "true").lower() in ("true", "1", "yes")

    # Log directory: CLI arg > env var > default ./logs
    log_dir = Path(args.log_dir or os.getenv("LOG_DIR", "logs"))
    worker_id = os.getenv("WORKER_ID", "kafka-replay")

    setup_logging(
        name="kafka_replay",
        log_dir=log_dir,
        json_format=json_logs,
        console_level=log_level,
        worker_id=worker_id,
    )
    logger = get_logger(__name__)

    try:
        config = ReplayConfig.load_config(Path(args.config))
        job_specs = load_job_specs(Path(args.jobs)) if args.jobs else []
    except (OSError, ValueError, KeyError, yaml.YAMLError) as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    if not config.clusters:
        logger.warning(
            "No clusters configured; set KAFKA_BOOTSTRAP_SERVERS or add clusters to config.yaml"
        )

    logger.info(f"Starting metrics server on port {args.metrics_port}")
    start_http_server(args.metrics_port)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    setup_signal_handlers(loop)

    try:
        loop.run_until_complete(run_engine(config, job_specs))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        loop.close()
        logger.info("Replay engine shutdown complete")


if __name__ == "__main__":
    main()
