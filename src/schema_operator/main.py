"""Main entry point for the Database Schema Operator.

The operator reads DatabaseSchema resources (and the secrets and config
entries they reference) from a manifests directory and keeps every target
database converged on its desired schema through the migration engine.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from dataclasses import dataclass
from datetime import UTC, datetime

from .config import ConfigurationError, OperatorConfig
from .dependency import WatchIndex
from .devdb import ConfiguredDevDB
from .engine import atlas_engine_factory
from .events import EventRecorder
from .manager import Manager
from .reconciler import Reconciler
from .spec_loader import SpecLoadError
from .store import InMemoryObjectStore, InMemoryResourceStore

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Configure structured logging with JSON output for production.

    Args:
        level: Root log level.
        json_output: Emit one JSON object per line; plain text otherwise.
    """
    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    logging.getLogger("asyncio").setLevel(logging.WARNING)


@dataclass
class Operator:
    """Wired operator components."""

    config: OperatorConfig
    store: InMemoryResourceStore
    objects: InMemoryObjectStore
    events: EventRecorder
    reconciler: Reconciler
    manager: Manager


def build_operator(config: OperatorConfig) -> Operator:
    """Wire the operator components from configuration."""
    store = InMemoryResourceStore(status_dir=config.status_dir)
    objects = InMemoryObjectStore()
    events = EventRecorder()
    reconciler = Reconciler(
        store=store,
        objects=objects,
        engine_factory=atlas_engine_factory(config.engine_binary),
        devdb=ConfiguredDevDB(config.dev_db_urls),
        watch_index=WatchIndex(),
        events=events,
        env_name=config.env_name,
        transient_requeue_seconds=config.transient_requeue_seconds,
    )
    manager = Manager(config, reconciler, store, objects)
    return Operator(
        config=config,
        store=store,
        objects=objects,
        events=events,
        reconciler=reconciler,
        manager=manager,
    )


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    try:
        config = OperatorConfig.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config.log_level, json_output=config.enable_audit_logging)
    logger = logging.getLogger(__name__)

    logger.info(
        "Starting Database Schema Operator",
        extra={
            "manifests_dir": str(config.manifests_dir),
            "engine_binary": config.engine_binary,
            "max_concurrent_reconciles": config.max_concurrent_reconciles,
        },
    )

    operator = build_operator(config)

    # Fail fast on unreadable manifests at startup; later resyncs only log
    try:
        operator.manager.sync()
    except SpecLoadError as e:
        logger.error(
            "Failed to load manifests",
            extra={"error": str(e), "manifests_dir": str(config.manifests_dir)},
        )
        return 1

    for key in sorted(operator.store.keys()):
        operator.manager.queue.add(key)

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        operator.manager.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await operator.manager.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
