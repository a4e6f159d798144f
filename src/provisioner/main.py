"""Main entry point for the resource provisioner.

A run loads the desired-state document and the persisted state, merges them
into tracked instances, and reconciles pass after pass until the remote state
has converged. State is persisted after every pass so that an interrupted run
resumes polling instead of re-creating resources.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import Any

import httpx

from .adapter import ClientFactory, build_http_client
from .config import Config, ConfigurationError, ReconciliationMode
from .provenance import hash_file
from .reconciler import PassResult, Reconciler
from .spec_loader import SpecLoadError, load_desired_states
from .state import StateError, StateStore, merge_instances

_RESERVED_RECORD_FIELDS = frozenset(
    {
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
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_FIELDS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Request lines would otherwise be logged at INFO for every poll tick
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def reconcile(
    config: Config,
    *,
    destroy: bool = False,
    transport: httpx.AsyncBaseTransport | None = None,
) -> PassResult | None:
    """Reconcile the remote state against the configured document.

    Args:
        config: Validated configuration.
        destroy: Ignore the document and delete everything in state.
        transport: HTTP transport override (tests).

    Returns:
        The last PassResult, or None if stopped before the first pass.

    Raises:
        SpecLoadError: If the document is invalid.
        StateError: If the state file cannot be read or written.
    """
    logger = logging.getLogger(__name__)
    desired = {} if destroy else load_desired_states(config.specs_path)
    store = StateStore(config.state_path)
    instances = merge_instances(desired, store.load())
    spec_file_hash = "" if destroy else hash_file(config.specs_path)

    def persist(_result: PassResult | None = None) -> None:
        if config.mode == ReconciliationMode.APPLY:
            store.save(instances)

    async with build_http_client(config.context, transport=transport) as http:
        clients = ClientFactory(
            config.context,
            http,
            max_retries=config.max_transient_retries,
            backoff_base=config.retry_backoff_base_seconds,
        )
        reconciler = Reconciler(config, clients, spec_file_hash=spec_file_hash)

        loop = asyncio.get_running_loop()
        handled_signals: list[signal.Signals] = []

        def signal_handler(sig: signal.Signals) -> None:
            logger.info("Received signal", extra={"signal": sig.name})
            reconciler.shutdown()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
                handled_signals.append(sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handlers unavailable", extra={"signal": sig.name})

        try:
            return await reconciler.run(instances, on_pass=persist)
        finally:
            # Also persists progress made by a cancelled pass
            persist()
            for sig in handled_signals:
                loop.remove_signal_handler(sig)


def exit_code_for(result: PassResult | None) -> int:
    """0 when converged (or a clean plan), 1 otherwise."""
    if result is None:
        return 0
    if result.failed:
        return 1
    if result.mode == ReconciliationMode.PLAN:
        return 0
    return 0 if result.converged else 1


async def main() -> int:
    """Run the provisioner with configuration from the environment.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting provisioner",
        extra={
            "endpoint": config.context.endpoint,
            "mode": config.mode.value,
            "specs_path": str(config.specs_path),
            "state_path": str(config.state_path),
        },
    )

    try:
        result = await reconcile(config)
    except SpecLoadError as e:
        logger.error(
            "Failed to load desired state",
            extra={"error": str(e), "specs_path": str(config.specs_path)},
        )
        return 1
    except StateError as e:
        logger.error("State file error", extra={"error": str(e)})
        return 1
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Provisioner stopped")
    return exit_code_for(result)


def run() -> None:
    """Entry point for running with environment configuration."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
