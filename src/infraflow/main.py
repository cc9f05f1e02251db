"""Process-level entry points: logging setup and one-shot flow runs.

A run loads the Infrastructure manifest, the cluster record and the last
state file, builds the Azure clients from the environment, runs the reconcile
or delete flow and writes the state file after every persist.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from .clients import AzureClientFactory
from .config import Config, ConfigurationError
from .errors import AdapterConfigurationError
from .migration import KubernetesClusterScaler
from .models import InfrastructureState
from .reconciler import FlowContext, ReconcileResult
from .security import SecretlessViolationError, get_managed_identity_credential
from .spec_loader import SpecLoadError, load_cluster, load_infrastructure, load_state, save_state

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_SECURITY_VIOLATION = 2

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_KEYS = frozenset(
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


class Action(str, Enum):
    """Flow to run."""

    RECONCILE = "reconcile"
    DELETE = "delete"


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
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the SDKs
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


def state_file_writer(path: Path):
    """Persist callback that writes the state file."""

    async def persist(state: InfrastructureState) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, save_state, path, state)

    return persist


async def run_flow(
    action: Action,
    infrastructure_path: Path,
    cluster_path: Path | None = None,
    state_path: Path | None = None,
    kubeconfig: str | None = None,
) -> int:
    """Run one reconcile or delete flow.

    Returns:
        Exit code (0 for success, 1 for failure, 2 for a security violation).
    """
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE

    try:
        infra = load_infrastructure(infrastructure_path)
        cluster = load_cluster(cluster_path)
        state = load_state(state_path)
    except SpecLoadError as e:
        logger.error("Failed to load inputs", extra={"error": str(e)})
        return EXIT_FAILURE

    try:
        credential = get_managed_identity_credential(config.client_id)
    except SecretlessViolationError as e:
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_SECURITY_VIOLATION

    factory = AzureClientFactory(credential, config.subscription_id)
    persist = state_file_writer(state_path) if state_path is not None else None

    logger.info(
        "Starting flow",
        extra={
            "action": action.value,
            "cluster": infra.namespace,
            "subscription_id": config.subscription_id,
            "region": infra.region,
        },
    )

    try:
        context = FlowContext(factory, infra, cluster, config, state, persist)
    except AdapterConfigurationError as e:
        logger.error("Invalid infrastructure configuration", extra={"error": str(e)})
        return EXIT_FAILURE
    except ValueError as e:
        # Unparsable managed item id or whiteboard path in the persisted state
        logger.error("Invalid persisted state", extra={"error": str(e)})
        return EXIT_FAILURE

    if action == Action.RECONCILE and context.adapter.migrating_to_vmo():
        try:
            context.migration.scaler = KubernetesClusterScaler.from_kubeconfig(
                kubeconfig,
                timeout_seconds=config.scale_down_timeout_seconds,
                poll_interval_seconds=config.scale_down_poll_interval_seconds,
            )
        except Exception as e:
            logger.error("Failed to load Kubernetes configuration", extra={"error": str(e)})
            return EXIT_FAILURE

    result = await _run_cancellable(context, action)
    if result is None:
        logger.warning("Flow cancelled", extra={"cluster": infra.namespace})
        return EXIT_FAILURE
    return EXIT_SUCCESS if result.success else EXIT_FAILURE


async def _run_cancellable(context: FlowContext, action: Action) -> ReconcileResult | None:
    """Run the flow; SIGTERM and SIGINT cancel it."""
    logger = logging.getLogger(__name__)
    runner = context.reconcile if action == Action.RECONCILE else context.delete
    task = asyncio.ensure_future(runner())

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        task.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        return await task
    except asyncio.CancelledError:
        return None
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)


def run(action: Action, **kwargs) -> int:
    """Synchronous wrapper around :func:`run_flow`."""
    return asyncio.run(run_flow(action, **kwargs))
