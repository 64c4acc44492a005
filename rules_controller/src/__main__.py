from __future__ import annotations

import json
import logging
import os
import queue
import re
import signal
import threading
from collections.abc import Callable

from prometheus_client import CollectorRegistry

from rules_controller.src.config import ConfigError, ControllerConfig, load_config
from rules_controller.src.controller import RulesController
from rules_controller.src.health import start_health_server
from rules_controller.src.informer import RuleInformer
from rules_controller.src.kube import RuleClient, build_clients, load_kube_configuration
from rules_controller.src.leader import LeaderState, LeaseLeaderElector
from rules_controller.src.metrics import ControllerMetrics
from rules_controller.src.mimir import MimirClient
from rules_controller.src.reconciler import Reconciler
from rules_controller.src.workqueue import RateLimitingQueue, default_controller_rate_limiter

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)(basic\s+)([A-Za-z0-9+/=]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key|mimir[_-]?key)\b"
            r"\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)(https?://)([^/\s:@]+):([^/\s@]+)@"),
        r"\1\2:[REDACTED]@",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))


def supervise_leadership(
    elector: LeaseLeaderElector,
    run_controller: Callable[[threading.Event], None],
    shutdown_event: threading.Event,
    leader_ready: threading.Event | None = None,
    poll_interval_seconds: float = 0.5,
) -> int:
    """Drive the controller from the elector's event queue. Returns the exit code.

    ``LEADING`` starts *run_controller* on a worker thread. A new holder other
    than this replica is logged. ``STOPPED`` stops the controller and ends
    supervision: exit code 0 when it follows a requested shutdown, 1 when
    leadership was lost or the controller died.
    """
    controller_stop = threading.Event()
    controller_failed = threading.Event()
    controller_thread: threading.Thread | None = None
    last_holder: str | None = None

    def _run() -> None:
        try:
            run_controller(controller_stop)
        except Exception:
            LOGGER.exception("Controller crashed")
            controller_failed.set()
            shutdown_event.set()
            return
        if not controller_stop.is_set():
            LOGGER.error("Controller exited without a stop signal; terminating process")
            controller_failed.set()
            shutdown_event.set()

    while True:
        try:
            event = elector.events.get(timeout=poll_interval_seconds)
        except queue.Empty:
            continue

        if event.holder_identity and event.holder_identity != last_holder:
            last_holder = event.holder_identity
            if event.holder_identity != elector.identity:
                LOGGER.info("New leader elected: %s", event.holder_identity)

        if event.state is LeaderState.LEADING and controller_thread is None:
            LOGGER.info("Started leading, starting controller")
            if leader_ready is not None:
                leader_ready.set()
            controller_thread = threading.Thread(target=_run, name="controller", daemon=True)
            controller_thread.start()
        elif event.state is LeaderState.STOPPED:
            if leader_ready is not None:
                leader_ready.clear()
            controller_stop.set()
            if controller_thread is not None:
                controller_thread.join(timeout=30)
            if controller_failed.is_set():
                return 1
            if shutdown_event.is_set():
                LOGGER.info("Stopped leading after shutdown request")
                return 0
            LOGGER.error("Leadership lost; exiting so the replica can restart")
            return 1


def run(config: ControllerConfig) -> int:
    """Build every component from *config* and run until shutdown. Returns the exit code."""
    registry = CollectorRegistry()
    metrics = ControllerMetrics(registry)
    metrics.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
            "cluster": config.cluster_name,
        }
    )

    load_kube_configuration()
    custom_objects_api, coordination_api = build_clients()
    rule_client = RuleClient(custom_objects_api, namespace=config.watch_namespace)
    informer = RuleInformer(
        rule_client, metrics=metrics, resync_period_seconds=config.resync_period_seconds
    )
    mimir_client = MimirClient.from_config(config.mimir)
    reconciler = Reconciler(
        cluster_name=config.cluster_name,
        lister=informer.get,
        writer=rule_client,
        remote=mimir_client,
        metrics=metrics,
    )
    work_queue = RateLimitingQueue(
        rate_limiter=default_controller_rate_limiter(
            base_delay=config.queue_base_delay_seconds,
            max_delay=config.queue_max_delay_seconds,
        )
    )
    controller = RulesController(informer, work_queue, reconciler, metrics=metrics)

    leader_ready = threading.Event() if config.leader_election_enabled else None
    health_server = start_health_server(
        synced=informer.ready,
        registry=registry,
        port=config.health_port,
        leader=leader_ready,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    # Standby replicas keep the cache warm so a takeover only waits for workers.
    informer_thread = threading.Thread(
        target=informer.run, args=(shutdown_event,), name="rule-reflector", daemon=True
    )
    informer_thread.start()

    def _run_controller(stop: threading.Event) -> None:
        controller.run(
            stop,
            workers=config.workers,
            cache_sync_timeout_seconds=config.cache_sync_timeout_seconds,
        )

    exit_code = 0
    try:
        if config.leader_election_enabled:
            elector = LeaseLeaderElector(
                coordination_api=coordination_api,
                namespace=config.lease_lock_namespace,
                lease_name=config.lease_lock_name,
                identity=config.identity,
                lease_duration_seconds=config.lease_duration_seconds,
                renew_deadline_seconds=config.renew_deadline_seconds,
                retry_period_seconds=config.retry_period_seconds,
                metrics=metrics,
            )
            elector_thread = threading.Thread(
                target=elector.run, args=(shutdown_event,), name="leader-elector", daemon=True
            )
            elector_thread.start()
            exit_code = supervise_leadership(elector, _run_controller, shutdown_event, leader_ready)
            shutdown_event.set()
            elector_thread.join(timeout=config.retry_period_seconds + 5)
        else:
            try:
                _run_controller(shutdown_event)
            except Exception:
                LOGGER.exception("Controller crashed")
                exit_code = 1
    finally:
        shutdown_event.set()
        informer.request_stop()
        informer_thread.join(timeout=10)
        work_queue.shut_down()
        mimir_client.close()
        health_server.shutdown()

    LOGGER.info("Controller stopped with exit code %d", exit_code)
    return exit_code


def main() -> None:
    """Controller entrypoint: configure logging, load configuration and run."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    try:
        config = load_config()
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        raise SystemExit(2) from exc
    raise SystemExit(run(config))


if __name__ == "__main__":
    main()
