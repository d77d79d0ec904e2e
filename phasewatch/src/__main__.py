from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading
from typing import Any, Protocol

from phasewatch.src.config import LeaderElectionConfig, load_config
from phasewatch.src.errors import PhaseWatchError
from phasewatch.src.health import Flag, start_health_server
from phasewatch.src.kube import build_clients, load_kube_configuration
from phasewatch.src.metrics import METRICS
from phasewatch.src.notifier import build_notifier
from phasewatch.src.shards import build_watcher_from_config

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger("phasewatch")
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)
# LogRecord attributes passed via ``extra=`` that are copied into the JSON line.
_EXTRA_FIELDS = ("pod", "old_phase", "new_phase", "resource_version", "shard")


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        for key in _EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str = "INFO") -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))


class Runnable(Protocol):
    ready: Flag

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None: ...

    def request_stop(self) -> None: ...


def run_with_leader_election(
    watcher: Runnable,
    config: LeaderElectionConfig,
    shutdown_event: threading.Event,
    leader_ready: threading.Event,
    fatal_errors: list[BaseException],
) -> None:
    """Run *watcher* only while this replica holds the leader lease.

    A watcher thread that is still alive after a leadership loss blocks any
    new watcher from starting; the process shuts down instead so two
    replicas never report the same transitions.
    """
    from kubernetes.client import CoordinationV1Api

    from phasewatch.src.leader import LeaseLeaderElector, default_identity

    elector = LeaseLeaderElector.from_config(
        coordination_api=CoordinationV1Api(),
        config=config,
        identity=default_identity(),
    )

    watcher_thread: threading.Thread | None = None
    watcher_stop = threading.Event()
    state_lock = threading.Lock()

    def on_started_leading() -> None:
        nonlocal watcher_thread, watcher_stop
        with state_lock:
            if shutdown_event.is_set():
                return
            if watcher_thread is not None and watcher_thread.is_alive():
                LOGGER.error(
                    "Refusing to start a new watch loop while the previous watcher "
                    "thread is still running"
                )
                shutdown_event.set()
                return

            watcher_stop = threading.Event()
            leader_ready.set()
            run_stop = watcher_stop

            def _run_watcher() -> None:
                unexpected_exit = False
                try:
                    watcher.run_forever(shutdown_event=run_stop)
                    unexpected_exit = not run_stop.is_set() and not shutdown_event.is_set()
                    if unexpected_exit:
                        LOGGER.error("Watcher thread exited without a stop signal; terminating")
                except PhaseWatchError as exc:
                    unexpected_exit = True
                    fatal_errors.append(exc)
                    LOGGER.error("Watcher stopped on fatal error: %s", exc)
                except Exception as exc:
                    unexpected_exit = True
                    fatal_errors.append(exc)
                    LOGGER.exception("Watcher thread crashed")
                finally:
                    if unexpected_exit:
                        shutdown_event.set()

            watcher_thread = threading.Thread(target=_run_watcher, name="phasewatch", daemon=True)
            watcher_thread.start()

    def on_stopped_leading() -> None:
        nonlocal watcher_thread
        with state_lock:
            leader_ready.clear()
            watcher.request_stop()
            watcher_stop.set()
            if watcher_thread is None:
                return

            watcher_thread.join(timeout=config.watcher_stop_timeout_seconds)
            if watcher_thread.is_alive():
                LOGGER.error(
                    "Watcher thread did not stop within %ss during leadership handoff; "
                    "forcing process shutdown",
                    config.watcher_stop_timeout_seconds,
                )
                shutdown_event.set()
                return

            watcher_thread = None

    elector.run(
        on_started_leading=on_started_leading,
        on_stopped_leading=on_stopped_leading,
        stop_event=shutdown_event,
    )
    on_stopped_leading()


def main() -> None:
    """Entrypoint: configure logging, build the watcher, optionally campaign for leadership, run."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        config = load_config()
        load_kube_configuration()
    except PhaseWatchError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        raise SystemExit(1) from exc
    logging.root.setLevel(config.log_level)

    core_api = build_clients()
    notifier = build_notifier(
        core_api=core_api,
        record_kube_events=config.record_kube_events,
        reporting_instance=os.getenv("HOSTNAME", ""),
    )
    watcher = build_watcher_from_config(config, core_api=core_api, notifier=notifier)

    leader_ready = threading.Event() if config.leader_election.enabled else None
    health_server = start_health_server(
        ready=watcher.ready,
        port=config.health_port,
        leader=leader_ready,
        status_fn=watcher.status,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        watcher.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    fatal_errors: list[BaseException] = []
    try:
        if leader_ready is not None:
            run_with_leader_election(
                watcher,
                config=config.leader_election,
                shutdown_event=shutdown_event,
                leader_ready=leader_ready,
                fatal_errors=fatal_errors,
            )
        else:
            try:
                watcher.run_forever(shutdown_event=shutdown_event)
            except PhaseWatchError as exc:
                fatal_errors.append(exc)
                LOGGER.error("Watcher stopped on fatal error: %s", exc)
    finally:
        health_server.shutdown()

    if fatal_errors:
        raise SystemExit(1)
    LOGGER.info("Watcher stopped")


if __name__ == "__main__":
    main()
