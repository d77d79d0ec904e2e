from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from phasewatch.src.errors import ConfigError


@dataclass(frozen=True)
class LeaderElectionConfig:
    enabled: bool
    namespace: str
    lease_name: str
    lease_duration_seconds: int
    renew_deadline_seconds: int
    retry_period_seconds: int
    # Must exceed the watch timeout: a quiet stream only notices a stop once
    # the server closes it.
    watcher_stop_timeout_seconds: int


@dataclass(frozen=True)
class WatcherConfig:
    """Immutable watcher configuration loaded from the environment at startup.

    Attributes:
        namespaces: Namespaces to watch, one shard each.  Empty means a
                    single cluster-wide watch.
        label_selector: Optional Pod label selector applied to list and watch.
        max_cached_pods: Per-shard cache capacity, ``None`` for unbounded.
        emit_initial_state: Report every Pod found by the startup listing as
                    a first-sight transition.  When off the listing seeds
                    the cache silently.
        record_kube_events: Create a core/v1 Event for every transition in
                    addition to logging it.
    """

    namespaces: tuple[str, ...]
    label_selector: str
    watch_timeout_seconds: int
    list_page_size: int
    backoff_initial_seconds: int
    backoff_max_seconds: int
    max_cached_pods: int | None
    emit_initial_state: bool
    record_kube_events: bool
    health_port: int
    log_level: str
    leader_election: LeaderElectionConfig


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def parse_namespaces(raw: str) -> tuple[str, ...]:
    """Split a comma-separated namespace list, dropping blanks and duplicates."""
    namespaces: list[str] = []
    for part in raw.split(","):
        part = part.strip()
        if part and part not in namespaces:
            namespaces.append(part)
    return tuple(namespaces)


def _load_leader_election(values: Mapping[str, str]) -> LeaderElectionConfig:
    lease_duration_seconds = env_int(
        "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1, env=values
    )
    renew_deadline_seconds = env_int(
        "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1, env=values
    )
    retry_period_seconds = env_int("LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1, env=values)

    if renew_deadline_seconds >= lease_duration_seconds:
        raise ConfigError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period_seconds >= renew_deadline_seconds:
        raise ConfigError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    namespace = values.get("LEADER_ELECTION_NAMESPACE", "default").strip()
    if not namespace:
        raise ConfigError("LEADER_ELECTION_NAMESPACE must be a non-empty string")
    lease_name = values.get("LEADER_ELECTION_LEASE_NAME", "pod-phase-watcher-leader").strip()
    if not lease_name:
        raise ConfigError("LEADER_ELECTION_LEASE_NAME must be a non-empty string")

    return LeaderElectionConfig(
        enabled=parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=False),
        namespace=namespace,
        lease_name=lease_name,
        lease_duration_seconds=lease_duration_seconds,
        renew_deadline_seconds=renew_deadline_seconds,
        retry_period_seconds=retry_period_seconds,
        watcher_stop_timeout_seconds=env_int(
            "LEADER_ELECTION_WATCHER_STOP_TIMEOUT_SECONDS", 45, minimum=1, env=values
        ),
    )


def load_config(env: Mapping[str, str] | None = None) -> WatcherConfig:
    """Load watcher config from the environment.

    Raises :class:`ConfigError` on the first invalid value so the process
    fails at startup rather than watching with a half-valid configuration.
    """
    values = env if env is not None else os.environ

    backoff_initial_seconds = env_int("BACKOFF_INITIAL_SECONDS", 1, minimum=1, env=values)
    backoff_max_seconds = env_int("BACKOFF_MAX_SECONDS", 30, minimum=1, env=values)
    if backoff_max_seconds < backoff_initial_seconds:
        raise ConfigError("BACKOFF_MAX_SECONDS must be >= BACKOFF_INITIAL_SECONDS")

    max_cached_pods = env_int("MAX_CACHED_PODS", 0, minimum=0, env=values)

    log_level = values.get("LOG_LEVEL", "INFO").strip().upper()
    if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ConfigError(f"LOG_LEVEL must be a standard logging level, got: {log_level!r}")

    watch_timeout_seconds = env_int(
        "WATCH_TIMEOUT_SECONDS", 30, minimum=1, maximum=3600, env=values
    )
    leader_election = _load_leader_election(values)
    if (
        leader_election.enabled
        and leader_election.watcher_stop_timeout_seconds <= watch_timeout_seconds
    ):
        raise ConfigError(
            "LEADER_ELECTION_WATCHER_STOP_TIMEOUT_SECONDS must be greater than "
            "WATCH_TIMEOUT_SECONDS"
        )

    return WatcherConfig(
        namespaces=parse_namespaces(values.get("WATCH_NAMESPACES", "")),
        label_selector=values.get("POD_LABEL_SELECTOR", "").strip(),
        watch_timeout_seconds=watch_timeout_seconds,
        list_page_size=env_int("LIST_PAGE_SIZE", 500, minimum=0, env=values),
        backoff_initial_seconds=backoff_initial_seconds,
        backoff_max_seconds=backoff_max_seconds,
        max_cached_pods=max_cached_pods or None,
        emit_initial_state=parse_bool(values.get("EMIT_INITIAL_STATE"), default=True),
        record_kube_events=parse_bool(values.get("RECORD_KUBE_EVENTS"), default=True),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
        log_level=log_level,
        leader_election=leader_election,
    )
