from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from phasewatch.src.cache import PhaseCache, PodIdentity, PodPhase, TransitionEvent
from phasewatch.src.errors import (
    MalformedEvent,
    PhaseWatchError,
    ResumeTokenExpired,
    TransientStreamError,
    classify_api_exception,
    classify_status,
)
from phasewatch.src.metrics import METRICS
from phasewatch.src.notifier import Notifier

# An empty stream that stayed open at least this share of the server-side
# timeout ended normally; anything shorter is treated as a failed stream.
_HEALTHY_STREAM_FRACTION = 0.5


def utc_now() -> datetime:
    return datetime.now(UTC)


class WatchState(str, Enum):
    RESYNCING = "resyncing"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    BACKOFF = "backoff"
    STOPPED = "stopped"


class EventType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    BOOKMARK = "BOOKMARK"
    ERROR = "ERROR"


@dataclass(frozen=True)
class RawPodEvent:
    """A watch event after decoding at the stream boundary.

    ``identity`` is ``None`` only for bookmarks, ``phase`` is ``None`` for
    bookmarks and deletions.
    """

    type: EventType
    identity: PodIdentity | None
    phase: PodPhase | None
    resource_version: str | None


@dataclass(frozen=True)
class ResyncResult:
    transitions: list[TransitionEvent] = field(default_factory=list)
    evicted: list[PodIdentity] = field(default_factory=list)
    resource_version: str | None = None


class Backoff:
    """Bounded exponential backoff with jitter.

    Each delay is drawn from ``[base * (1 - jitter), base]`` where ``base``
    doubles per attempt up to ``maximum_seconds``.  Between resets the
    returned delays never decrease and never exceed ``maximum_seconds``.
    """

    def __init__(
        self,
        initial_seconds: float = 1.0,
        maximum_seconds: float = 30.0,
        multiplier: float = 2.0,
        jitter: float = 0.5,
    ) -> None:
        if initial_seconds <= 0:
            raise ValueError("initial_seconds must be > 0")
        if maximum_seconds < initial_seconds:
            raise ValueError("maximum_seconds must be >= initial_seconds")
        if multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if not 0 <= jitter < 1:
            raise ValueError("jitter must be in [0, 1)")
        self.initial_seconds = initial_seconds
        self.maximum_seconds = maximum_seconds
        self.multiplier = multiplier
        self.jitter = jitter
        self.attempts = 0
        self._base = initial_seconds
        self._last_delay = 0.0

    def next_delay(self) -> float:
        base = self._base
        jittered = base * (1.0 - self.jitter + self.jitter * random.random())  # noqa: S311
        delay = min(self.maximum_seconds, max(jittered, self._last_delay))
        self._last_delay = delay
        self._base = min(base * self.multiplier, self.maximum_seconds)
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0
        self._base = self.initial_seconds
        self._last_delay = 0.0


def _resource_version_of(obj: Any) -> str | None:
    if isinstance(obj, Mapping):
        metadata = obj.get("metadata")
        if isinstance(metadata, Mapping):
            value = metadata.get("resourceVersion") or metadata.get("resource_version")
            return str(value) if value else None
        return None
    metadata = getattr(obj, "metadata", None)
    value = getattr(metadata, "resource_version", None)
    return str(value) if value else None


def decode_pod(obj: Any, require_phase: bool = True) -> tuple[PodIdentity, PodPhase | None, str | None]:
    """Extract ``(identity, phase, resourceVersion)`` from a V1Pod-like object.

    Raises :class:`MalformedEvent` when the name, namespace or (if required)
    phase is missing, or when the phase is not a known Pod phase.
    """
    version = _resource_version_of(obj)
    metadata = getattr(obj, "metadata", None)
    namespace = getattr(metadata, "namespace", None)
    name = getattr(metadata, "name", None)
    if not isinstance(namespace, str) or not namespace:
        raise MalformedEvent("pod payload is missing metadata.namespace", version)
    if not isinstance(name, str) or not name:
        raise MalformedEvent("pod payload is missing metadata.name", version)
    identity = PodIdentity(namespace=namespace, name=name)

    raw_phase = getattr(getattr(obj, "status", None), "phase", None)
    if not raw_phase:
        if require_phase:
            raise MalformedEvent(f"pod {identity} is missing status.phase", version)
        return identity, None, version
    try:
        phase = PodPhase(raw_phase)
    except ValueError:
        raise MalformedEvent(f"pod {identity} has unknown phase {raw_phase!r}", version) from None
    return identity, phase, version


def decode_watch_event(event: Mapping[str, Any]) -> RawPodEvent:
    """Decode one event yielded by ``watch.Watch().stream`` into a RawPodEvent.

    ``ERROR`` events carry a ``Status`` object; they are raised as the
    matching :class:`PhaseWatchError` (410 Gone becomes
    :class:`ResumeTokenExpired`).
    """
    raw_type = event.get("type")
    try:
        event_type = EventType(str(raw_type))
    except ValueError:
        raise MalformedEvent(f"unknown watch event type {raw_type!r}") from None

    obj = event.get("object")
    if event_type is EventType.ERROR:
        status = event.get("raw_object")
        if not isinstance(status, Mapping):
            status = obj if isinstance(obj, Mapping) else {}
        code = status.get("code")
        raise classify_status(
            int(code) if isinstance(code, int) else None,
            str(status.get("message") or status.get("reason") or ""),
        )

    if obj is None:
        raise MalformedEvent(f"{event_type.value} event has no object")

    if event_type is EventType.BOOKMARK:
        return RawPodEvent(
            type=event_type,
            identity=None,
            phase=None,
            resource_version=_resource_version_of(obj),
        )

    identity, phase, version = decode_pod(obj, require_phase=event_type is not EventType.DELETED)
    return RawPodEvent(type=event_type, identity=identity, phase=phase, resource_version=version)


class PodPhaseWatcher:
    """Watches Pods and reports every phase transition exactly once.

    The watcher owns a :class:`PhaseCache` and drives it from a
    list-then-watch loop:

    1. **Resync**: list every Pod in scope, reconcile the cache against the
       listing and remember the list's ``resourceVersion``.  Every Pod in
       the first listing is reported as first seen unless
       ``emit_initial_state`` is off, in which case it seeds silently.
    2. **Connect/stream**: open a watch from the remembered version and
       process events one at a time.  ``ADDED``/``MODIFIED`` events go
       through the phase comparison, ``DELETED`` evicts the cache entry,
       ``BOOKMARK`` only advances the version.
    3. A stream that delivered events or stayed open for at least half the
       server timeout reconnects from the last version at once; an empty
       stream that closed early counts as a failure.  ``410 Gone``
       triggers a new resync.  Other failures wait out a bounded, jittered
       exponential backoff and retry forever.
    4. ``401``/``403`` are raised as :class:`AuthError` so the process can
       terminate instead of retrying credentials that cannot work.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        notifier: Notifier,
        cache: PhaseCache | None = None,
        namespace: str | None = None,
        label_selector: str = "",
        watch_timeout_seconds: int = 30,
        list_page_size: int = 500,
        backoff: Backoff | None = None,
        emit_initial_state: bool = True,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.core_api = core_api
        self.notifier = notifier
        self.cache = cache if cache is not None else PhaseCache()
        self.namespace = namespace or None
        self.label_selector = label_selector
        self.watch_timeout_seconds = watch_timeout_seconds
        self.list_page_size = list_page_size
        self.backoff = backoff or Backoff()
        self.emit_initial_state = emit_initial_state
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

        self.shard = self.namespace or "all"
        self.resource_version: str | None = None
        self.state = WatchState.STOPPED
        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_stop: threading.Event | None = None
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def _set_state(self, state: WatchState) -> None:
        if state is not self.state:
            self.logger.debug("Watcher %s: %s -> %s", self.shard, self.state.value, state.value)
            self.state = state

    def _record_cache_size(self) -> None:
        METRICS.cached_pods.labels(shard=self.shard).set(len(self.cache))

    def _observe(
        self, identity: PodIdentity, phase: PodPhase, version: str | None
    ) -> TransitionEvent | None:
        """Apply one phase observation to the cache.

        Returns the transition when the phase differs from the cached one
        (or the Pod is new), otherwise only refreshes the version.
        """
        if not self.cache.changed(identity, phase):
            self.cache.update(identity, phase, version)
            return None

        old_phase = self.cache.get(identity)
        evicted = self.cache.update(identity, phase, version)
        if evicted:
            METRICS.evictions_total.labels(shard=self.shard, cause="capacity").inc(len(evicted))
            self.logger.warning(
                "Phase cache for %s is at capacity (%s); evicted %d least recently updated pod(s)",
                self.shard,
                self.cache.max_entries,
                len(evicted),
            )
        self._record_cache_size()
        return TransitionEvent(
            identity=identity,
            old_phase=old_phase,
            new_phase=phase,
            observed_at=self.now_fn(),
            resource_version=version,
        )

    def _emit(self, transition: TransitionEvent) -> None:
        METRICS.transitions_total.labels(
            shard=self.shard, phase=transition.new_phase.value
        ).inc()
        try:
            self.notifier.notify(transition)
        except Exception:
            METRICS.notify_errors_total.labels(
                notifier=getattr(self.notifier, "name", type(self.notifier).__name__)
            ).inc()
            self.logger.exception("Failed to deliver phase transition for %s", transition.identity)

    def _evict(self, identity: PodIdentity, cause: str) -> bool:
        if self.cache.remove(identity) is None:
            return False
        METRICS.evictions_total.labels(shard=self.shard, cause=cause).inc()
        self._record_cache_size()
        return True

    def handle_event(self, event: Mapping[str, Any]) -> TransitionEvent | None:
        """Process a single watch event.

        Returns the emitted :class:`TransitionEvent`, or ``None`` when the
        event was a duplicate phase, a deletion, a bookmark or malformed.
        Malformed payloads are logged and skipped.  ``ERROR`` events raise
        the matching :class:`PhaseWatchError`.
        """
        try:
            decoded = decode_watch_event(event)
        except MalformedEvent as exc:
            if exc.resource_version:
                self.resource_version = exc.resource_version
            METRICS.malformed_events_total.labels(shard=self.shard).inc()
            self.logger.warning("Skipping malformed watch event: %s", exc)
            return None

        if decoded.resource_version:
            self.resource_version = decoded.resource_version

        if decoded.type is EventType.BOOKMARK or decoded.identity is None:
            return None

        if decoded.type is EventType.DELETED:
            if self._evict(decoded.identity, cause="deleted"):
                self.logger.debug("Evicted deleted pod %s", decoded.identity)
            return None

        if decoded.phase is None:
            return None

        transition = self._observe(decoded.identity, decoded.phase, decoded.resource_version)
        if transition is not None:
            self._emit(transition)
        return transition

    def _list_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if self.namespace:
            kwargs["namespace"] = self.namespace
        if self.label_selector:
            kwargs["label_selector"] = self.label_selector
        return kwargs

    def _list_func(self) -> Callable[..., Any]:
        if self.namespace:
            return self.core_api.list_namespaced_pod
        return self.core_api.list_pod_for_all_namespaces

    def _list_pods(self) -> tuple[list[Any], str | None]:
        """Return every Pod in scope and the listing's resourceVersion.

        Follows ``continue`` tokens so large clusters are listed in pages;
        the resourceVersion of the first page identifies the snapshot.
        """
        list_func = self._list_func()
        items: list[Any] = []
        snapshot_version: str | None = None
        continue_token: str | None = None
        while True:
            kwargs = self._list_kwargs()
            if self.list_page_size > 0:
                kwargs["limit"] = self.list_page_size
            if continue_token:
                kwargs["_continue"] = continue_token
            page = list_func(**kwargs)
            metadata = getattr(page, "metadata", None)
            if snapshot_version is None:
                snapshot_version = getattr(metadata, "resource_version", None)
            items.extend(getattr(page, "items", None) or [])
            continue_token = getattr(metadata, "_continue", None)
            if not continue_token:
                return items, snapshot_version

    def resync(self, emit: bool = True) -> ResyncResult:
        """Re-list all Pods and reconcile the cache against the snapshot.

        Every Pod whose listed phase differs from the cache (or that the
        cache has never seen) yields a transition; every cached Pod missing
        from the snapshot is evicted as deleted.  Transitions are delivered
        only after the cache fully reflects the snapshot, and only when
        *emit* is true.

        API failures are raised as :class:`PhaseWatchError` subclasses.
        """
        try:
            pods, snapshot_version = self._list_pods()
        except ApiException as exc:
            raise classify_api_exception(exc) from exc

        seen: set[PodIdentity] = set()
        transitions: list[TransitionEvent] = []
        for pod in pods:
            try:
                identity, phase, version = decode_pod(pod, require_phase=False)
            except MalformedEvent as exc:
                METRICS.malformed_events_total.labels(shard=self.shard).inc()
                self.logger.warning("Skipping malformed pod in listing: %s", exc)
                continue
            seen.add(identity)
            if phase is None:
                self.logger.warning("Pod %s has no phase in listing; keeping cached state", identity)
                continue
            transition = self._observe(identity, phase, version)
            if transition is not None and emit:
                transitions.append(transition)

        evicted = [identity for identity in self.cache.identities() if identity not in seen]
        for identity in evicted:
            self._evict(identity, cause="resync")

        self._record_cache_size()
        METRICS.resyncs_total.labels(shard=self.shard).inc()
        self.resource_version = snapshot_version
        self.logger.info(
            "Resynced %d pod(s) in %s at resourceVersion %s (%d transition(s), %d evicted)",
            len(seen),
            self.shard,
            snapshot_version,
            len(transitions),
            len(evicted),
        )

        for transition in transitions:
            self._emit(transition)
        return ResyncResult(
            transitions=transitions,
            evicted=evicted,
            resource_version=snapshot_version,
        )

    def shard_status(self) -> dict[str, Any]:
        return {
            "shard": self.shard,
            "state": self.state.value,
            "ready": self.ready.is_set(),
            "resource_version": self.resource_version,
            "cached_pods": len(self.cache),
        }

    def status(self) -> dict[str, Any]:
        return {"shards": [self.shard_status()]}

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream or backoff."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
            active_stop = self._active_stop
        if active_stop is not None:
            active_stop.set()
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _wait_backoff(self, stop_event: threading.Event) -> None:
        self._set_state(WatchState.BACKOFF)
        delay = self.backoff.next_delay()
        self.logger.info(
            "Retrying %s watch in %.2fs (attempt %d)", self.shard, delay, self.backoff.attempts
        )
        stop_event.wait(timeout=delay)

    def _classify(self, exc: Exception) -> PhaseWatchError:
        if isinstance(exc, PhaseWatchError):
            return exc
        if isinstance(exc, ApiException):
            return classify_api_exception(exc)
        return TransientStreamError(f"{type(exc).__name__}: {exc}")

    def _stream_kwargs(self) -> dict[str, Any]:
        kwargs = self._list_kwargs()
        kwargs["resource_version"] = self.resource_version
        kwargs["timeout_seconds"] = self.watch_timeout_seconds
        kwargs["allow_watch_bookmarks"] = True
        return kwargs

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Resync, then watch Pods until shutdown.

        Returns when *shutdown_event* is set or :meth:`request_stop` is
        called.  Raises :class:`AuthError` (or another fatal
        :class:`PhaseWatchError`) when the API rejects the watcher's
        credentials; every other failure is retried indefinitely.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        with self._watcher_lock:
            self._active_stop = stop

        needs_resync = True
        seeded = False
        watch_stream_count = 0
        try:
            while not self._should_stop(stop):
                if needs_resync:
                    self._set_state(WatchState.RESYNCING)
                    try:
                        self.resync(emit=seeded or self.emit_initial_state)
                    except Exception as exc:
                        error = self._classify(exc)
                        if error.fatal:
                            self.logger.error(
                                "Kubernetes API access denied while listing pods in %s (%s). "
                                "Check RBAC and service account permissions.",
                                self.shard,
                                error,
                            )
                            if error is exc:
                                raise
                            raise error from exc
                        self.logger.warning(
                            "Pod listing for %s failed: %s", self.shard, error, exc_info=True
                        )
                        METRICS.watch_errors_total.labels(shard=self.shard).inc()
                        self._wait_backoff(stop)
                        continue
                    needs_resync = False
                    seeded = True
                    self.ready.set()
                    self.logger.info(
                        "Starting %s watch from resourceVersion %s",
                        self.shard,
                        self.resource_version,
                    )

                watcher = watch.Watch()
                with self._watcher_lock:
                    self._active_watcher = watcher
                progressed = False
                try:
                    self._set_state(WatchState.CONNECTING)
                    if watch_stream_count > 0:
                        METRICS.watch_reconnects_total.labels(shard=self.shard).inc()
                    watch_stream_count += 1
                    opened_at = time.monotonic()
                    stream = watcher.stream(self._list_func(), **self._stream_kwargs())
                    self._set_state(WatchState.STREAMING)
                    for event in stream:
                        if self._should_stop(stop):
                            break
                        self.handle_event(event)
                        progressed = True
                    lived = time.monotonic() - opened_at
                    if progressed or lived >= self.watch_timeout_seconds * _HEALTHY_STREAM_FRACTION:
                        self.backoff.reset()
                    elif not self._should_stop(stop):
                        self.logger.warning(
                            "Pod watch for %s closed after %.2fs without events",
                            self.shard,
                            lived,
                        )
                        self._wait_backoff(stop)
                except Exception as exc:
                    error = self._classify(exc)
                    if progressed:
                        self.backoff.reset()
                    if isinstance(error, ResumeTokenExpired):
                        self.logger.warning(
                            "Watch resourceVersion %s for %s expired, re-listing",
                            self.resource_version,
                            self.shard,
                        )
                        needs_resync = True
                        continue
                    METRICS.watch_errors_total.labels(shard=self.shard).inc()
                    if error.fatal:
                        self.logger.error(
                            "Kubernetes API watch denied for %s (%s). "
                            "Check RBAC and service account permissions.",
                            self.shard,
                            error,
                        )
                        if error is exc:
                            raise
                        raise error from exc
                    self.logger.warning(
                        "Pod watch for %s failed: %s", self.shard, error, exc_info=True
                    )
                    self._wait_backoff(stop)
                finally:
                    watcher.stop()
                    with self._watcher_lock:
                        if self._active_watcher is watcher:
                            self._active_watcher = None
        finally:
            with self._watcher_lock:
                self._active_stop = None
            self._set_state(WatchState.STOPPED)
            self.ready.clear()
