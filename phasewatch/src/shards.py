from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from typing import Any

from kubernetes.client import CoreV1Api

from phasewatch.src.cache import PhaseCache
from phasewatch.src.config import WatcherConfig
from phasewatch.src.notifier import Notifier
from phasewatch.src.watcher import Backoff, PodPhaseWatcher


class _AllReady:
    """Readiness view that is set only while every shard is ready."""

    def __init__(self, watchers: Sequence[PodPhaseWatcher]) -> None:
        self._watchers = watchers

    def is_set(self) -> bool:
        return bool(self._watchers) and all(w.ready.is_set() for w in self._watchers)


class ShardedWatcher:
    """Runs one :class:`PodPhaseWatcher` per namespace, each on its own thread.

    Shards share nothing but the notifier: every shard owns its own
    :class:`PhaseCache`, so a Pod's transitions are ordered within its
    namespace but no ordering holds across shards.  A fatal error in any
    shard stops the others and is re-raised from :meth:`run_forever`.
    """

    def __init__(
        self,
        watchers: Sequence[PodPhaseWatcher],
        join_timeout_seconds: float = 10.0,
        poll_interval_seconds: float = 0.5,
        logger: logging.Logger | None = None,
    ) -> None:
        if not watchers:
            raise ValueError("ShardedWatcher needs at least one watcher")
        self.watchers = list(watchers)
        self.join_timeout_seconds = join_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.ready = _AllReady(self.watchers)
        self._external_stop = threading.Event()

    def status(self) -> dict[str, Any]:
        return {"shards": [watcher.shard_status() for watcher in self.watchers]}

    def request_stop(self) -> None:
        self._external_stop.set()
        for watcher in self.watchers:
            watcher.request_stop()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        shard_stop = threading.Event()
        errors: list[Exception] = []
        errors_lock = threading.Lock()

        def _run_shard(watcher: PodPhaseWatcher) -> None:
            try:
                watcher.run_forever(shutdown_event=shard_stop)
            except Exception as exc:
                self.logger.exception("Watcher shard %s failed", watcher.shard)
                with errors_lock:
                    errors.append(exc)
                shard_stop.set()

        threads = [
            threading.Thread(
                target=_run_shard,
                args=(watcher,),
                name=f"phasewatch-{watcher.shard}",
                daemon=True,
            )
            for watcher in self.watchers
        ]
        for thread in threads:
            thread.start()

        while not (stop.is_set() or self._external_stop.is_set() or shard_stop.is_set()):
            if not any(thread.is_alive() for thread in threads):
                break
            stop.wait(timeout=self.poll_interval_seconds)

        shard_stop.set()
        for watcher in self.watchers:
            watcher.request_stop()
        for thread in threads:
            thread.join(timeout=self.join_timeout_seconds)
            if thread.is_alive():
                self.logger.error("Watcher shard thread %s did not stop in time", thread.name)

        if errors:
            raise errors[0]


def build_watcher_from_config(
    config: WatcherConfig,
    core_api: CoreV1Api,
    notifier: Notifier,
) -> PodPhaseWatcher | ShardedWatcher:
    """Construct the watch loop(s) described by *config*.

    Zero or one configured namespace yields a single watcher; more yields a
    :class:`ShardedWatcher` with an independent cache per namespace.
    """

    def _make(namespace: str | None) -> PodPhaseWatcher:
        return PodPhaseWatcher(
            core_api=core_api,
            notifier=notifier,
            cache=PhaseCache(max_entries=config.max_cached_pods),
            namespace=namespace,
            label_selector=config.label_selector,
            watch_timeout_seconds=config.watch_timeout_seconds,
            list_page_size=config.list_page_size,
            backoff=Backoff(
                initial_seconds=float(config.backoff_initial_seconds),
                maximum_seconds=float(config.backoff_max_seconds),
            ),
            emit_initial_state=config.emit_initial_state,
            logger=logging.getLogger(f"phasewatch.watcher.{namespace or 'all'}"),
        )

    if len(config.namespaces) <= 1:
        return _make(config.namespaces[0] if config.namespaces else None)
    return ShardedWatcher([_make(namespace) for namespace in config.namespaces])
