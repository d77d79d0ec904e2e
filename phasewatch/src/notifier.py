from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol

from kubernetes.client import CoreV1Api

from phasewatch.src.cache import TransitionEvent
from phasewatch.src.kube import EVENT_SOURCE_COMPONENT, create_pod_phase_event
from phasewatch.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, event: TransitionEvent) -> None: ...


class LogNotifier:
    """Report each transition as a single log record."""

    name = "log"

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or LOGGER

    def notify(self, event: TransitionEvent) -> None:
        self.logger.info(
            "%s: %s",
            event.identity,
            event.message,
            extra={
                "pod": str(event.identity),
                "old_phase": str(event.old_phase) if event.old_phase is not None else None,
                "new_phase": str(event.new_phase),
                "resource_version": event.resource_version,
            },
        )


class KubeEventNotifier:
    """Record each transition as a core/v1 Event on the Pod."""

    name = "kube-event"

    def __init__(
        self,
        core_api: CoreV1Api,
        source_component: str = EVENT_SOURCE_COMPONENT,
        reporting_instance: str = "",
    ) -> None:
        self.core_api = core_api
        self.source_component = source_component
        self.reporting_instance = reporting_instance

    def notify(self, event: TransitionEvent) -> None:
        create_pod_phase_event(
            core_api=self.core_api,
            event=event,
            source_component=self.source_component,
            reporting_instance=self.reporting_instance,
        )


class CompositeNotifier:
    """Deliver each transition to every sink in order.

    A failing sink is logged and counted; it never prevents delivery to the
    remaining sinks and is not retried.
    """

    def __init__(self, notifiers: Iterable[Notifier], logger: logging.Logger | None = None) -> None:
        self.notifiers = list(notifiers)
        self.logger = logger or LOGGER

    @property
    def name(self) -> str:
        return "+".join(getattr(n, "name", type(n).__name__) for n in self.notifiers)

    def notify(self, event: TransitionEvent) -> None:
        for notifier in self.notifiers:
            sink_name = getattr(notifier, "name", type(notifier).__name__)
            try:
                notifier.notify(event)
            except Exception:
                METRICS.notify_errors_total.labels(notifier=sink_name).inc()
                self.logger.exception(
                    "Notifier %s failed to deliver transition for %s", sink_name, event.identity
                )


def build_notifier(
    core_api: CoreV1Api,
    record_kube_events: bool = True,
    reporting_instance: str = "",
) -> CompositeNotifier:
    """Return the default sink chain: always log, optionally record a cluster Event."""
    notifiers: list[Notifier] = [LogNotifier()]
    if record_kube_events:
        notifiers.append(
            KubeEventNotifier(core_api=core_api, reporting_instance=reporting_instance)
        )
    return CompositeNotifier(notifiers)
