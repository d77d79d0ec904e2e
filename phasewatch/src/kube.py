from __future__ import annotations

import logging
import time

from kubernetes import client, config
from kubernetes.client import CoreV1Api, CoreV1Event, V1EventSource, V1ObjectMeta, V1ObjectReference
from kubernetes.config.config_exception import ConfigException

from phasewatch.src.cache import TransitionEvent
from phasewatch.src.errors import ConfigError

LOGGER = logging.getLogger(__name__)

EVENT_SOURCE_COMPONENT = "pod-phase-watcher"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig (``KUBECONFIG`` or ``~/.kube/config``) for
    development.  Raises :class:`ConfigError` when neither is usable.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
        return
    except ConfigException:
        pass

    try:
        config.load_kube_config()
    except (ConfigException, OSError) as exc:
        raise ConfigError(f"Unable to load Kubernetes configuration: {exc}") from exc
    LOGGER.info("Loaded local kubeconfig")


def build_clients() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


def build_pod_phase_event(
    event: TransitionEvent,
    source_component: str = EVENT_SOURCE_COMPONENT,
    reporting_instance: str = "",
) -> CoreV1Event:
    """Build a ``Normal`` core/v1 Event attached to the Pod whose phase changed.

    The reason is the new phase and the message names the old phase when one
    is known, mirroring what ``kubectl describe pod`` shows for
    recorder-emitted events.
    """
    identity = event.identity
    return CoreV1Event(
        metadata=V1ObjectMeta(
            name=f"{identity.name}.{time.time_ns():x}",
            namespace=identity.namespace,
        ),
        involved_object=V1ObjectReference(
            api_version="v1",
            kind="Pod",
            namespace=identity.namespace,
            name=identity.name,
            resource_version=event.resource_version,
        ),
        reason=str(event.new_phase),
        message=event.message,
        type="Normal",
        source=V1EventSource(component=source_component),
        first_timestamp=event.observed_at,
        last_timestamp=event.observed_at,
        count=1,
        reporting_component=source_component,
        reporting_instance=reporting_instance or None,
    )


def create_pod_phase_event(
    core_api: CoreV1Api,
    event: TransitionEvent,
    source_component: str = EVENT_SOURCE_COMPONENT,
    reporting_instance: str = "",
) -> None:
    body = build_pod_phase_event(
        event,
        source_component=source_component,
        reporting_instance=reporting_instance,
    )
    core_api.create_namespaced_event(namespace=event.identity.namespace, body=body)
