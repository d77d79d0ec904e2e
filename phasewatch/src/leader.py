from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from phasewatch.src.config import LeaderElectionConfig
from phasewatch.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class LeaseLeaderElector:
    """Lease-based leader election using the ``coordination.k8s.io/v1`` Lease API.

    Every replica would otherwise record the same phase transition, so only
    the lease holder runs the watch loop.  The algorithm:

    1. Read the Lease.  If it does not exist, create it and become leader.
    2. If *we* hold it, renew ``renewTime``.
    3. If another identity holds it, take over only once
       ``renewTime + leaseDurationSeconds`` has passed.
    4. ``409 Conflict`` means another replica raced us; retry next cycle.

    A failed renewal keeps leadership until ``renew_deadline_seconds`` have
    passed since the last success, then ``on_stopped_leading`` is invoked.
    ``leading`` mirrors the current state for the readiness endpoint.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
    ) -> None:
        if lease_duration_seconds < 1:
            raise ValueError("lease_duration_seconds must be >= 1")
        if renew_deadline_seconds < 1:
            raise ValueError("renew_deadline_seconds must be >= 1")
        if retry_period_seconds < 0:
            raise ValueError("retry_period_seconds must be >= 0")
        if renew_deadline_seconds >= lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if retry_period_seconds >= renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self.leading = threading.Event()

    @classmethod
    def from_config(
        cls,
        coordination_api: CoordinationV1Api,
        config: LeaderElectionConfig,
        identity: str,
    ) -> LeaseLeaderElector:
        return cls(
            coordination_api=coordination_api,
            namespace=config.namespace,
            lease_name=config.lease_name,
            identity=identity,
            lease_duration_seconds=config.lease_duration_seconds,
            renew_deadline_seconds=config.renew_deadline_seconds,
            retry_period_seconds=config.retry_period_seconds,
        )

    @property
    def is_leader(self) -> bool:
        return self.leading.is_set()

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _try_acquire_or_renew(self) -> bool:
        """Attempt a single acquire-or-renew cycle.  Returns True on success."""
        now = self._now_utc()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
            )
        except ApiException as exc:
            if exc.status == 404:
                return self._create_lease(now)
            LOGGER.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
            return False

        spec = lease.spec
        if spec is None:
            return self._update_lease(lease, now)

        if spec.holder_identity == self.identity:
            return self._update_lease(lease, now)

        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        if spec.renew_time is not None:
            renew_time = spec.renew_time
            if renew_time.tzinfo is None:
                renew_time = renew_time.replace(tzinfo=UTC)
            if (now - renew_time).total_seconds() < duration:
                return False

        return self._update_lease(lease, now)

    def _create_lease(self, now: datetime) -> bool:
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(
                namespace=self.namespace,
                body=lease,
            )
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s already exists, will retry", self.lease_name)
            else:
                LOGGER.warning("Failed to create lease %s: %s", self.lease_name, exc.reason)
            return False
        LOGGER.info("Created leader lease %s", self.lease_name)
        return True

    def _update_lease(self, lease: V1Lease, now: datetime) -> bool:
        """Renew or take over an existing Lease.

        ``acquireTime`` is reset when leadership changes hands.
        """
        if lease.spec is None:
            lease.spec = V1LeaseSpec()
        previous_holder = lease.spec.holder_identity
        lease.spec.holder_identity = self.identity
        lease.spec.renew_time = now
        lease.spec.lease_duration_seconds = self.lease_duration_seconds
        if lease.spec.acquire_time is None or previous_holder != self.identity:
            lease.spec.acquire_time = now
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
                body=lease,
            )
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s update conflict, will retry", self.lease_name)
            else:
                LOGGER.warning("Failed to update lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def _release_lease(self) -> None:
        """Clear holderIdentity so another replica can take over without waiting."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
            if lease.spec and lease.spec.holder_identity == self.identity:
                lease.spec.holder_identity = None
                self.coordination_api.replace_namespaced_lease(
                    name=self.lease_name, namespace=self.namespace, body=lease
                )
                LOGGER.info("Released leader lease %s", self.lease_name)
        except Exception:
            LOGGER.warning("Failed to release leader lease %s", self.lease_name, exc_info=True)

    def _become_leader(self, acquire_wait_started: float) -> float:
        self.leading.set()
        LOGGER.info("Became leader (identity=%s)", self.identity)
        METRICS.leader_state.set(1)
        METRICS.leader_transitions_total.labels(transition="acquired").inc()
        acquired_at = time.monotonic()
        METRICS.leader_acquire_latency_seconds.observe(acquired_at - acquire_wait_started)
        return acquired_at

    def _lose_leadership(self) -> None:
        self.leading.clear()
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Campaign for the lease until *stop_event* is set, invoking the callbacks on changes."""
        LOGGER.info(
            "Starting leader election for lease %s/%s (identity=%s)",
            self.namespace,
            self.lease_name,
            self.identity,
        )
        acquire_wait_started = time.monotonic()
        last_renew_success = acquire_wait_started
        METRICS.leader_state.set(0)

        while not stop_event.is_set():
            try:
                acquired = self._try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election cycle")
                acquired = False

            if acquired and not self.is_leader:
                last_renew_success = self._become_leader(acquire_wait_started)
                on_started_leading()
            elif acquired:
                last_renew_success = time.monotonic()
            elif self.is_leader:
                elapsed = time.monotonic() - last_renew_success
                if elapsed < self.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lease renewal failed; holding leadership for up to %ss (elapsed %.2fs)",
                        self.renew_deadline_seconds,
                        elapsed,
                    )
                else:
                    LOGGER.warning("Lost leader lease after %.2fs without successful renewal", elapsed)
                    self._lose_leadership()
                    acquire_wait_started = time.monotonic()
                    on_stopped_leading()
            stop_event.wait(timeout=self.retry_period_seconds)

        if self.is_leader:
            self._release_lease()
            self._lose_leadership()
            on_stopped_leading()


def default_identity() -> str:
    """Return a unique identity for this replica, defaulting to the pod name.

    In Kubernetes ``HOSTNAME`` is the pod name, giving each replica a stable
    identity for lease ownership.
    """
    return os.getenv("HOSTNAME", os.getenv("POD_NAME", "unknown"))
