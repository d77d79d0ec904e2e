from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class PodPhase(str, Enum):
    """Coarse Pod lifecycle phase as reported in ``status.phase``."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class PodIdentity:
    """Namespace-qualified Pod name, stable across the Pod's lifetime."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class PhaseCacheEntry:
    identity: PodIdentity
    phase: PodPhase
    last_seen_version: str | None = None


@dataclass(frozen=True)
class TransitionEvent:
    """A detected phase change, handed to notifiers.

    ``old_phase`` is ``None`` exactly when the Pod had no cache entry, i.e.
    the first observation since the cache was created or the Pod evicted.
    """

    identity: PodIdentity
    old_phase: PodPhase | None
    new_phase: PodPhase
    observed_at: datetime
    resource_version: str | None = None

    @property
    def message(self) -> str:
        if self.old_phase is None:
            return f"Pod phase changed to {self.new_phase.value}"
        return f"Pod phase changed from {self.old_phase.value} to {self.new_phase.value}"


class PhaseCache:
    """Last observed phase per Pod identity.

    The cache has a single writer: the watcher that owns it.  Every
    observation goes through :meth:`update`, whether or not the phase
    changed, so ``last_seen_version`` always reflects the freshest event.

    When ``max_entries`` is set the cache is bounded: inserting a new
    identity past the bound evicts the least recently updated entry.  This
    only matters when deletion notifications are unreliable; normally
    :meth:`remove` keeps the size in line with the live Pod count.
    """

    def __init__(self, max_entries: int | None = None) -> None:
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be >= 1 when set")
        self.max_entries = max_entries
        self._entries: OrderedDict[PodIdentity, PhaseCacheEntry] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, identity: object) -> bool:
        return identity in self._entries

    def changed(self, identity: PodIdentity, new_phase: PodPhase) -> bool:
        """Return True when *identity* is unknown or its cached phase differs."""
        entry = self._entries.get(identity)
        return entry is None or entry.phase != new_phase

    def get(self, identity: PodIdentity) -> PodPhase | None:
        entry = self._entries.get(identity)
        return entry.phase if entry is not None else None

    def entry(self, identity: PodIdentity) -> PhaseCacheEntry | None:
        return self._entries.get(identity)

    def update(
        self,
        identity: PodIdentity,
        new_phase: PodPhase,
        version: str | None = None,
    ) -> list[PhaseCacheEntry]:
        """Insert or overwrite the entry for *identity*.

        A ``None`` *version* keeps the previously recorded token.  Returns
        the entries evicted to respect ``max_entries`` (usually empty).
        """
        previous = self._entries.get(identity)
        if version is None and previous is not None:
            version = previous.last_seen_version
        self._entries[identity] = PhaseCacheEntry(
            identity=identity,
            phase=new_phase,
            last_seen_version=version,
        )
        self._entries.move_to_end(identity)
        return self._evict_overflow()

    def remove(self, identity: PodIdentity) -> PhaseCacheEntry | None:
        return self._entries.pop(identity, None)

    def identities(self) -> list[PodIdentity]:
        return list(self._entries.keys())

    def clear(self) -> None:
        self._entries.clear()

    def _evict_overflow(self) -> list[PhaseCacheEntry]:
        if self.max_entries is None:
            return []
        evicted: list[PhaseCacheEntry] = []
        while len(self._entries) > self.max_entries:
            _, entry = self._entries.popitem(last=False)
            evicted.append(entry)
        return evicted
