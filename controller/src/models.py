from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType


@dataclass(frozen=True)
class PushEvent:
    """One image write announced by the registry.

    ``registry`` is the host the image was pushed to (or the operator-supplied
    override) and may be ``None`` when the notification does not say.  At
    least one of ``tag`` and ``digest`` is set.
    """

    repository: str
    tag: str | None = None
    digest: str | None = None
    registry: str | None = None

    @property
    def reference(self) -> str:
        """Return the pushed image as a ``registry/repository:tag@digest`` string."""
        name = f"{self.registry}/{self.repository}" if self.registry else self.repository
        if self.tag:
            name = f"{name}:{self.tag}"
        if self.digest:
            name = f"{name}@{self.digest}"
        return name


@dataclass(frozen=True)
class WorkloadSpec:
    """A Deployment as last observed from the cluster."""

    id: str
    image_references: frozenset[str]
    revision: str | None = None


@dataclass(frozen=True)
class RolloutRequest:
    workload_id: str
    reason: PushEvent


@dataclass(frozen=True)
class WorkloadSnapshot:
    """Immutable, versioned view of every known workload.

    Refreshes never touch an existing snapshot: ``with_workload``,
    ``without_workload`` and ``build`` all return a new object, which the
    controller then swaps in with a single reference assignment.
    """

    version: int = 0
    workloads: Mapping[str, WorkloadSpec] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @classmethod
    def build(cls, specs: Iterable[WorkloadSpec], version: int) -> WorkloadSnapshot:
        return cls(
            version=version,
            workloads=MappingProxyType({spec.id: spec for spec in specs}),
        )

    def with_workload(self, spec: WorkloadSpec) -> WorkloadSnapshot:
        updated = dict(self.workloads)
        updated[spec.id] = spec
        return WorkloadSnapshot(version=self.version + 1, workloads=MappingProxyType(updated))

    def without_workload(self, workload_id: str) -> WorkloadSnapshot:
        if workload_id not in self.workloads:
            return self
        updated = dict(self.workloads)
        del updated[workload_id]
        return WorkloadSnapshot(version=self.version + 1, workloads=MappingProxyType(updated))

    def get(self, workload_id: str) -> WorkloadSpec | None:
        return self.workloads.get(workload_id)

    def __len__(self) -> int:
        return len(self.workloads)

    def __iter__(self) -> Iterator[WorkloadSpec]:
        return iter(self.workloads.values())
