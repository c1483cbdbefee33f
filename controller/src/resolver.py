from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from controller.src.models import PushEvent, WorkloadSnapshot

DOCKER_HUB_HOSTS = frozenset({"docker.io", "index.docker.io", "registry-1.docker.io"})
DEFAULT_TAG = "latest"


@dataclass(frozen=True)
class ImageReference:
    """A container image reference split Docker-style.

    ``registry`` is ``None`` when the reference does not name one (implicit
    Docker Hub).  ``tag`` defaults to ``latest`` only when the reference has
    neither a tag nor a digest.
    """

    repository: str
    registry: str | None = None
    tag: str | None = None
    digest: str | None = None

    @classmethod
    def parse(cls, image: str) -> ImageReference:
        name, _, digest = image.strip().partition("@")

        registry: str | None = None
        first, separator, remainder = name.partition("/")
        if separator and ("." in first or ":" in first or first == "localhost"):
            registry = first.lower()
            name = remainder

        tag: str | None = None
        repository, colon, candidate = name.rpartition(":")
        if colon and "/" not in candidate:
            tag = candidate
        else:
            repository = name

        if tag is None and not digest:
            tag = DEFAULT_TAG
        return cls(repository=repository, registry=registry, tag=tag, digest=digest or None)

    @property
    def on_docker_hub(self) -> bool:
        return self.registry is None or self.registry in DOCKER_HUB_HOSTS


@lru_cache(maxsize=4096)
def parse_reference(image: str) -> ImageReference:
    return ImageReference.parse(image)


def _normalize_repository(repository: str, docker_hub: bool) -> str:
    if docker_hub and repository.startswith("library/"):
        return repository[len("library/"):]
    return repository


def _same_registry(reference: ImageReference, event_registry: str | None) -> bool:
    if event_registry is None:
        return True
    event_registry = event_registry.lower()
    if reference.registry is None:
        return event_registry in DOCKER_HUB_HOSTS
    if reference.on_docker_hub and event_registry in DOCKER_HUB_HOSTS:
        return True
    return reference.registry == event_registry


def reference_matches(image: str, event: PushEvent) -> bool:
    """Return True if the workload image *image* is affected by *event*.

    A tag match only counts for references that are not pinned to a digest;
    a digest match counts whenever the event carries one.
    """
    reference = parse_reference(image)
    if not _same_registry(reference, event.registry):
        return False

    docker_hub = reference.on_docker_hub
    if _normalize_repository(reference.repository, docker_hub) != _normalize_repository(
        event.repository, docker_hub
    ):
        return False

    if event.tag and reference.digest is None and reference.tag == event.tag:
        return True
    return bool(event.digest) and reference.digest == event.digest


def resolve(snapshot: WorkloadSnapshot, event: PushEvent) -> frozenset[str]:
    """Return the ids of workloads in *snapshot* that reference the pushed image.

    Tag matching is best-effort: a push of ``app:latest`` impacts every
    workload pinned to ``app:latest`` even though its digest may differ.
    Pure function over the in-memory snapshot.
    """
    return frozenset(
        workload.id
        for workload in snapshot
        if any(reference_matches(image, event) for image in workload.image_references)
    )
