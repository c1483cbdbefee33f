from __future__ import annotations

import pytest

from controller.src.models import PushEvent, WorkloadSnapshot, WorkloadSpec
from controller.src.resolver import ImageReference, reference_matches, resolve

DIGEST = "sha256:" + "a" * 64
OTHER_DIGEST = "sha256:" + "b" * 64


def snapshot_of(**workloads: set[str]) -> WorkloadSnapshot:
    return WorkloadSnapshot.build(
        [
            WorkloadSpec(id=f"ns/{name}", image_references=frozenset(images))
            for name, images in workloads.items()
        ],
        version=1,
    )


@pytest.mark.parametrize(
    ("image", "expected"),
    [
        ("app", ImageReference(repository="app", tag="latest")),
        ("app:v2", ImageReference(repository="app", tag="v2")),
        ("team/app:v2", ImageReference(repository="team/app", tag="v2")),
        (
            "registry.local:5000/team/app:v2",
            ImageReference(repository="team/app", registry="registry.local:5000", tag="v2"),
        ),
        (
            "localhost/app",
            ImageReference(repository="app", registry="localhost", tag="latest"),
        ),
        ("app@" + DIGEST, ImageReference(repository="app", digest=DIGEST)),
        (
            "Quay.IO/org/app:v1@" + DIGEST,
            ImageReference(repository="org/app", registry="quay.io", tag="v1", digest=DIGEST),
        ),
        (
            "registry:5000/app",
            ImageReference(repository="app", registry="registry:5000", tag="latest"),
        ),
    ],
)
def test_parse_image_reference(image: str, expected: ImageReference) -> None:
    assert ImageReference.parse(image) == expected


def test_tag_match_without_registry() -> None:
    assert reference_matches("app:v2", PushEvent(repository="app", tag="v2"))
    assert not reference_matches("app:v1", PushEvent(repository="app", tag="v2"))
    assert not reference_matches("other:v2", PushEvent(repository="app", tag="v2"))


def test_untagged_reference_matches_latest_push() -> None:
    assert reference_matches("app", PushEvent(repository="app", tag="latest"))


def test_registry_must_agree_when_both_sides_name_one() -> None:
    event = PushEvent(repository="app", tag="v2", registry="registry.local:5000")

    assert reference_matches("registry.local:5000/app:v2", event)
    assert reference_matches("REGISTRY.local:5000/app:v2", event)
    assert not reference_matches("other.local:5000/app:v2", event)


def test_implicit_docker_hub_reference_only_matches_docker_hub_pushes() -> None:
    assert not reference_matches(
        "app:v2", PushEvent(repository="app", tag="v2", registry="registry.local:5000")
    )
    assert reference_matches(
        "app:v2", PushEvent(repository="library/app", tag="v2", registry="docker.io")
    )
    assert reference_matches(
        "docker.io/library/app:v2", PushEvent(repository="app", tag="v2")
    )


def test_digest_match() -> None:
    event = PushEvent(repository="app", tag="v2", digest=DIGEST)

    assert reference_matches("app@" + DIGEST, event)
    assert not reference_matches("app@" + OTHER_DIGEST, event)


def test_digest_pinned_reference_ignores_tag_only_push() -> None:
    event = PushEvent(repository="app", tag="v2")

    assert not reference_matches("app:v2@" + DIGEST, event)


def test_digest_only_push_does_not_match_tag_reference() -> None:
    assert not reference_matches("app:v2", PushEvent(repository="app", digest=DIGEST))


def test_resolve_returns_impacted_workloads() -> None:
    snapshot = snapshot_of(
        app={"app:v2", "sidecar:1"},
        canary={"registry.local:5000/app:v2"},
        web={"web:v2"},
    )

    impacted = resolve(snapshot, PushEvent(repository="app", tag="v2"))

    assert impacted == frozenset({"ns/app", "ns/canary"})


def test_resolve_latest_push_impacts_every_latest_workload() -> None:
    snapshot = snapshot_of(a={"app:latest"}, b={"app"}, c={"app:v1"})

    impacted = resolve(snapshot, PushEvent(repository="app", tag="latest"))

    assert impacted == frozenset({"ns/a", "ns/b"})


def test_resolve_returns_empty_set_when_repository_is_unreferenced() -> None:
    snapshot = snapshot_of(web={"web:v2"}, api={"api:v2"})

    assert resolve(snapshot, PushEvent(repository="app", tag="v2")) == frozenset()
    assert resolve(WorkloadSnapshot(), PushEvent(repository="app", tag="v2")) == frozenset()


def test_resolve_is_pure() -> None:
    snapshot = snapshot_of(app={"app:v2"}, web={"web:v2"})
    event = PushEvent(repository="app", tag="v2")

    first = resolve(snapshot, event)
    second = resolve(snapshot, event)

    assert first == second == frozenset({"ns/app"})
    assert set(snapshot.workloads) == {"ns/app", "ns/web"}
