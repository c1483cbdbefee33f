"""End-to-end scenarios: registry notification in, Deployment patch out.

The HTTP app, decoder, resolver and a real :class:`RolloutController` run
together; only the Kubernetes API and its watch stream are replaced.
"""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable, Iterator
from types import SimpleNamespace
from typing import Any

import pytest
from fastapi.testclient import TestClient

from controller.src.config import ArgoosConfig
from controller.src.controller import (
    IMAGE_ANNOTATION_KEY,
    ControllerState,
    RolloutController,
    TriggerOutcome,
)
from controller.src.models import PushEvent, WorkloadSpec
from webhook.src.main import create_app

TOKEN = "e2e-token"
HEADERS = {"X-Argoos-Token": TOKEN}


class InMemoryCluster:
    def __init__(
        self, workloads: list[WorkloadSpec], patch_gate: threading.Event | None = None
    ) -> None:
        self.workloads = workloads
        self.patch_gate = patch_gate
        self.patches: list[tuple[str, dict[str, str]]] = []
        self.patch_started = threading.Event()
        self.closed = False

    def stream_target(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        return lambda **_: SimpleNamespace(items=[]), {}

    def list_workloads(self) -> tuple[list[WorkloadSpec], str]:
        return list(self.workloads), "1"

    def patch_workload(self, workload_id: str, annotations: dict[str, str]) -> None:
        self.patches.append((workload_id, dict(annotations)))
        self.patch_started.set()
        if self.patch_gate is not None:
            self.patch_gate.wait(timeout=10)

    def close(self) -> None:
        self.closed = True


class QuietWatch:
    def __init__(self) -> None:
        self._stopped = threading.Event()

    def stream(self, func: Callable[..., Any], **kwargs: Any) -> Iterator[dict[str, Any]]:
        self._stopped.wait(timeout=0.05)
        return iter([])

    def stop(self) -> None:
        self._stopped.set()


def push_notification(repository: str, tag: str) -> str:
    return json.dumps(
        {
            "events": [
                {
                    "action": "push",
                    "target": {
                        "mediaType": "application/vnd.docker.distribution.manifest.v2+json",
                        "repository": repository,
                        "tag": tag,
                    },
                }
            ]
        }
    )


def wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def deploy(
    monkeypatch: pytest.MonkeyPatch,
) -> Iterator[Callable[..., tuple[TestClient, RolloutController, InMemoryCluster]]]:
    monkeypatch.setattr("controller.src.controller.watch.Watch", QuietWatch)
    controllers: list[RolloutController] = []

    def _deploy(
        cluster: InMemoryCluster, stop_grace_seconds: int = 1
    ) -> tuple[TestClient, RolloutController, InMemoryCluster]:
        config = ArgoosConfig(token=TOKEN, stop_grace_seconds=stop_grace_seconds)
        controller = RolloutController(
            config=config,
            connect_fn=lambda _: cluster,  # type: ignore[arg-type,return-value]
            retry_base_seconds=0.01,
        )
        controller.start()
        controllers.append(controller)
        return TestClient(create_app(config, controller)), controller, cluster

    yield _deploy

    for controller in controllers:
        controller.stop(grace_seconds=0.5)


def test_push_rolls_out_the_referencing_deployment(deploy: Any) -> None:
    app = WorkloadSpec(id="ns/app", image_references=frozenset({"app:v2"}))
    other = WorkloadSpec(id="ns/other", image_references=frozenset({"app:v1"}))
    client, _, cluster = deploy(InMemoryCluster([app, other]))

    response = client.post("/event", content=push_notification("app", "v2"), headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["triggered"] == 1
    assert wait_for(lambda: len(cluster.patches) == 1)
    time.sleep(0.1)
    assert len(cluster.patches) == 1
    workload_id, annotations = cluster.patches[0]
    assert workload_id == "ns/app"
    assert annotations[IMAGE_ANNOTATION_KEY] == "app:v2"
    assert "argoos.io/restartedAt" in annotations


def test_push_of_unreferenced_image_changes_nothing(deploy: Any) -> None:
    app = WorkloadSpec(id="ns/app", image_references=frozenset({"app:v2"}))
    client, _, cluster = deploy(InMemoryCluster([app]))

    response = client.post("/event", content=push_notification("unused", "v1"), headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["impacted"] == 0
    time.sleep(0.1)
    assert cluster.patches == []


def test_malformed_notification_changes_nothing(deploy: Any) -> None:
    app = WorkloadSpec(id="ns/app", image_references=frozenset({"app:v2"}))
    client, _, cluster = deploy(InMemoryCluster([app]))

    response = client.post("/event", content=b'{"events": [{"action":', headers=HEADERS)

    assert response.status_code == 400
    time.sleep(0.1)
    assert cluster.patches == []


def test_repeated_push_during_rollout_is_coalesced(deploy: Any) -> None:
    gate = threading.Event()
    app = WorkloadSpec(id="ns/app", image_references=frozenset({"app:v2"}))
    client, _, cluster = deploy(InMemoryCluster([app], patch_gate=gate))

    first = client.post("/event", content=push_notification("app", "v2"), headers=HEADERS)
    assert cluster.patch_started.wait(timeout=2)
    second = client.post("/event", content=push_notification("app", "v2"), headers=HEADERS)
    gate.set()

    assert first.json()["triggered"] == 1
    assert second.json()["coalesced"] == 1
    time.sleep(0.1)
    assert [workload_id for workload_id, _ in cluster.patches] == ["ns/app"]


def test_shutdown_during_rollout_is_bounded(deploy: Any) -> None:
    gate = threading.Event()
    app = WorkloadSpec(id="ns/app", image_references=frozenset({"app:v2"}))
    client, controller, cluster = deploy(InMemoryCluster([app], patch_gate=gate))

    client.post("/event", content=push_notification("app", "v2"), headers=HEADERS)
    assert cluster.patch_started.wait(timeout=2)

    started = time.monotonic()
    controller.stop(grace_seconds=0.3)
    elapsed = time.monotonic() - started
    gate.set()

    assert elapsed < 2.0
    assert controller.state is ControllerState.STOPPED
    assert cluster.closed

    response = client.post("/event", content=push_notification("app", "v2"), headers=HEADERS)
    assert response.status_code == 503
    assert controller.trigger("ns/app", PushEvent(repository="app", tag="v2")) is (
        TriggerOutcome.REJECTED
    )
    assert len(cluster.patches) == 1
