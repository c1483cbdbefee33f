from __future__ import annotations

import threading

import pytest
from fastapi.testclient import TestClient

from controller.src.config import ArgoosConfig
from controller.src.controller import ControllerState, TriggerOutcome
from controller.src.models import PushEvent, WorkloadSnapshot
from webhook.src.main import create_app


class IdleController:
    state = ControllerState.RUNNING

    def __init__(self) -> None:
        self.ready = threading.Event()
        self.ready.set()

    def current_snapshot(self) -> WorkloadSnapshot:
        return WorkloadSnapshot()

    def trigger(self, workload_id: str, reason: PushEvent) -> TriggerOutcome:
        return TriggerOutcome.ACCEPTED


@pytest.fixture
def client() -> TestClient:
    app = create_app(ArgoosConfig(token="contract"), IdleController())  # type: ignore[arg-type]
    return TestClient(app, raise_server_exceptions=False)


def test_openapi_contains_documented_paths(client: TestClient) -> None:
    schema = client.get("/openapi.json")
    assert schema.status_code == 200
    paths = schema.json()["paths"]
    assert "post" in paths["/event"]
    assert "/healthz" in paths
    assert "/readyz" in paths
    assert "/metrics" in paths


def test_event_contract(client: TestClient) -> None:
    response = client.post(
        "/event", content=b'{"events": []}', headers={"X-Argoos-Token": "contract"}
    )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/json")
    assert set(response.json()) == {
        "events",
        "impacted",
        "triggered",
        "coalesced",
        "rejected",
        "failed",
    }


def test_event_unauthorized_contract(client: TestClient) -> None:
    response = client.post("/event", content=b'{"events": []}')
    assert response.status_code == 401
    assert response.text == "Bad Token"
    assert response.headers["content-type"].startswith("text/plain")


def test_event_malformed_contract(client: TestClient) -> None:
    response = client.post("/event", content=b"[1, 2", headers={"X-Argoos-Token": "contract"})
    assert response.status_code == 400
    assert response.headers["content-type"].startswith("application/json")
    assert set(response.json()) == {"error", "detail"}


def test_event_method_contract(client: TestClient) -> None:
    response = client.get("/event")
    assert response.status_code == 405


def test_healthz_contract(client: TestClient) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.text == "ok"
    assert response.headers["content-type"].startswith("text/plain")


def test_readyz_contract(client: TestClient) -> None:
    response = client.get("/readyz")
    assert response.status_code == 200
    assert response.text == "ok workloads=0 version=0"
    assert response.headers["content-type"].startswith("text/plain")


def test_metrics_contract(client: TestClient) -> None:
    client.get("/healthz")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "http_requests_total" in response.text
    assert "argoos_snapshot_version" in response.text


def test_not_found_contract(client: TestClient) -> None:
    response = client.get("/does-not-exist")
    assert response.status_code == 404
    assert response.json() == {"detail": "Not Found"}
