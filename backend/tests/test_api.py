"""HTTP API over an in-memory cluster."""

from __future__ import annotations

import time
from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from conftest import DIGEST_A, DIGEST_B
from rolloutd.adapters import InMemoryCluster
from rolloutd.config import RolloutPolicy
from rolloutd.controller import RolloutController
from rolloutd.errors import NotFoundError, TransientError
from rolloutd.fastapi_app import create_app
from rolloutd.registry import ImageResolver

TAGS = {("acme/site", "main"): DIGEST_B}


def _lookup(repository: str, tag: str) -> str:
    if repository == "acme/flaky":
        raise TransientError("registry timeout")
    try:
        return TAGS[(repository, tag)]
    except KeyError:
        raise NotFoundError(f"{repository}:{tag} not found") from None


@pytest.fixture()
def api() -> Iterator[tuple[TestClient, InMemoryCluster]]:
    cluster = InMemoryCluster()
    policy = RolloutPolicy(batch_timeout=0.3, probe_interval=0.001)
    resolver = ImageResolver(_lookup, max_attempts=2, initial_backoff=0.001, max_backoff=0.002)
    controller = RolloutController.build(cluster, policy=policy, resolver=resolver)
    with TestClient(create_app(controller)) as client:
        yield client, cluster


def test_health(api) -> None:
    client, _ = api
    assert client.get("/health").json() == {"status": "healthy"}
    body = client.get("/api/health").json()
    assert body["workloads"] == 0
    assert body["failed"] == []


def test_register_and_roll_out_via_desired_digest(api) -> None:
    client, cluster = api
    resp = client.post("/api/workloads", json={"workload_id": "site", "replicas": 2, "repository": "acme/site"})
    assert resp.status_code == 201
    assert resp.json()["status"] == "Idle"

    resp = client.put("/api/workloads/site/desired", params={"wait": "true"}, json={"digest": DIGEST_A})
    assert resp.status_code == 200
    body = resp.json()
    assert body["changed"] is True
    assert body["workload"]["status"] == "Healthy"
    assert body["workload"]["current_digest"] == DIGEST_A

    listing = client.get("/api/workloads/site/replicas").json()
    assert [r["digest"] for r in listing["replicas"]] == [DIGEST_A, DIGEST_A]
    assert (listing["desired_replicas"], listing["ready_replicas"], listing["updated_replicas"]) == (2, 2, 2)
    assert listing["digests"] == [DIGEST_A]

    again = client.put("/api/workloads/site/desired", json={"digest": DIGEST_A}).json()
    assert again["changed"] is False


def test_notify_new_image_updates_tracking_workloads(api) -> None:
    client, cluster = api
    cluster.seed("site", DIGEST_A, 2)
    client.post("/api/workloads", json={"workload_id": "site", "replicas": 2, "repository": "acme/site",
                                        "tag": "main", "digest": DIGEST_A})

    resp = client.post("/api/images/notify", params={"wait": "true"},
                       json={"repository": "acme/site", "tag": "main"})
    assert resp.status_code == 200
    assert resp.json()["workloads"] == ["site"]

    workload = client.get("/api/workloads/site").json()
    assert workload["current_digest"] == DIGEST_B
    assert workload["status"] == "Healthy"

    events = client.get("/api/events", params={"workload": "site"}).json()
    assert events[-1]["to_status"] == "Healthy"
    assert events[-1]["to_digest"] == DIGEST_B


def test_notify_unknown_tag_is_404(api) -> None:
    client, _ = api
    client.post("/api/workloads", json={"workload_id": "site", "replicas": 1, "repository": "acme/site",
                                        "tag": "gone"})
    resp = client.post("/api/images/notify", json={"repository": "acme/site", "tag": "gone"})
    assert resp.status_code == 404


def test_notify_registry_outage_is_503(api) -> None:
    client, _ = api
    client.post("/api/workloads", json={"workload_id": "flaky", "replicas": 1, "repository": "acme/flaky",
                                        "tag": "main"})
    resp = client.post("/api/images/notify", json={"repository": "acme/flaky", "tag": "main"})
    assert resp.status_code == 503


def test_notify_for_untracked_image_changes_nothing(api) -> None:
    client, _ = api
    resp = client.post("/api/images/notify", json={"repository": "acme/other", "tag": "main"})
    assert resp.status_code == 200
    assert resp.json()["workloads"] == []


def test_unknown_workload_is_404(api) -> None:
    client, _ = api
    assert client.get("/api/workloads/ghost").status_code == 404
    assert client.put("/api/workloads/ghost/desired", json={"digest": DIGEST_A}).status_code == 404
    assert client.post("/api/workloads/ghost/reconcile").status_code == 404


def test_invalid_registration_is_422(api) -> None:
    client, _ = api
    assert client.post("/api/workloads", json={"workload_id": "Bad_Name"}).status_code == 422
    assert client.post("/api/workloads", json={"workload_id": "ok", "replicas": -1}).status_code == 422


def test_scale_and_delete(api) -> None:
    client, cluster = api
    cluster.seed("site", DIGEST_A, 1)
    client.post("/api/workloads", json={"workload_id": "site", "replicas": 1, "digest": DIGEST_A})

    resp = client.put("/api/workloads/site/replicas", params={"wait": "true"}, json={"replicas": 3})
    assert resp.json()["workload"]["replicas"] == 3
    assert len(cluster.live("site")) == 3

    assert client.delete("/api/workloads/site").status_code == 204
    assert client.get("/api/workloads").json() == []


def _wait_for_status(client: TestClient, workload_id: str, status: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/api/workloads/{workload_id}").json()
        if body["status"] == status:
            return body
        time.sleep(0.01)
    raise AssertionError(f"{workload_id} never reached {status}")


def test_reconcile_retries_a_failed_workload(api) -> None:
    client, cluster = api
    cluster.set_behaviour(DIGEST_B, never_ready=True)
    client.post("/api/workloads", json={"workload_id": "site", "replicas": 2, "digest": DIGEST_B})
    _wait_for_status(client, "site", "Failed")

    cluster.set_behaviour(DIGEST_B)
    resp = client.post("/api/workloads/site/reconcile")
    assert resp.status_code == 202
    assert resp.json() == {"workload_id": "site", "status": "queued"}

    body = _wait_for_status(client, "site", "Healthy")
    assert body["current_digest"] == DIGEST_B
    assert client.post("/api/workloads/ghost/reconcile").status_code == 404


def test_reposting_same_registration_starts_nothing(api) -> None:
    client, cluster = api
    cluster.seed("site", DIGEST_A, 1)
    registration = {"workload_id": "site", "replicas": 1, "digest": DIGEST_A}
    client.post("/api/workloads", json=registration)
    _wait_for_status(client, "site", "Healthy")
    events = client.get("/api/events", params={"workload": "site"}).json()

    assert client.post("/api/workloads", json=registration).status_code == 201
    time.sleep(0.05)

    assert client.get("/api/events", params={"workload": "site"}).json() == events
    assert client.get("/api/workloads/site").json()["status"] == "Healthy"
