import json

import pytest
from fastapi.testclient import TestClient

from log_pipeline.main import app
from log_pipeline.routers.pipeline import get_parse_worker


@pytest.fixture
def client(worker):
    app.dependency_overrides[get_parse_worker] = lambda: worker
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health_and_ready(client) -> None:
    assert client.get("/health").json() == {"status": "ok", "service": "log_pipeline"}
    assert client.get("/ready").json() == {"status": "ready"}


def test_metrics_exposed(client) -> None:
    client.get("/health")

    response = client.get("/metrics")

    assert response.status_code == 200


def test_run_then_status_and_recommendations(client, store) -> None:
    store.append(
        [{"payload": json.dumps({"message": f"m{i}", "user_id": i})} for i in range(10)]
    )

    run = client.post("/api/v1/pipeline/run", json={"limit": 50})
    assert run.status_code == 200
    assert run.json()["created"] == 10

    status = client.get("/api/v1/pipeline/status").json()
    assert status["total_raw"] == 10
    assert status["unclaimed"] == 0
    assert status["health_status"] == "healthy"

    recs = client.get("/api/v1/pipeline/fields/recommendations", params={"threshold": 0}).json()
    assert [rec["name"] for rec in recs] == ["user_id"]
    assert recs[0]["inferred_type"] == "number"

    promoted = client.post("/api/v1/pipeline/fields/auto_promote", params={"threshold": 0})
    assert promoted.json() == {"promoted": 1}


def test_run_without_body(client) -> None:
    response = client.post("/api/v1/pipeline/run")

    assert response.status_code == 200
    assert response.json()["processed"] == 0


def test_invalid_threshold_rejected(client) -> None:
    response = client.get("/api/v1/pipeline/fields/recommendations", params={"threshold": -1})

    assert response.status_code == 422


def test_list_fields_with_promotion_filter(client, registry) -> None:
    registry.track("user_id", 1)
    registry.track("user_id", 2)
    registry.track("tenant", "acme")
    registry.promote("tenant")

    fields = client.get("/api/v1/pipeline/fields").json()
    assert [(f["name"], f["usage_count"], f["promoted"]) for f in fields] == [
        ("user_id", 2, False),
        ("tenant", 1, True),
    ]

    promoted = client.get("/api/v1/pipeline/fields", params={"promoted": "true"}).json()
    assert [f["name"] for f in promoted] == ["tenant"]
    assert promoted[0]["inferred_type"] == "string"
