from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError

API = "/api/v1/experiments"


def payload(name="Homepage CTA", allocations=(50, 50), primary="conversion"):
    return {
        "name": name,
        "description": "Button colour test",
        "type": "homepage",
        "variants": [
            {"name": name_, "traffic_allocation": allocation, "config": {"color": name_.lower()}}
            for name_, allocation in zip("ABCD", allocations)
        ],
        "goals": {"primary": primary},
    }


async def create_running(client, **kwargs):
    created = await client.post(API, json=payload(**kwargs))
    experiment_id = created.json()["id"]
    await client.post(f"{API}/{experiment_id}/start")
    return experiment_id


@pytest.mark.asyncio
async def test_create_experiment(client):
    response = await client.post(API, json=payload())

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "draft"
    assert data["type"] == "homepage"
    assert [v["name"] for v in data["variants"]] == ["A", "B"]
    assert data["results"]["conversions"] == {"A": 0, "B": 0}
    assert data["winner"] is None


@pytest.mark.asyncio
async def test_create_experiment_bad_allocation(client):
    response = await client.post(API, json=payload(allocations=(70, 20)))

    assert response.status_code == 400
    data = response.json()
    assert data["error"] == "VALIDATION_ERROR"
    assert data["details"]["total"] == 90


@pytest.mark.asyncio
async def test_create_experiment_duplicate_name(client):
    await client.post(API, json=payload())

    response = await client.post(API, json=payload())

    assert response.status_code == 400
    assert response.json()["message"] == "Experiment name already exists"


@pytest.mark.asyncio
async def test_create_experiment_malformed_body(client):
    response = await client.post(API, json={"name": "No variants"})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_get_missing_experiment(client):
    response = await client.get(f"{API}/does-not-exist")

    assert response.status_code == 404
    assert response.json()["error"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_list_experiments_with_filters(client):
    await create_running(client)
    await client.post(API, json=payload(name="Draft test"))

    everything = await client.get(API)
    running = await client.get(API, params={"status": "running"})

    assert everything.json()["total"] == 2
    assert running.json()["total"] == 1
    assert running.json()["experiments"][0]["name"] == "Homepage CTA"


@pytest.mark.asyncio
async def test_list_experiments_rejects_unknown_status(client):
    response = await client.get(API, params={"status": "archived"})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_active_experiments(client):
    experiment_id = await create_running(client)
    await client.post(API, json=payload(name="Draft test"))

    response = await client.get(f"{API}/active")

    assert response.status_code == 200
    assert [e["id"] for e in response.json()["experiments"]] == [experiment_id]


@pytest.mark.asyncio
async def test_update_experiment(client):
    created = await client.post(API, json=payload())
    experiment_id = created.json()["id"]

    response = await client.patch(
        f"{API}/{experiment_id}", json={"description": "Updated", "winner": "A"}
    )

    assert response.status_code == 200
    assert response.json()["description"] == "Updated"
    assert response.json()["winner"] is None


@pytest.mark.asyncio
async def test_lifecycle_conflicts(client):
    created = await client.post(API, json=payload())
    experiment_id = created.json()["id"]

    pause_draft = await client.post(f"{API}/{experiment_id}/pause")
    assert pause_draft.status_code == 409
    assert pause_draft.json()["details"]["status"] == "draft"

    start = await client.post(f"{API}/{experiment_id}/start")
    assert start.status_code == 200
    assert start.json()["status"] == "running"
    assert start.json()["start_date"] is not None

    start_again = await client.post(f"{API}/{experiment_id}/start")
    assert start_again.status_code == 409

    delete_running = await client.delete(f"{API}/{experiment_id}")
    assert delete_running.status_code == 409


@pytest.mark.asyncio
async def test_assignment_requires_user_header(client):
    experiment_id = await create_running(client)

    response = await client.get(f"{API}/{experiment_id}/assignment")

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_assignment_is_sticky(client):
    experiment_id = await create_running(client)
    headers = {"X-User-ID": "user-42"}

    first = await client.get(f"{API}/{experiment_id}/assignment", headers=headers)
    second = await client.get(f"{API}/{experiment_id}/assignment", headers=headers)

    assert first.status_code == 200
    assert first.json()["variant"] == second.json()["variant"]
    assert first.json()["variant_details"]["config"] == {
        "color": first.json()["variant"].lower()
    }


@pytest.mark.asyncio
async def test_assignment_for_draft_conflicts(client):
    created = await client.post(API, json=payload())

    response = await client.get(
        f"{API}/{created.json()['id']}/assignment", headers={"X-User-ID": "user-1"}
    )

    assert response.status_code == 409
    assert response.json()["message"] == "Experiment is not running"


@pytest.mark.asyncio
async def test_user_assignments(client):
    experiment_id = await create_running(client)

    response = await client.get(f"{API}/assignments", headers={"X-User-ID": "user-1"})

    assert response.status_code == 200
    data = response.json()
    assert len(data) == 1
    assert data[0]["experiment"]["id"] == experiment_id
    assert data[0]["experiment"]["type"] == "homepage"


@pytest.mark.asyncio
async def test_track_events(client):
    experiment_id = await create_running(client)
    headers = {"X-User-ID": "user-1"}

    await client.post(
        f"{API}/{experiment_id}/track", json={"event_type": "impression"}, headers=headers
    )
    response = await client.post(
        f"{API}/{experiment_id}/track",
        json={"event_type": "revenue", "amount": 12.5},
        headers=headers,
    )

    assert response.status_code == 200
    data = response.json()
    assert data["tracked"] is True
    assert data["assignment"]["impressions"] == 1
    assert data["assignment"]["revenue"] == 12.5


@pytest.mark.asyncio
async def test_track_unknown_event_type(client):
    experiment_id = await create_running(client)

    response = await client.post(
        f"{API}/{experiment_id}/track",
        json={"event_type": "click"},
        headers={"X-User-ID": "user-1"},
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_track_negative_revenue(client):
    experiment_id = await create_running(client)

    response = await client.post(
        f"{API}/{experiment_id}/track",
        json={"event_type": "revenue", "amount": -5},
        headers={"X-User-ID": "user-1"},
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_track_on_paused_experiment_is_ignored(client):
    experiment_id = await create_running(client)
    await client.post(f"{API}/{experiment_id}/pause")

    response = await client.post(
        f"{API}/{experiment_id}/track",
        json={"event_type": "conversion"},
        headers={"X-User-ID": "user-1"},
    )

    assert response.status_code == 200
    assert response.json() == {"tracked": False, "assignment": None}


@pytest.mark.asyncio
async def test_results_and_completion(client):
    experiment_id = await create_running(client)
    headers = {"X-User-ID": "user-1"}
    await client.post(
        f"{API}/{experiment_id}/track", json={"event_type": "impression"}, headers=headers
    )
    await client.post(
        f"{API}/{experiment_id}/track", json={"event_type": "conversion"}, headers=headers
    )

    results = await client.get(f"{API}/{experiment_id}/results")
    assert results.status_code == 200
    data = results.json()
    assert len(data["results_by_variant"]) == 2
    assert sum(r["users"] for r in data["results_by_variant"]) == 1
    assert data["significance"]["confidence_level"] in {50, 60, 80, 90, 95}

    invalid = await client.post(f"{API}/{experiment_id}/complete", json={"winner": "Z"})
    assert invalid.status_code == 400

    completed = await client.post(f"{API}/{experiment_id}/complete")
    assert completed.status_code == 200
    body = completed.json()
    assert body["status"] == "completed"
    assigned = [v for v, c in body["results"]["conversions"].items() if c == 1][0]
    assert body["winner"] == assigned

    again = await client.post(f"{API}/{experiment_id}/complete")
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_delete_completed_experiment(client):
    experiment_id = await create_running(client)
    await client.post(f"{API}/{experiment_id}/complete", json={"winner": "A"})

    response = await client.delete(f"{API}/{experiment_id}")

    assert response.status_code == 200
    assert response.json()["winner"] == "A"
    assert (await client.get(f"{API}/{experiment_id}")).status_code == 404


@pytest.mark.asyncio
async def test_store_outage_returns_503(client, service, monkeypatch):
    outage = OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))

    async def failing_execute(*args, **kwargs):
        raise outage

    monkeypatch.setattr(service.store, "db", SimpleNamespace(execute=failing_execute))

    response = await client.get(f"{API}/exp-1")

    assert response.status_code == 503
    data = response.json()
    assert data["error"] == "STORE_UNAVAILABLE"
    assert data["details"]["operation"] == "get_experiment"


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    response = await client.get(API, headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
    assert "X-Process-Time" in response.headers


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/api/v1/health")

    assert response.status_code == 200
    assert response.json()["service"] == "experiments-api"
