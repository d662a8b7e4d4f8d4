"""
Unit tests for the preference profile endpoints: read and on-demand rebuild.
"""
import asyncio

from decision_memory.dependencies.store_backend import STATUS_STOPPED
from decision_memory.services.lifecycle import StoreState

from tests.fixtures.decision_factory import make_event


def _ingest(app_memory, *events) -> None:
    for event in events:
        assert app_memory.publish(event)
    asyncio.run(app_memory.worker.run_once())


def test_profile_missing_before_first_build(api_client):
    response = api_client.get("/v1/profile")
    assert response.status_code == 200
    assert response.json() == {"status": "no_profile", "profile": None}


def test_rebuild_publishes_a_new_profile(api_client, app_memory):
    _ingest(
        app_memory,
        make_event("evt-1", subject_ref="media-1", verdict="keep", reason="sharp"),
        make_event("evt-2", subject_ref="media-2", verdict="discard", reason="blurry"),
    )

    response = api_client.post("/v1/profile/rebuild")
    assert response.status_code == 200
    assert response.json() == {"status": "completed", "profile_version": 1, "error": None}

    data = api_client.get("/v1/profile").json()
    assert data["status"] == "ok"
    assert data["profile"]["profile_version"] == 1
    assert data["profile"]["rule_based_stats"]["total_decisions"] == 2
    assert data["profile"]["rule_based_stats"]["keep_rate"] == 0.5


def test_rebuild_bumps_version(api_client, app_memory):
    _ingest(app_memory, make_event("evt-1"))

    api_client.post("/v1/profile/rebuild")
    second = api_client.post("/v1/profile/rebuild").json()

    assert second["profile_version"] == 2


def test_cached_profile_backs_context_when_store_is_down(api_client, app_memory, backend):
    _ingest(app_memory, make_event("evt-1", reason="sharp"))
    api_client.post("/v1/profile/rebuild")

    backend.set_status(STATUS_STOPPED)
    app_memory.lifecycle._state = StoreState.STOPPED

    data = api_client.post("/v1/context", json={"text": "portrait", "timeout_ms": 200}).json()

    assert data["source"] == "cache"
    assert data["profile_version"] == 1
    assert "1 past decisions" in data["text"]
