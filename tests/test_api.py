"""Tests for the crawl control API."""

import pytest
from conftest import run
from fastapi.testclient import TestClient

from app.backend.server import create_app
from app.crawl_engine.core.types import ChildSpec, CrawlErrorType, CrawlType

BASE = "/api/v1/crawl"
COMIC_URL = "https://comics.example/comic/hero"


@pytest.fixture
def engine(build_engine):
    return build_engine()


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine=engine)) as test_client:
        yield test_client


def create_comic(client, **extra):
    response = client.post(f"{BASE}/jobs", json={"crawl_type": "comic", "target_url": COMIC_URL, **extra})
    assert response.status_code == 201
    return response.json()["job"]


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["store"] == "local"


def test_create_and_get_job(client):
    job = create_comic(client, created_by="admin-1", settings={"parallel_limit": 5})

    response = client.get(f"{BASE}/jobs/{job['id']}")
    body = response.json()

    assert job["status"] == "pending"
    assert job["download_mode"] == "full"
    assert body["job"]["settings"]["parallel_limit"] == 5
    assert len(body["active_items"]) == 1
    assert body["recent_events"][0]["event_type"] == "job_created"


def test_unknown_job_is_404(client):
    response = client.post(f"{BASE}/jobs/missing/cancel")

    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_invalid_transitions_are_409(client):
    job = create_comic(client)

    assert client.post(f"{BASE}/jobs/{job['id']}/pause").status_code == 409
    assert client.post(f"{BASE}/jobs/{job['id']}/cancel").json()["job"]["status"] == "cancelled"
    assert client.post(f"{BASE}/jobs/{job['id']}/cancel").status_code == 409
    assert client.post(f"{BASE}/jobs/{job['id']}/retry").status_code == 409
    assert client.patch(f"{BASE}/jobs/{job['id']}/settings", json={"parallel_limit": 2}).status_code == 409


def test_update_settings_while_pending(client):
    job = create_comic(client)

    response = client.patch(f"{BASE}/jobs/{job['id']}/settings", json={"parallel_limit": 7, "skip_items": [3]})

    assert response.status_code == 200
    assert response.json()["job"]["settings"]["skip_items"] == [3]


def test_queue_snapshot(client):
    create_comic(client, created_by="alice")
    create_comic(client, created_by="bob")

    response = client.get(f"{BASE}/queue", params={"admin_id": "bob"})
    body = response.json()

    assert [item["admin_id"] for item in body["items"]] == ["bob"]
    assert body["counts"]["pending"] == 2


def test_delete_and_restore(client):
    job = create_comic(client)

    deleted = client.delete(f"{BASE}/jobs/{job['id']}").json()["job"]
    restored = client.post(f"{BASE}/jobs/{job['id']}/restore").json()["job"]

    assert deleted["status"] == "cancelled"
    assert deleted["deleted_at"] is not None
    assert restored["deleted_at"] is None
    assert restored["status"] == "cancelled"


def test_retry_failed_children(engine):
    async def failed_chapter():
        sm = engine.state_machine
        chapter = await sm.create_job(CrawlType.CHAPTER, f"{COMIC_URL}/ch1")
        await sm.start(chapter.id)
        specs = [ChildSpec(index=i, url=f"https://img.example/p{i}.jpg") for i in range(3)]
        await sm.spawn_children(chapter.id, specs)
        await sm.finish_discovery(chapter.id)
        for child in await engine.job_store.children(chapter.id):
            await sm.start(child.id)
            await sm.fail_job(child.id, "HTTP 403", CrawlErrorType.BLOCKED)
        return chapter.id

    chapter_id = run(failed_chapter())

    with TestClient(create_app(engine=engine)) as client:
        before = client.get(f"{BASE}/jobs/{chapter_id}").json()
        response = client.post(f"{BASE}/jobs/{chapter_id}/retry", json={"indices": [0, 2]})
        after = client.get(f"{BASE}/jobs/{chapter_id}").json()

    assert before["job"]["status"] == "failed"
    assert before["children_by_status"] == {"failed": 3}
    assert response.status_code == 200
    assert len(response.json()["retried"]) == 3
    assert after["job"]["status"] == "running"
    assert after["children_by_status"] == {"failed": 1, "running": 2}


def test_event_stream(client):
    job = create_comic(client)

    with client.websocket_connect(f"{BASE}/jobs/{job['id']}/events") as websocket:
        replayed = websocket.receive_json()
        client.post(f"{BASE}/jobs/{job['id']}/cancel")
        cancelled = websocket.receive_json()

    assert replayed["event_type"] == "job_created"
    assert cancelled["event_type"] == "job_cancelled"
    assert cancelled["job_id"] == job["id"]
