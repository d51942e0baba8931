import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from common.errors import ExtractionError
from fakes import make_image


@pytest.fixture
def queue(make_queue, scripted):
    return make_queue(scripted, max_concurrency=2)


@pytest.fixture
def client(queue):
    with TestClient(create_app(queue)) as c:
        yield c


def upload(client, data, name="photo.png", content_type="image/png"):
    return client.post("/jobs", files={"file": (name, data, content_type)})


def test_upload_and_read_job(client, queue):
    resp = upload(client, make_image())
    assert resp.status_code == 201
    job_id = resp.json()["job_id"]
    assert job_id.startswith("upload_")
    assert resp.json()["status"] in ("QUEUED", "PROCESSING", "COMPLETED")

    assert queue.wait_idle(timeout=5)
    job = client.get(f"/jobs/{job_id}").json()
    assert job["status"] == "COMPLETED"
    assert job["result"] == ["1 Main St, Springfield"]
    assert job["filename"] == "photo.png"
    assert job["media_type"] == "image/png"
    assert "payload" not in job


def test_unreadable_upload_is_rejected(client, queue):
    resp = upload(client, b"not an image", name="notes.txt", content_type="text/plain")
    assert resp.status_code == 400
    assert queue.list_jobs() == []


def test_unknown_job_is_404(client):
    assert client.get("/jobs/upload_missing").status_code == 404
    assert client.post("/jobs/upload_missing/retry").status_code == 404
    assert client.get("/jobs/upload_missing/preview").status_code == 404


def test_list_jobs_in_queue_order(client, queue):
    ids = [upload(client, make_image(i)).json()["job_id"] for i in range(3)]
    assert queue.wait_idle(timeout=5)
    assert [j["id"] for j in client.get("/jobs").json()] == ids


def test_retry_flow(client, queue, scripted):
    img = make_image(5)
    scripted.answer(img, ExtractionError("http", "Webhook request failed: 502 Bad Gateway"))
    job_id = upload(client, img).json()["job_id"]
    assert queue.wait_idle(timeout=5)
    assert client.get(f"/jobs/{job_id}").json()["error"] == "Webhook request failed: 502 Bad Gateway"

    scripted.answer(img, ["10 Downing St"])
    resp = client.post(f"/jobs/{job_id}/retry")
    assert resp.status_code == 200
    assert resp.json()["attempts"] == 2

    assert queue.wait_idle(timeout=5)
    assert client.get(f"/jobs/{job_id}").json()["result"] == ["10 Downing St"]
    # completed jobs cannot be retried
    assert client.post(f"/jobs/{job_id}/retry").status_code == 409


def test_delete_is_idempotent(client, queue):
    job_id = upload(client, make_image()).json()["job_id"]
    assert queue.wait_idle(timeout=5)

    assert client.delete(f"/jobs/{job_id}").status_code == 204
    assert client.delete(f"/jobs/{job_id}").status_code == 204
    assert client.get(f"/jobs/{job_id}").status_code == 404


def test_preview(client, queue):
    job_id = upload(client, make_image(size=(400, 300))).json()["job_id"]
    resp = client.get(f"/jobs/{job_id}/preview")
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/png"

    queue.remove(job_id)
    assert client.get(f"/jobs/{job_id}/preview").status_code == 404


def test_clear_completed(client, queue, scripted):
    failing = make_image(7)
    scripted.answer(failing, ExtractionError("http", "boom"))
    done = upload(client, make_image(1)).json()["job_id"]
    failed = upload(client, failing).json()["job_id"]
    assert queue.wait_idle(timeout=5)

    resp = client.delete("/jobs", params={"status": "COMPLETED"})
    assert resp.json() == {"removed": [done]}
    assert [j["id"] for j in client.get("/jobs").json()] == [failed]

    assert client.delete("/jobs", params={"status": "FAILED"}).status_code == 400


def test_stats(client, queue):
    upload(client, make_image())
    assert queue.wait_idle(timeout=5)
    stats = client.get("/stats").json()
    assert stats["max_concurrency"] == 2
    assert stats["total"] == 1
    assert stats["COMPLETED"] == 1


def test_upload_after_shutdown(client, queue):
    queue.shutdown(wait=False)
    assert upload(client, make_image()).status_code == 503


def test_app_builds_and_shuts_down_its_own_queue(monkeypatch, make_queue, scripted):
    import api.main

    owned = make_queue(scripted)
    monkeypatch.setattr(api.main, "build_queue", lambda: owned)

    with TestClient(create_app()) as c:
        assert c.app.state.queue is owned
        assert upload(c, make_image()).status_code == 201

    assert scripted.closed
    assert owned.list_jobs() == []


def test_responses_do_not_expose_server_paths(client, queue):
    job_id = upload(client, make_image()).json()["job_id"]
    assert queue.wait_idle(timeout=5)
    assert queue.get_status(job_id).preview_path

    assert "preview_path" not in client.get(f"/jobs/{job_id}").json()
    assert all("preview_path" not in j for j in client.get("/jobs").json())


def test_preview_deleted_during_lookup_is_404(client, queue, monkeypatch):
    job_id = upload(client, make_image()).json()["job_id"]
    lookup = queue.previews.path_for

    def lookup_then_remove(jid):
        path = lookup(jid)
        queue.remove(jid)
        return path

    monkeypatch.setattr(queue.previews, "path_for", lookup_then_remove)
    assert client.get(f"/jobs/{job_id}/preview").status_code == 404
