import pytest
from fastapi.testclient import TestClient

from relayqueue.health import HealthReporter
from relayqueue.main import create_app


@pytest.fixture
def client(settings, queue):
    app = create_app(settings, queue=queue, reporter=HealthReporter(queue, lambda: True))
    return TestClient(app)


ACME = {
    "recipient": "Acme Corp",
    "subject": "Strategic Application: Backend Engineer",
    "body": "...",
    "type": "JOB_APPLICATION",
}


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json()["ok"] is True


def test_request_id_is_echoed(client):
    r = client.get("/healthz", headers={"X-Request-ID": "abc-123"})
    assert r.headers["X-Request-ID"] == "abc-123"
    assert client.get("/healthz").headers["X-Request-ID"]


def test_dispatch_is_queued(client):
    r = client.post("/api/dispatch", json=ACME)
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "QUEUED"
    assert data["state"] == "WAITING"

    job = client.get(f"/api/dispatch/{data['id']}").json()
    assert job["state"] == "WAITING"
    assert job["type"] == "JOB_APPLICATION"
    assert job["attempt"] == 0
    assert job["recipient"] == "Acme Corp"


@pytest.mark.parametrize(
    "patch",
    [{"recipient": ""}, {"subject": "   "}, {"type": "CARRIER_PIGEON"}, {"max_attempts": 0}],
)
def test_dispatch_validation(client, patch):
    r = client.post("/api/dispatch", json={**ACME, **patch})
    assert r.status_code == 422


def test_dispatch_returns_503_when_queue_is_down(client, server, queue):
    server.connected = False
    r = client.post("/api/dispatch", json=ACME)
    assert r.status_code == 503
    assert "error" in r.json()

    server.connected = True
    assert queue.snapshot() == {"waiting": 0, "active": 0, "completed": 0, "failed": 0}


def test_unknown_dispatch_is_404(client):
    assert client.get("/api/dispatch/missing").status_code == 404


def test_health_reports_counts(client):
    client.post("/api/dispatch", json=ACME)
    data = client.get("/api/health").json()
    assert data["status"] == "ACTIVE"
    assert data["redis"] == "CONNECTED"
    assert data["worker"] == "SYNCHRONIZED"
    assert data["node"] == "test-node"
    assert data["browser"] == "READY"
    assert data["queue"] == {"waiting": 1, "active": 0, "completed": 0, "failed": 0}


def test_health_when_store_is_offline(client, server):
    server.connected = False
    r = client.get("/api/health")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "OFFLINE"
    assert data["redis"] == "OFFLINE"


def test_ledger_lists_finished_dispatches(client, queue):
    job_id = client.post("/api/dispatch", json=ACME).json()["id"]
    other = client.post("/api/dispatch", json={**ACME, "type": "B2B_PITCH"}).json()["id"]
    queue.lease("w1")
    queue.complete(job_id, {"status": "SUCCESS"})
    queue.lease("w1")
    queue.fail(other, "boom", retry=False)

    entries = client.get("/api/ledger").json()
    assert {e["id"] for e in entries} == {job_id, other}

    pitches = client.get("/api/ledger", params={"type": "B2B_PITCH"}).json()
    assert [e["id"] for e in pitches] == [other]
    assert pitches[0]["state"] == "FAILED"


def test_api_redis_client_fails_fast(settings):
    settings = settings.model_copy(update={"api_redis_socket_timeout": 0.5, "redis_socket_timeout": 5.0})
    app = create_app(settings)
    kwargs = app.state.queue.redis.connection_pool.connection_kwargs
    assert kwargs["socket_timeout"] == 0.5
    assert kwargs["socket_connect_timeout"] == 0.5
    assert kwargs["retry"]._retries == 0
