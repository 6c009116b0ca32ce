"""Integration tests for API endpoints using FastAPI TestClient."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import FakeBackend
from contentforge.config import get_settings
from contentforge.dependencies import provide_dispatcher, provide_optional_dispatcher
from contentforge.domain.exceptions import (
    CredentialRevokedError,
    MalformedRequestError,
    ServerError,
)
from contentforge.main import create_app

K0, K1, K2 = "AIzaKey-000-aaaaaaaa", "AIzaKey-111-bbbbbbbb", "AIzaKey-222-cccccccc"
ADMIN_SECRET = "operator-secret"


@pytest.fixture
def settings():
    return get_settings(
        _env_file=None,
        gemini_api_keys="",
        gemini_api_key="",
        admin_secret=ADMIN_SECRET,
        daily_reset_enabled=False,
    )


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def dispatcher(make_pool, make_dispatcher, keys, backend):
    return make_dispatcher(make_pool(keys), backend)


@pytest.fixture
def app(settings, dispatcher):
    application = create_app(settings)
    application.dependency_overrides[provide_dispatcher] = lambda: dispatcher
    application.dependency_overrides[provide_optional_dispatcher] = lambda: dispatcher
    return application


@pytest.fixture
def client(app):
    return TestClient(app)


def _generate(client: TestClient, **overrides):
    payload = {"instruction": "You are an SEO analyst.", "content": "Analyse this page."}
    payload.update(overrides)
    return client.post("/api/v1/ai/generate", json=payload)


# ═══════════════════════════════════════════════════════════════
#  Health & metrics
# ═══════════════════════════════════════════════════════════════
class TestHealthEndpoints:
    def test_health_check(self, client) -> None:
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["pool_size"] == 3
        assert data["alive"] == 3
        assert "version" in data

    def test_health_degraded_when_pool_exhausted(self, client, dispatcher) -> None:
        for i in range(dispatcher.pool.size):
            dispatcher.pool.penalize(i, quota_exhausted=True)
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "degraded"

    def test_health_unconfigured_without_keys(self, settings) -> None:
        client = TestClient(create_app(settings))
        resp = client.get("/api/v1/health")
        assert resp.status_code == 503
        assert resp.json()["status"] == "unconfigured"

    def test_metrics_endpoint(self, client) -> None:
        client.get("/api/v1/health")
        resp = client.get("/api/v1/metrics")
        assert resp.status_code == 200
        assert b"http_requests_total" in resp.content

    def test_request_id_is_echoed(self, client) -> None:
        resp = client.get("/api/v1/health", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"


# ═══════════════════════════════════════════════════════════════
#  Key pool
# ═══════════════════════════════════════════════════════════════
class TestKeyPoolEndpoints:
    def test_stats_after_a_call(self, client) -> None:
        assert _generate(client).status_code == 200

        resp = client.get("/api/v1/key-pool/stats")
        assert resp.status_code == 200
        data = resp.json()
        assert data["pool_size"] == 3
        assert data["total_calls"] == 1
        assert len(data["keys"]) == 3
        assert data["keys"][0]["key_prefix"] == "AIzaKey-00..."
        assert data["recent_calls"][0]["outcome"] == "success"
        assert K0 not in resp.text

    def test_reset_requires_admin_secret(self, client) -> None:
        assert client.post("/api/v1/key-pool/reset").status_code == 401
        resp = client.post("/api/v1/key-pool/reset", headers={"Authorization": "Bearer wrong"})
        assert resp.status_code == 401

    def test_reset_clears_exhaustion(self, client, dispatcher) -> None:
        for i in range(dispatcher.pool.size):
            dispatcher.pool.penalize(i, quota_exhausted=True)

        resp = client.post(
            "/api/v1/key-pool/reset",
            headers={"Authorization": f"Bearer {ADMIN_SECRET}"},
        )

        assert resp.status_code == 200
        assert resp.json() == {"status": "reset", "alive_count": 3, "pool_size": 3}
        assert not dispatcher.pool.all_exhausted()


# ═══════════════════════════════════════════════════════════════
#  Generation
# ═══════════════════════════════════════════════════════════════
class TestGenerateEndpoint:
    def test_json_mode_returns_recovered_payload(self, client, backend) -> None:
        backend.script[K0] = ['Sure! Here it is: {"title": "Guide"}']
        resp = _generate(client)
        assert resp.status_code == 200
        assert resp.json() == {"text": '{"title": "Guide"}', "data": {"title": "Guide"}}

    def test_plain_text_mode(self, client, backend) -> None:
        backend.script[K0] = ["An article intro."]
        resp = _generate(client, json_mode=False)
        assert resp.json() == {"text": "An article intro.", "data": None}

    def test_default_used_when_output_is_unreadable(self, make_pool, make_dispatcher, keys, settings) -> None:
        backend = FakeBackend(default_text="I cannot produce JSON today.")
        dispatcher = make_dispatcher(make_pool(keys), backend, max_attempts=2)
        app = create_app(settings)
        app.dependency_overrides[provide_dispatcher] = lambda: dispatcher

        resp = _generate(TestClient(app), expect="object", default={"ngrams": []}, use_default=True)

        assert resp.status_code == 200
        assert resp.json()["data"] == {"ngrams": []}

    def test_unreadable_output_without_default_is_502(self, client, backend) -> None:
        backend.default_text = "no json here"
        resp = _generate(client)
        assert resp.status_code == 502
        assert resp.json()["category"] == "malformed_output"

    def test_pool_exhausted_is_429(self, client, dispatcher, backend) -> None:
        for i in range(dispatcher.pool.size):
            dispatcher.pool.penalize(i, quota_exhausted=True)

        resp = _generate(client)

        assert resp.status_code == 429
        body = resp.json()
        assert body["code"] == "QUOTA_EXHAUSTED"
        assert body["category"] == "quota"
        assert backend.calls == []

    def test_bad_request_is_400(self, client, backend) -> None:
        backend.script[K0] = [MalformedRequestError("Invalid JSON payload received.")]
        resp = _generate(client)
        assert resp.status_code == 400
        assert resp.json()["code"] == "MALFORMED_REQUEST"
        assert len(backend.calls) == 1

    def test_all_keys_revoked_is_503(self, client, backend) -> None:
        for key in (K0, K1, K2):
            backend.script[key] = [CredentialRevokedError("API key not valid")]
        resp = _generate(client)
        assert resp.status_code == 503
        assert resp.json()["category"] == "invalid_credential"

    def test_validation_error(self, client) -> None:
        resp = client.post("/api/v1/ai/generate", json={"instruction": "", "content": "x"})
        assert resp.status_code == 422


class TestStreamEndpoint:
    def test_streams_chunks(self, client, backend) -> None:
        backend.script[K0] = [["# Title\n", "First paragraph. ", "Second."]]
        resp = client.post(
            "/api/v1/ai/generate/stream",
            json={"instruction": "Write an article.", "content": "Topic: trail running"},
        )
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")
        assert resp.text == "# Title\nFirst paragraph. Second."

    def test_failure_before_first_chunk_maps_to_status(self, client, backend) -> None:
        for key in (K0, K1, K2):
            backend.script[key] = [CredentialRevokedError("leaked")]
        resp = client.post(
            "/api/v1/ai/generate/stream",
            json={"instruction": "Write.", "content": "Topic"},
        )
        assert resp.status_code == 503

    def test_failure_mid_stream_ends_with_error_line(self, client, backend) -> None:
        backend.script[K0] = [["Partial ", ServerError("upstream reset", status_code=503)]]
        resp = client.post(
            "/api/v1/ai/generate/stream",
            json={"instruction": "Write.", "content": "Topic"},
        )
        assert resp.status_code == 200
        assert resp.text.startswith("Partial ")
        assert resp.text.endswith("[error: Temporary AI server error. Retry shortly.]")
