from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from observatory.analysis.duplicates import DuplicateDetectionJob
from observatory.gateway.app import Gateway, create_app
from observatory.health import HealthChecker
from observatory.models import DuplicateGroup
from observatory.store.base import StoreError

T0 = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def gateway(cache: "DerivedStateCache", metrics: "ObservatoryMetrics") -> "Gateway":
    return Gateway(cache, metrics, ping_interval=0.05)


@pytest.fixture()
def client(
    gateway: "Gateway", store: "FakeStore", cache: "DerivedStateCache"
) -> "TestClient":
    app = create_app(gateway, HealthChecker(store, cache))
    with TestClient(app) as test_client:
        yield test_client


class TestHealth:
    def test_healthy(self, client: "TestClient") -> "None":
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["redis"] == "connected"

    def test_degraded_when_store_is_down(
        self, client: "TestClient", store: "FakeStore"
    ) -> "None":
        store.error = StoreError("connection refused")

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["database"] == "disconnected"
        assert response.json()["redis"] == "connected"

    def test_root(self, client: "TestClient") -> "None":
        assert client.get("/").json()["status"] == "running"


class TestArtifactRoutes:
    def test_defaults_when_nothing_computed(self, client: "TestClient") -> "None":
        assert client.get("/api/costs").json() == {"breakdown": [], "total_cost": 0.0}
        for path in (
            "/api/analytics/duplicates",
            "/api/analytics/cache-recommendations",
            "/api/analytics/anomalies",
        ):
            assert client.get(path).json() == []

    def test_serves_cached_artifact(
        self, client: "TestClient", fake_redis: "FakeRedis"
    ) -> "None":
        fake_redis.values["costs:24h:by_provider"] = (
            '{"breakdown":[{"label":"OpenAI","cost":4.0}],"total_cost":4.0}',
            None,
        )

        body = client.get("/api/costs").json()

        assert body["total_cost"] == 4.0
        assert body["breakdown"][0]["label"] == "OpenAI"

    def test_dashboard_summary(self, client: "TestClient", fake_redis: "FakeRedis") -> "None":
        fake_redis.values["analytics:anomalies"] = ('{"items":[{"type":"cost_spike"}],"count":1}', None)

        body = client.get("/api/dashboard/summary").json()

        assert set(body) == {
            "costs",
            "duplicates",
            "cache_recommendations",
            "anomalies",
            "updated_at",
        }
        assert body["anomalies"] == [{"type": "cost_spike"}]
        assert body["duplicates"] == []
        assert body["cache_recommendations"] == []
        assert body["costs"] == {"breakdown": [], "total_cost": 0.0}

    def test_cors_allows_dashboard_origin(self, client: "TestClient") -> "None":
        response = client.get("/api/costs", headers={"Origin": "http://localhost:3000"})

        assert response.headers["access-control-allow-origin"] == "*"


class TestWebsocket:
    def test_snapshot_then_ping(self, client: "TestClient", fake_redis: "FakeRedis") -> "None":
        fake_redis.values["costs:24h:by_provider"] = ('{"breakdown":[],"total_cost":1.5}', None)

        with client.websocket_connect("/ws") as websocket:
            first = websocket.receive_json()
            second = websocket.receive_json()

        assert first["type"] == "initial_data"
        assert first["data"] == {"breakdown": [], "total_cost": 1.5}
        assert isinstance(first["timestamp"], int)
        assert second == {"type": "ping"}


class TestAnalyticsWireShape:
    @pytest.mark.parametrize(
        "path,key",
        [
            ("/api/analytics/duplicates", "analytics:duplicates"),
            ("/api/analytics/cache-recommendations", "analytics:cache_recommendations"),
            ("/api/analytics/anomalies", "analytics:anomalies"),
        ],
    )
    def test_routes_return_bare_item_lists(
        self, client: "TestClient", fake_redis: "FakeRedis", path: "str", key: "str"
    ) -> "None":
        fake_redis.values[key] = (
            '{"count":2,"items":[{"endpoint":"/a"},{"endpoint":"/b"}],'
            '"updated_at":"2026-10-18T12:00:00+00:00"}',
            None,
        )

        assert client.get(path).json() == [{"endpoint": "/a"}, {"endpoint": "/b"}]

    def test_summary_after_duplicate_job_run(
        self,
        client: "TestClient",
        store: "FakeStore",
        cache: "DerivedStateCache",
        metrics: "ObservatoryMetrics",
    ) -> "None":
        store.duplicates = [
            DuplicateGroup(
                organization_id="1",
                fingerprint="abc",
                endpoint="/v1/chat/completions",
                count=3,
                cost=1.5,
                first_seen=T0,
                last_seen=T0,
            )
        ]
        assert client.portal.call(DuplicateDetectionJob(store, cache, metrics).run_once)

        body = client.get("/api/dashboard/summary").json()

        assert isinstance(body["duplicates"], list)
        assert body["duplicates"][0]["endpoint"] == "/v1/chat/completions"
        assert body["duplicates"][0]["count"] == 3
