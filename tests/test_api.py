from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from backend.app.analytics import AnalyticsService
from backend.app.forwarder import NatsForwarder
from backend.app.main import app, build_analytics_service
from backend.app.store import InMemoryEventStore
from shared.config import Settings, settings


@pytest.fixture
def client(service):
    app.state.analytics = service
    yield TestClient(app)
    app.state.analytics = None


class TestTrackEndpoint:

    def test_track_reads_request_metadata(self, client, store):
        response = client.post(
            "/track",
            json={
                "event": "lesson_start",
                "category": "lesson",
                "properties": {"lessonId": "l1"},
                "sessionId": "session_abc",
            },
            headers={
                "x-user-id": "user-42",
                "user-agent": "pytest-browser",
                "x-forwarded-for": "203.0.113.7, 10.0.0.1",
                "cf-ipcountry": "DE",
                "referer": "https://example.com/pricing",
            },
        )

        assert response.status_code == 200
        assert response.json() == {"success": True}

        [event] = store.events()
        assert event.user_id == "user-42"
        assert event.session_id == "session_abc"
        assert event.event_name == "lesson_start"
        assert event.properties == {"lessonId": "l1"}
        assert event.user_agent == "pytest-browser"
        assert event.ip == "203.0.113.7"
        assert event.country == "DE"
        assert event.referrer == "https://example.com/pricing"

    def test_anonymous_event_without_properties(self, client, store):
        response = client.post(
            "/track",
            json={"event": "page_view", "category": "user", "sessionId": "s1"},
            headers={"x-real-ip": "198.51.100.1"},
        )

        assert response.status_code == 200
        [event] = store.events()
        assert event.user_id is None
        assert event.properties == {}
        assert event.ip == "198.51.100.1"

    @pytest.mark.parametrize("body, expected", [
        (
            {"category": "user", "sessionId": "s1"},
            {"event_name": "unknown", "category": "user", "session_id": "s1", "properties": {}},
        ),
        (
            {"event": "page_view", "category": "user", "properties": ["x"], "sessionId": "s1"},
            {"event_name": "page_view", "category": "user", "session_id": "s1", "properties": {}},
        ),
        (
            {"event": "page_view", "category": 5, "sessionId": "s1"},
            {"event_name": "page_view", "category": "5", "session_id": "s1", "properties": {}},
        ),
        (
            {"event": "lesson_start", "category": "lesson", "properties": {"lessonId": "l1"}},
            {"event_name": "lesson_start", "category": "lesson", "session_id": "anonymous", "properties": {"lessonId": "l1"}},
        ),
        (
            ["not", "an", "object"],
            {"event_name": "unknown", "category": "unknown", "session_id": "anonymous", "properties": {}},
        ),
    ])
    def test_malformed_body_is_defaulted(self, client, store, body, expected):
        response = client.post("/track", json=body)

        assert response.status_code == 200
        assert response.json() == {"success": True}
        [event] = store.events()
        assert {key: getattr(event, key) for key in expected} == expected

    def test_body_that_is_not_json_returns_500(self, client, store):
        response = client.post("/track", content=b"event=page_view", headers={"content-type": "text/plain"})

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to track event"}
        assert store.events() == []

    def test_track_failure_returns_500(self, client):
        failing = MagicMock(spec=AnalyticsService)
        failing.track = AsyncMock(side_effect=RuntimeError("store offline"))
        app.state.analytics = failing

        response = client.post("/track", json={"event": "page_view", "category": "user", "sessionId": "s1"})

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to track event"}


class TestDashboardEndpoint:

    def test_overview_is_default(self, client):
        response = client.get("/dashboard")

        assert response.status_code == 200
        assert set(response.json()) == {"realtime", "revenue", "ai", "learning"}

    def test_unknown_type_falls_back_to_overview(self, client):
        response = client.get("/dashboard", params={"type": "funnel"})

        assert response.status_code == 200
        assert set(response.json()) == {"realtime", "revenue", "ai", "learning"}

    @pytest.mark.parametrize("report_type, key", [
        ("realtime", "active_users"),
        ("revenue", "monthly_recurring_revenue"),
        ("ai", "most_asked_questions"),
        ("learning", "completion_rates_by_lesson"),
    ])
    def test_single_report(self, client, report_type, key):
        response = client.get("/dashboard", params={"type": report_type})

        assert response.status_code == 200
        assert key in response.json()

    def test_reports_tracked_events(self, client):
        for satisfaction in (5, 3):
            client.post("/track", json={
                "event": "ai_interaction",
                "category": "ai",
                "properties": {"satisfaction": satisfaction, "question": "What is RAG?"},
                "sessionId": "s1",
            })

        data = client.get("/dashboard", params={"type": "ai"}).json()

        assert data["user_satisfaction_rating"] == 4
        assert data["most_asked_questions"] == [{"question": "What is RAG?", "count": 2}]

    def test_report_failure_returns_500(self, client):
        failing = MagicMock(spec=AnalyticsService)
        failing.get_ai_analytics.side_effect = ZeroDivisionError()
        app.state.analytics = failing

        response = client.get("/dashboard", params={"type": "ai"})

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to fetch analytics data"}

    def test_api_key_required_when_configured(self, client):
        with patch.object(settings, "API_KEYS", {"secret-key"}):
            assert client.get("/dashboard").status_code == 401
            assert client.get("/dashboard", headers={"X-API-Key": "wrong"}).status_code == 401
            assert client.get("/dashboard", headers={"X-API-Key": "secret-key"}).status_code == 200


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


def test_build_analytics_service_from_settings():
    config = Settings(ENVIRONMENT="production", RETENTION_WINDOW_SECONDS=3600, MAX_EVENTS=100, STRICT_VALIDATION=True)

    service = build_analytics_service(config, client=AsyncMock())

    assert isinstance(service.store, InMemoryEventStore)
    assert service.store.retention_window == timedelta(hours=1)
    assert service.store.max_events == 100
    assert service.strict is True
    assert isinstance(service._forwarder, NatsForwarder)


def test_development_settings_do_not_forward():
    service = build_analytics_service(Settings(ENVIRONMENT="development"))

    assert service._forwarder is None


def test_lifespan_builds_service_from_settings():
    app.state.analytics = None
    with patch.object(settings, "ENVIRONMENT", "development"), \
            patch.object(settings, "STORE_BACKEND", "memory"):
        with TestClient(app) as lifespan_client:
            assert isinstance(app.state.analytics, AnalyticsService)
            assert lifespan_client.post(
                "/track", json={"event": "page_view", "category": "user", "sessionId": "s1"}
            ).json() == {"success": True}
            assert len(app.state.analytics.store) == 1
    app.state.analytics = None
