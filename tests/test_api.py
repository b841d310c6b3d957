"""
HTTP surface tests against the in-memory backend.

No MongoDB, weather API key or SMTP server is configured, so weather
answers with fallback data and mail goes to a FakeMailer swapped in
after startup.
"""
import pytest
from fastapi.testclient import TestClient

from conftest import FakeMailer
from config import settings
from main import app, limiter

ADMIN_TOKEN = "test-admin-token"
EMAIL = "farmer@example.com"


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(settings, "mongodb_uri", "")
    monkeypatch.setattr(settings, "weather_api_key", "")
    monkeypatch.setattr(settings, "admin_token", ADMIN_TOKEN)
    monkeypatch.setattr(settings, "smtp_host", "")
    monkeypatch.setattr(settings, "smtp_from", "")
    limiter.reset()
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def mailer(client):
    fake = FakeMailer()
    app.state.services.authenticator.mailer = fake
    return fake


def pending_code(email=EMAIL):
    return app.state.services.authenticator.store.get(email).code


class TestServiceEndpoints:

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_health_in_memory(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["backend"] == "memory"
        assert data["weather_circuit"] == "CLOSED"
        assert data["weather_configured"] is False
        assert data["scheduler"] == "running"
        assert sorted(data["scheduled_jobs"]) == ["otp_sweep", "weather_cache_sweep"]


class TestWeatherEndpoint:

    def test_fallback_without_api_key(self, client):
        response = client.get("/weather", params={"lat": "18.52", "lon": "73.85"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["data"]["fallback"] is True
        assert body["data"]["cached"] is False
        assert body["data"]["temperature"] == 28
        assert body["data"]["advisory_category"] == "unavailable"

    @pytest.mark.parametrize("params", [
        {"lat": "18.52"},
        {},
        {"lat": "abc", "lon": "73.85"},
        {"lat": "95", "lon": "73.85"},
    ])
    def test_invalid_coordinates(self, client, params):
        response = client.get("/weather", params=params)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_stats_requires_admin(self, client):
        assert client.get("/weather/stats").status_code == 403

        response = client.get("/weather/stats", headers={"X-Admin-Token": ADMIN_TOKEN})
        assert response.status_code == 200
        assert "cache" in response.json()

    def test_circuit_reset_requires_admin(self, client):
        breaker = app.state.services.breaker
        for _ in range(breaker.failure_threshold):
            breaker.record_failure("RATE_LIMITED")
        assert client.get("/health").json()["weather_circuit"] == "OPEN"

        assert client.post("/weather/circuit/reset").status_code == 403

        response = client.post("/weather/circuit/reset", headers={"X-Admin-Token": ADMIN_TOKEN})
        assert response.status_code == 200
        assert response.json()["circuit"] == "CLOSED"
        assert client.get("/health").json()["weather_circuit"] == "CLOSED"


class TestContextEndpoints:

    def test_full_context_flow(self, client):
        response = client.post("/context/farmer_1", json={"profile": {"name": "Ravi"}})
        assert response.status_code == 200
        assert response.json()["context"]["profile"]["name"] == "Ravi"

        response = client.post(
            "/context/farmer_1/location",
            json={"location": {"lat": 18.52, "lon": 73.85, "address": "Pune"}},
        )
        assert response.json()["context"]["location"]["latitude"] == 18.52

        # Empty location keeps the last good one
        response = client.post(
            "/context/farmer_1/location",
            json={"location": {}, "weather": {"temp": 30}},
        )
        context = response.json()["context"]
        assert context["location"]["address"] == "Pune"
        assert context["weather"]["temperature"] == 30.0

        response = client.post(
            "/context/farmer_1/chats",
            json={"messages": [{"role": "user", "message": f"m{i}"} for i in range(7)]},
        )
        assert [c["message"] for c in response.json()["chats"]] == ["m2", "m3", "m4", "m5", "m6"]

        snapshot = client.get("/context/farmer_1").json()["context"]
        assert snapshot["user_id"] == "farmer_1"
        assert len(snapshot["chats"]) == 5
        assert "_id" not in snapshot

    def test_ensure_without_body(self, client):
        response = client.post("/context/farmer_2")
        assert response.status_code == 200
        assert response.json()["context"]["chats"] == []

    def test_unknown_user_is_404(self, client):
        response = client.get("/context/nobody")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_invalid_user_id(self, client):
        response = client.post("/context/bad.id/chats", json={"messages": [{"message": "hi"}]})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_IDENTITY"

    def test_conflicting_aliases_rejected(self, client):
        response = client.post(
            "/context/farmer_3/location",
            json={"location": {"lat": 18.5, "latitude": 19.5}},
        )
        assert response.status_code == 400

    def test_delete_requires_admin(self, client):
        client.post("/context/farmer_4")

        assert client.delete("/context/farmer_4").status_code == 403
        assert client.delete(
            "/context/farmer_4", headers={"X-Admin-Token": "wrong"}
        ).status_code == 403

        response = client.delete("/context/farmer_4", headers={"X-Admin-Token": ADMIN_TOKEN})
        assert response.status_code == 200
        assert client.get("/context/farmer_4").status_code == 404


class TestOtpEndpoints:

    def test_send_without_smtp_is_502(self, client):
        response = client.post("/auth/otp/send", json={"email": EMAIL})
        assert response.status_code == 502
        assert response.json()["error"]["code"] == "DELIVERY_ERROR"

    def test_signup_then_login(self, client, mailer):
        response = client.post("/auth/otp/send", json={"email": EMAIL})
        assert response.status_code == 200
        assert "code" not in response.json()
        assert len(mailer.sent) == 1

        response = client.post(
            "/auth/otp/verify",
            json={"email": EMAIL, "code": pending_code(), "name": "Ravi"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["is_new_user"] is True
        user_id = body["user"]["user_id"]
        assert body["context"]["profile"]["name"] == "Ravi"

        client.post("/auth/otp/send", json={"email": EMAIL})
        response = client.post("/auth/otp/verify", json={"email": EMAIL, "code": pending_code()})
        body = response.json()
        assert body["is_new_user"] is False
        assert body["user"]["user_id"] == user_id

    def test_signup_requires_name(self, client, mailer):
        client.post("/auth/otp/send", json={"email": EMAIL})
        response = client.post("/auth/otp/verify", json={"email": EMAIL, "code": pending_code()})
        assert response.status_code == 400

    def test_wrong_codes_exhaust(self, client, mailer):
        client.post("/auth/otp/send", json={"email": EMAIL})
        code = pending_code()
        bad = "000000" if code != "000000" else "111111"
        payload = {"email": EMAIL, "code": bad, "name": "Ravi"}

        first = client.post("/auth/otp/verify", json=payload)
        assert first.status_code == 400
        assert first.json()["error"]["remaining_attempts"] == 2

        assert client.post("/auth/otp/verify", json=payload).status_code == 400
        assert client.post("/auth/otp/verify", json=payload).status_code == 429

        response = client.post(
            "/auth/otp/verify",
            json={"email": EMAIL, "code": code, "name": "Ravi"},
        )
        assert response.status_code == 404

    def test_invalid_email(self, client, mailer):
        response = client.post("/auth/otp/send", json={"email": "not-an-email"})
        assert response.status_code == 400

    def test_send_is_rate_limited(self, client, mailer):
        statuses = [
            client.post("/auth/otp/send", json={"email": EMAIL}).status_code
            for _ in range(settings.rate_limit_per_minute + 1)
        ]
        assert statuses[:-1] == [200] * settings.rate_limit_per_minute
        assert statuses[-1] == 429
