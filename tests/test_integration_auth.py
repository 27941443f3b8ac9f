"""Integration tests for the HTTP authentication flow.

Tests the complete flow through the API:
- Registration with passcode delivery
- Passcode verification and token issuance
- Resend cooldown
- Login step-up and lockout
- Error envelopes and headers
"""

import pytest
from fastapi.testclient import TestClient

from stepguard.app import create_app
from stepguard.service.audit import SecurityEventType
from stepguard.service.runtime import Runtime
from stepguard.storage.models import ChannelKind

from conftest import TEST_PASSWORD, RecordingTransport


@pytest.fixture
def transports():
    return {ChannelKind.EMAIL: RecordingTransport(), ChannelKind.MESSAGING: RecordingTransport()}


@pytest.fixture
def runtime(settings, transports):
    return Runtime(settings, transports=transports)


@pytest.fixture
def client(runtime):
    """Create a test client over an explicitly built runtime."""
    with TestClient(create_app(runtime=runtime)) as test_client:
        yield test_client


def register(client, email="user@example.com", **extra):
    return client.post(
        "/v1/auth/register",
        json={"email": email, "password": TEST_PASSWORD, **extra},
    )


class TestRegistrationFlow:
    def test_register_then_verify(self, client, transports):
        """Registration returns a session handle; the emailed code yields tokens."""
        response = register(client)
        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "ok"
        session = data["data"]
        assert session["flow"] == "registration"
        assert session["channels"][0]["destination"] == "u***r@example.com"
        assert "code" not in session

        code = transports[ChannelKind.EMAIL].last_code
        response = client.post(
            "/v1/auth/verify",
            json={"session_id": session["session_id"], "code": code, "channel": "email"},
        )
        assert response.status_code == 200
        tokens = response.json()["data"]["tokens"]
        assert tokens["access_token"]
        assert tokens["refresh_token"]
        assert tokens["token_type"] == "bearer"

    def test_both_channels(self, client, transports):
        response = register(client, phone="+62 858-0065-0661", channels=["email", "messaging"])
        assert response.status_code == 201
        channels = {c["channel"]: c for c in response.json()["data"]["channels"]}
        assert channels["messaging"]["destination"] == "6285***661"
        assert transports[ChannelKind.MESSAGING].last_destination == "6285800650661"

    def test_duplicate_active_identity(self, client, transports):
        session_id = register(client).json()["data"]["session_id"]
        client.post(
            "/v1/auth/verify",
            json={
                "session_id": session_id,
                "code": transports[ChannelKind.EMAIL].last_code,
                "channel": "email",
            },
        )
        response = register(client)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_invalid_email(self, client):
        response = register(client, email="invalid-email")
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert all("input" not in detail for detail in error["details"])

    def test_unknown_field_rejected(self, client):
        response = register(client, role="admin")
        assert response.status_code == 400


class TestVerifyErrors:
    def test_malformed_code(self, client):
        session_id = register(client).json()["data"]["session_id"]
        response = client.post(
            "/v1/auth/verify",
            json={"session_id": session_id, "code": "12a456", "channel": "email"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_malformed_attempts_are_recorded(self, settings, transports):
        """Malformed verify and resend requests still emit one failure event each."""
        runtime = Runtime(settings, transports=transports)
        with TestClient(create_app(runtime=runtime)) as test_client:
            session_id = register(test_client).json()["data"]["session_id"]
            response = test_client.post(
                "/v1/auth/verify",
                json={"session_id": session_id, "code": "12ab", "channel": "email"},
            )
            assert response.status_code == 400
            response = test_client.post(
                "/v1/auth/resend", json={"session_id": session_id, "channel": "sms"}
            )
            assert response.status_code == 400
            assert response.json()["error"]["code"] == "validation_error"
        sink = runtime.security_events
        verify_failures = sink.of_type(SecurityEventType.OTP_VERIFICATION_FAILED)
        resend_failures = sink.of_type(SecurityEventType.OTP_RESEND_FAILED)
        assert len(verify_failures) == 1
        assert len(resend_failures) == 1
        assert verify_failures[0].payload["error_code"] == "validation_error"
        assert "12ab" not in str(verify_failures[0].payload)
        assert session_id not in str(verify_failures[0].payload)

    def test_rejected_bodies_are_recorded(self, settings, transports):
        """Bodies the request models reject still leave one masked failure event."""
        runtime = Runtime(settings, transports=transports)
        with TestClient(create_app(runtime=runtime)) as test_client:
            response = test_client.post(
                "/v1/auth/register",
                json={"email": "not-an-email", "password": TEST_PASSWORD},
            )
            assert response.status_code == 400
            response = test_client.post("/v1/auth/verify", json={"session_id": "sid"})
            assert response.status_code == 400
        sink = runtime.security_events
        registration = sink.of_type(SecurityEventType.REGISTRATION_FAILED)
        verification = sink.of_type(SecurityEventType.OTP_VERIFICATION_FAILED)
        assert len(registration) == 1
        assert len(verification) == 1
        assert registration[0].payload["fields"] == ["body.email"]
        assert "not-an-email" not in str(registration[0].payload)
        assert TEST_PASSWORD not in str(registration[0].payload)

    def test_wrong_code_reports_remaining(self, client):
        session_id = register(client).json()["data"]["session_id"]
        response = client.post(
            "/v1/auth/verify",
            json={"session_id": session_id, "code": "000000", "channel": "email"},
        )
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "invalid_code"
        assert error["details"]["remaining_attempts"] == 4

    def test_unknown_session(self, client):
        response = client.post(
            "/v1/auth/verify",
            json={"session_id": "missing", "code": "123456", "channel": "email"},
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "session_not_found"

    def test_lockout_status(self, client):
        session_id = register(client).json()["data"]["session_id"]
        for _ in range(4):
            client.post(
                "/v1/auth/verify",
                json={"session_id": session_id, "code": "000000", "channel": "email"},
            )
        response = client.post(
            "/v1/auth/verify",
            json={"session_id": session_id, "code": "000000", "channel": "email"},
        )
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "too_many_attempts"


class TestResend:
    def test_cooldown_sets_retry_after(self, client, transports):
        session_id = register(client).json()["data"]["session_id"]
        response = client.post(
            "/v1/auth/resend", json={"session_id": session_id, "channel": "email"}
        )
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "resend_not_allowed"
        assert 0 < int(response.headers["Retry-After"]) <= 60
        assert len(transports[ChannelKind.EMAIL].sent) == 1


class TestLoginFlow:
    def _activate(self, client, transports):
        session_id = register(client).json()["data"]["session_id"]
        client.post(
            "/v1/auth/verify",
            json={
                "session_id": session_id,
                "code": transports[ChannelKind.EMAIL].last_code,
                "channel": "email",
            },
        )

    def test_login_requires_step_up(self, client, transports):
        self._activate(client, transports)
        response = client.post(
            "/v1/auth/login",
            json={"identifier": "user@example.com", "password": TEST_PASSWORD},
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["step_up_required"] is True
        assert data["tokens"] is None

        response = client.post(
            "/v1/auth/verify",
            json={
                "session_id": data["step_up"]["session_id"],
                "code": transports[ChannelKind.EMAIL].last_code,
                "channel": "email",
            },
        )
        assert response.json()["data"]["flow"] == "login"

    def test_account_lockout(self, client, transports):
        self._activate(client, transports)
        for _ in range(5):
            response = client.post(
                "/v1/auth/login",
                json={"identifier": "user@example.com", "password": "WrongPassword1!"},
            )
            assert response.status_code == 401
        response = client.post(
            "/v1/auth/login",
            json={"identifier": "user@example.com", "password": TEST_PASSWORD},
        )
        assert response.status_code == 423
        assert response.json()["error"]["code"] == "account_locked"

    def test_refresh_rotation(self, client, transports):
        session_id = register(client).json()["data"]["session_id"]
        tokens = client.post(
            "/v1/auth/verify",
            json={
                "session_id": session_id,
                "code": transports[ChannelKind.EMAIL].last_code,
                "channel": "email",
            },
        ).json()["data"]["tokens"]
        response = client.post(
            "/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert response.status_code == 200
        reuse = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert reuse.status_code == 401
        assert reuse.json()["error"]["code"] == "invalid_token"


class TestOperational:
    def test_health(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        # Health body is not wrapped in the /v1 envelope
        assert "data" not in body
        assert body["status"] == "healthy"
        assert body["redis"] == "not_configured"
        assert body["audit_events_dropped"] == 0

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-12345"})
        assert response.headers["X-Request-ID"] == "req-12345"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_error_envelope_carries_request_id(self, client):
        response = client.post(
            "/v1/auth/verify",
            json={"session_id": "missing", "code": "123456", "channel": "email"},
            headers={"X-Request-ID": "req-67890"},
        )
        assert response.json()["request_id"] == "req-67890"

    def test_oauth_unconfigured(self, client):
        response = client.post("/v1/auth/oauth/google/start")
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "federation_failed"

    def test_security_events_recorded(self, settings, transports):
        runtime = Runtime(settings, transports=transports)
        with TestClient(create_app(runtime=runtime)) as test_client:
            register(test_client)
        types = [event.event_type for event in runtime.security_events.events]
        assert types == [SecurityEventType.REGISTRATION_STARTED]
