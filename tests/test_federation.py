"""Tests for the Google authorization-code exchange."""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from stepguard.service.errors import FederationError
from stepguard.service.federation import GoogleIdentityProvider, validate_redirect_uri

REDIRECT = "http://localhost:8000/v1/auth/oauth/google/callback"


def google_handler(userinfo=None, token_status=200, userinfo_status=200):
    """Mock Google token and userinfo endpoints."""
    userinfo = userinfo if userinfo is not None else {
        "id": "google-uid-123456",
        "email": "Fed.User@Example.com",
        "verified_email": True,
        "name": "Fed User",
    }

    def handler(request):
        if request.url.host == "oauth2.googleapis.com":
            if token_status != 200:
                return httpx.Response(token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "provider-access"})
        if request.url.host == "www.googleapis.com":
            assert request.headers["Authorization"] == "Bearer provider-access"
            return httpx.Response(userinfo_status, json=userinfo)
        return httpx.Response(404)

    return handler


def _provider(handler=None):
    return GoogleIdentityProvider(
        "client-id",
        "client-secret",
        REDIRECT,
        transport=httpx.MockTransport(handler or google_handler()),
    )


class TestAuthorizationUrl:
    def test_includes_state_and_redirect(self):
        url = _provider().authorization_url("state-abc")
        query = parse_qs(urlparse(url).query)
        assert query["state"] == ["state-abc"]
        assert query["redirect_uri"] == [REDIRECT]
        assert query["response_type"] == ["code"]

    def test_unconfigured_provider(self):
        provider = GoogleIdentityProvider(None, None, None)
        with pytest.raises(FederationError) as excinfo:
            provider.authorization_url("state")
        assert excinfo.value.status_code == 503

    def test_redirect_validation(self):
        assert validate_redirect_uri("https://auth.example.com/cb")
        with pytest.raises(ValueError):
            validate_redirect_uri("http://auth.example.com/cb")
        with pytest.raises(ValueError):
            validate_redirect_uri("ftp://localhost/cb")


class TestAuthenticate:
    async def test_verified_profile(self):
        profile = await _provider().authenticate("auth-code")
        assert profile.provider == "google"
        assert profile.provider_uid == "google-uid-123456"
        assert profile.email == "fed.user@example.com"
        assert profile.email_verified

    async def test_unverified_email_rejected(self):
        handler = google_handler(
            userinfo={"id": "uid-1", "email": "x@example.com", "verified_email": False}
        )
        with pytest.raises(FederationError) as excinfo:
            await _provider(handler).authenticate("auth-code")
        assert excinfo.value.status_code == 401

    async def test_rejected_code(self):
        with pytest.raises(FederationError) as excinfo:
            await _provider(google_handler(token_status=400)).authenticate("bad-code")
        assert excinfo.value.status_code == 401

    async def test_provider_outage(self):
        with pytest.raises(FederationError) as excinfo:
            await _provider(google_handler(userinfo_status=503)).authenticate("auth-code")
        assert excinfo.value.status_code == 502

    async def test_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        with pytest.raises(FederationError) as excinfo:
            await _provider(handler).authenticate("auth-code")
        assert excinfo.value.status_code == 502

    async def test_missing_code(self):
        with pytest.raises(FederationError):
            await _provider().authenticate("")
