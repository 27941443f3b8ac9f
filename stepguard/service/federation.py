from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlencode, urlparse

import httpx

from stepguard.logging import get_logger
from stepguard.service.errors import FederationError
from stepguard.service.masking import mask_identifier

# OAuth provider configurations
OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
}

logger = get_logger(__name__)


@dataclass(frozen=True)
class FederatedProfile:
    provider: str
    provider_uid: str
    email: str
    email_verified: bool
    name: Optional[str] = None
    picture: Optional[str] = None


def validate_redirect_uri(redirect_uri: str) -> str:
    parsed = urlparse(redirect_uri)
    if parsed.scheme not in {"https", "http"}:
        raise ValueError("OAuth redirect URI must be http(s)")
    if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
        raise ValueError("Insecure redirect URI not allowed outside localhost")
    if not parsed.netloc:
        raise ValueError("OAuth redirect URI must include host")
    return redirect_uri


class GoogleIdentityProvider:
    """Authorization-code exchange against Google's OAuth endpoints.

    Only the primary credential comes from here: a profile with a verified
    email. The caller still has to complete a passcode step-up before any
    token is issued.
    """

    name = "google"

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str],
        *,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self.config = OAUTH_PROVIDERS[self.name]

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def authorization_url(self, state: str) -> str:
        if not self.is_configured:
            logger.warning("oauth_not_configured", provider=self.name)
            raise FederationError(
                f"OAuth provider {self.name} is not configured", status_code=503
            )
        try:
            callback_uri = validate_redirect_uri(self.redirect_uri or "")
        except ValueError as exc:
            logger.error("oauth_redirect_uri_invalid", provider=self.name, error=str(exc))
            raise FederationError(str(exc), status_code=503) from exc
        params = {
            "client_id": self.client_id,
            "redirect_uri": callback_uri,
            "response_type": "code",
            "scope": self.config["scope"],
            "state": state,
            "access_type": "online",
            "prompt": "select_account",
        }
        return f"{self.config['auth_url']}?{urlencode(params)}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout_seconds,
            follow_redirects=False,
            transport=self._transport,
        )

    async def authenticate(self, code: str) -> FederatedProfile:
        """Exchange ``code`` and return the provider profile.

        Raises ``FederationError`` (401) when the provider rejects the code or
        the email is unverified, and (502) when the provider is unreachable.
        """
        if not self.is_configured:
            raise FederationError(
                f"OAuth provider {self.name} is not configured", status_code=503
            )
        if not code:
            raise FederationError("authorization code is required")
        try:
            async with self._client() as client:
                token_response = await client.post(
                    self.config["token_url"],
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                self._raise_for_status(token_response, "token")
                access_token = self._json(token_response).get("access_token")
                if not access_token:
                    logger.error("oauth_no_access_token", provider=self.name)
                    raise FederationError("identity provider returned no access token")

                userinfo_response = await client.get(
                    self.config["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                self._raise_for_status(userinfo_response, "userinfo")
                userinfo = self._json(userinfo_response)
        except httpx.TimeoutException as exc:
            logger.error("oauth_exchange_timeout", provider=self.name)
            raise FederationError(
                "identity provider timed out", status_code=502
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("oauth_exchange_error", provider=self.name, error=str(exc))
            raise FederationError(
                "identity provider unreachable", status_code=502
            ) from exc

        profile = self._parse_userinfo(userinfo)
        logger.info(
            "oauth_exchange_success",
            provider=self.name,
            provider_uid=mask_identifier(profile.provider_uid),
        )
        return profile

    def _raise_for_status(self, response: httpx.Response, step: str) -> None:
        if response.status_code < 400:
            return
        logger.error(
            "oauth_exchange_http_error",
            provider=self.name,
            step=step,
            status_code=response.status_code,
        )
        if response.status_code >= 500:
            raise FederationError("identity provider error", status_code=502)
        raise FederationError("identity provider rejected the authorization code")

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            logger.error("oauth_response_parse_error", provider=self.name, error=str(exc))
            raise FederationError(
                "identity provider returned malformed data", status_code=502
            ) from exc
        if not isinstance(payload, dict):
            logger.error(
                "oauth_response_invalid_format", provider=self.name, type=str(type(payload))
            )
            raise FederationError(
                "identity provider returned malformed data", status_code=502
            )
        return payload

    def _parse_userinfo(self, userinfo: dict[str, Any]) -> FederatedProfile:
        provider_uid = userinfo.get("id") or userinfo.get("sub")
        if not provider_uid:
            logger.error("oauth_identity_missing_uid", provider=self.name)
            raise FederationError("identity provider returned no subject")
        email = (userinfo.get("email") or "").strip().lower()
        if not email:
            logger.error("oauth_identity_missing_email", provider=self.name)
            raise FederationError("identity provider returned no email")
        # v2 userinfo says verified_email, OIDC says email_verified
        verified = userinfo.get("verified_email", userinfo.get("email_verified"))
        if verified is not True and str(verified).lower() != "true":
            logger.warning("oauth_email_unverified", provider=self.name)
            raise FederationError("identity provider email is not verified")
        return FederatedProfile(
            provider=self.name,
            provider_uid=str(provider_uid),
            email=email,
            email_verified=True,
            name=userinfo.get("name"),
            picture=userinfo.get("picture"),
        )
