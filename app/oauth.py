"""
Discord OAuth 2.0 client: authorization URL, code exchange, token refresh and
user lookup.

One requests.Session is shared by the whole process (built in create_app).
Every call has a timeout. Anything other than a well-formed success response
(network error, timeout, non-2xx, "error" payload, missing fields) raises
AuthError; retrying is the caller's decision.
"""
import logging
from urllib.parse import urlencode

import requests
from pydantic import BaseModel, ValidationError

from config import (
    DISCORD_AUTHORIZE_URL,
    DISCORD_SCOPES,
    DISCORD_TOKEN_URL,
    DISCORD_USER_URL,
    Settings,
)
from errors import AuthError

logger = logging.getLogger(__name__)


class TokenSet(BaseModel):
    """Token endpoint response. refresh_token and expires_in are optional on the wire."""
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    token_type: str | None = None
    scope: str | None = None


class DiscordUser(BaseModel):
    id: str
    username: str
    discriminator: str = "0"
    avatar: str | None = None
    email: str | None = None


class DiscordOAuthClient:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        timeout: float = 10.0,
        http: requests.Session | None = None,
    ):
        self.client_id = client_id
        self._client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._http = http or requests.Session()

    @classmethod
    def from_settings(cls, settings: Settings) -> "DiscordOAuthClient":
        return cls(
            settings.discord_client_id,
            settings.discord_client_secret,
            settings.discord_redirect_uri,
            timeout=settings.oauth_timeout_seconds,
        )

    def authorization_url(self, state: str) -> str:
        query = urlencode(
            {
                "response_type": "code",
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "scope": " ".join(DISCORD_SCOPES),
                "state": state,
            }
        )
        return f"{DISCORD_AUTHORIZE_URL}?{query}"

    def exchange_code(self, code: str) -> TokenSet:
        return self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            }
        )

    def refresh(self, refresh_token: str) -> TokenSet:
        return self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            }
        )

    def fetch_user(self, access_token: str) -> DiscordUser:
        try:
            resp = self._http.get(
                DISCORD_USER_URL,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return DiscordUser.model_validate(resp.json())
        except requests.RequestException as e:
            raise AuthError(f"User lookup failed: {e}") from e
        except (ValueError, ValidationError) as e:
            raise AuthError(f"Malformed user response: {e}") from e

    def _token_request(self, data: dict) -> TokenSet:
        data = {
            "client_id": self.client_id,
            "client_secret": self._client_secret,
            **data,
        }
        try:
            resp = self._http.post(
                DISCORD_TOKEN_URL,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout,
            )
            payload = resp.json()
        except requests.RequestException as e:
            raise AuthError(f"Token request failed: {e}") from e
        except ValueError as e:
            raise AuthError(f"Token endpoint returned non-JSON (HTTP {resp.status_code})") from e

        if not isinstance(payload, dict):
            raise AuthError("Token endpoint returned an unexpected payload")
        if "error" in payload:
            raise AuthError(
                f"Token request rejected: {payload.get('error_description', payload['error'])}"
            )
        if not resp.ok:
            raise AuthError(f"Token endpoint returned HTTP {resp.status_code}")
        try:
            return TokenSet.model_validate(payload)
        except ValidationError as e:
            raise AuthError(f"Malformed token response: {e}") from e
