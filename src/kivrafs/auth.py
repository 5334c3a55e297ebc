"""
Device-approval authentication endpoints.

The service issues a QR challenge that is approved on a separate
device (BankID). We start the flow with a PKCE challenge, poll the
status URL the service hands back, and finally exchange the code for
tokens. Nothing in this module persists anything; see ``session.py``.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import Corrupt, SchemaError
from .models import AuthChallenge, AuthStatus, RemoteConfig, Session, TokenResponse, UserInfo
from .transport import HttpTransport

logger = logging.getLogger("kivrafs.auth")

M = TypeVar("M", bound=BaseModel)


def parse_model(model: Type[M], data: Any, what: str) -> M:
    """Validate a decoded payload, mapping failures to SchemaError."""
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise SchemaError(f"Unexpected {what} payload: {exc.error_count()} error(s)") from exc


def response_json(resp: Any, what: str) -> Any:
    try:
        return resp.json()
    except ValueError as exc:
        raise SchemaError(f"{what} response is not JSON") from exc


# ---------------------------------------------------------------------------
# PKCE and id token helpers
# ---------------------------------------------------------------------------


def make_pkce_pair() -> Tuple[str, str]:
    """Return a ``(verifier, S256 challenge)`` pair."""
    verifier = secrets.token_urlsafe(48)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def decode_id_token(id_token: str) -> UserInfo:
    """Extract the account identity from the claims of a JWT id token.

    The signature is not verified; the token came straight from the
    token endpoint over TLS.

    Raises:
        Corrupt: If the token is not a decodable JWT.
    """
    sections = id_token.split(".")
    if len(sections) < 2:
        raise Corrupt("Malformed id token: too few sections")
    payload = sections[1]
    payload += "=" * (-len(payload) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload.encode("ascii")))
    except (ValueError, UnicodeError) as exc:
        raise Corrupt(f"Malformed id token: {exc}") from exc
    try:
        return UserInfo.model_validate(claims)
    except ValidationError as exc:
        raise Corrupt("Id token lacks account claims") from exc


def session_from_tokens(tokens: TokenResponse, previous: Optional[Session] = None) -> Session:
    """Build a Session from a token response.

    A refresh response may omit the refresh token or the id token's
    account claims may be unchanged; anything missing is carried over
    from ``previous``.
    """
    expires_at = None
    if tokens.expires_in is not None:
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=tokens.expires_in)
    refresh_token = tokens.refresh_token or (previous.refresh_token if previous else None)
    return Session(
        access_token=tokens.access_token,
        id_token=tokens.id_token,
        refresh_token=refresh_token,
        expires_at=expires_at,
        user_info=decode_id_token(tokens.id_token),
    )


# ---------------------------------------------------------------------------
# AuthClient
# ---------------------------------------------------------------------------


class AuthClient:
    """Unauthenticated calls that drive login, refresh and revoke.

    Args:
        transport: Shared HTTP transport.
        api_url: Base URL of the API host.
        accounts_url: Base URL of the accounts host.
    """

    def __init__(self, transport: HttpTransport, api_url: str, accounts_url: str) -> None:
        self._transport = transport
        self._api_url = api_url.rstrip("/")
        self._accounts_url = accounts_url.rstrip("/")
        self._config: Optional[RemoteConfig] = None

    def get_config(self) -> RemoteConfig:
        """Fetch (once) the public OAuth client settings."""
        if self._config is None:
            resp = self._transport.request("GET", f"{self._accounts_url}/config.json")
            self._config = parse_model(RemoteConfig, response_json(resp, "config"), "config")
        return self._config

    def start(self) -> Tuple[str, AuthChallenge]:
        """Begin a device-approval login.

        Returns:
            The PKCE verifier (needed for the code exchange) and the
            challenge to render.
        """
        config = self.get_config()
        verifier, challenge = make_pkce_pair()
        body = {
            "client_id": config.oauth_default_client_id,
            "response_type": "bankid_all",
            "code_challenge": challenge,
            "code_challenge_method": "S256",
            "scope": "openid profile",
            "redirect_uri": config.oauth_default_redirect_uri,
        }
        resp = self._transport.request("POST", f"{self._api_url}/v2/oauth2/authorize", json=body)
        return verifier, parse_model(AuthChallenge, response_json(resp, "authorize"), "authorize")

    def poll(self, poll_url: str) -> AuthStatus:
        resp = self._transport.request("GET", f"{self._api_url}{poll_url}")
        return parse_model(AuthStatus, response_json(resp, "auth status"), "auth status")

    def abort(self, poll_url: str) -> None:
        self._transport.request("DELETE", f"{self._api_url}{poll_url}")

    def exchange_code(self, code: str, verifier: str) -> TokenResponse:
        config = self.get_config()
        body = {
            "client_id": config.oauth_default_client_id,
            "code": code,
            "code_verifier": verifier,
            "grant_type": "authorization_code",
            "redirect_uri": config.oauth_default_redirect_uri,
        }
        resp = self._transport.request("POST", f"{self._api_url}/v2/oauth2/token", json=body)
        return parse_model(TokenResponse, response_json(resp, "token"), "token")

    def refresh(self, refresh_token: str) -> TokenResponse:
        config = self.get_config()
        body = {
            "client_id": config.oauth_default_client_id,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        resp = self._transport.request("POST", f"{self._api_url}/v2/oauth2/token", json=body)
        return parse_model(TokenResponse, response_json(resp, "token"), "token")

    def revoke(self, access_token: str) -> None:
        body = {"token": access_token, "token_type_hint": "access_token"}
        self._transport.request("POST", f"{self._api_url}/v2/oauth2/token/revoke", json=body)
