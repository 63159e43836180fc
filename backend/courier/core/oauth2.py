"""
OAuth 2.0 token fetching for requests using `oauth2` auth.

Supports the client-credentials and refresh-token grants. Interactive grants
(authorization code) need a browser and a callback listener owned by the GUI;
the GUI hands the resulting token back as `access_token`.
"""
import logging
import time
from typing import Optional

import httpx
from pydantic import BaseModel

from courier.core.errors import OAuth2Error
from courier.models import AuthConfig

logger = logging.getLogger(__name__)

SUPPORTED_GRANTS = ("client_credentials", "refresh_token")


class OAuth2Token(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    expires_at: Optional[float] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


def _token_form(auth: AuthConfig) -> dict:
    if not auth.token_url:
        raise OAuth2Error("Token URL is required")
    if not auth.client_id:
        raise OAuth2Error("Client ID is required")

    if auth.grant_type == "client_credentials":
        if not auth.client_secret:
            raise OAuth2Error("Client secret is required for the client credentials grant")
        form = {"grant_type": "client_credentials", "client_id": auth.client_id, "client_secret": auth.client_secret}
    elif auth.grant_type == "refresh_token":
        if not auth.refresh_token:
            raise OAuth2Error("Refresh token is required")
        form = {"grant_type": "refresh_token", "client_id": auth.client_id, "refresh_token": auth.refresh_token}
        if auth.client_secret:
            form["client_secret"] = auth.client_secret
    else:
        raise OAuth2Error(f"Grant type '{auth.grant_type}' cannot be fetched here; supported: {', '.join(SUPPORTED_GRANTS)}")

    if auth.scope:
        form["scope"] = auth.scope
    if auth.audience:
        form["audience"] = auth.audience
    return form


async def fetch_token(
    auth: AuthConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    timeout_seconds: float = 30,
) -> OAuth2Token:
    """POST the grant to `auth.token_url`. `auth` must already be resolved."""
    form = _token_form(auth)
    try:
        async with httpx.AsyncClient(transport=transport, timeout=timeout_seconds) as client:
            response = await client.post(auth.token_url, data=form, headers={"Accept": "application/json"})
    except httpx.HTTPError as ex:
        raise OAuth2Error(f"Token request failed: {str(ex) or type(ex).__name__}") from ex

    try:
        payload = response.json()
    except ValueError:
        payload = None
    if response.status_code >= 400:
        detail = ""
        if isinstance(payload, dict):
            detail = payload.get("error_description") or payload.get("error") or ""
        raise OAuth2Error(f"Token endpoint returned {response.status_code}{': ' + detail if detail else ''}")
    if not isinstance(payload, dict) or not payload.get("access_token"):
        raise OAuth2Error("Token endpoint response has no access_token")

    expires_in = payload.get("expires_in")
    try:
        expires_in = int(expires_in) if expires_in is not None else None
    except (TypeError, ValueError):
        expires_in = None
    logger.info("Fetched OAuth 2.0 token from %s (%s grant)", auth.token_url, auth.grant_type)
    return OAuth2Token(
        access_token=str(payload["access_token"]),
        token_type=str(payload.get("token_type") or "Bearer"),
        expires_in=expires_in,
        expires_at=time.time() + expires_in if expires_in is not None else None,
        refresh_token=payload.get("refresh_token") or None,
        scope=payload.get("scope"),
    )


def apply_token(auth: AuthConfig, token: OAuth2Token) -> AuthConfig:
    return auth.model_copy(
        update={
            "type": "oauth2",
            "access_token": token.access_token,
            "token_type": token.token_type,
            # Servers may omit a new refresh token; keep the old one
            "refresh_token": token.refresh_token or auth.refresh_token,
        }
    )
