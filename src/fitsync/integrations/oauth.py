"""Token lifecycle: consent URLs, code exchange, refresh and revoke.

One provider's OAuth endpoints per call, looked up in the capability table.
"""

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import httpx
import jwt

from fitsync.config import Settings, get_settings
from fitsync.integrations.base import TokenSet
from fitsync.integrations.errors import (
    CredentialRevoked,
    IntegrationError,
    InvalidGrant,
    InvalidState,
    ProviderUnavailable,
)
from fitsync.integrations.http import request_json
from fitsync.integrations.registry import OAuthEndpoints, ProviderRegistry
from fitsync.models.credential import IntegrationCredential

logger = logging.getLogger(__name__)

STATE_ALGORITHM = "HS256"


def _parse_expiry(data: dict[str, Any], now: datetime) -> datetime | None:
    if data.get("expires_at") is not None:
        try:
            return datetime.fromtimestamp(int(data["expires_at"]), tz=timezone.utc).replace(tzinfo=None)
        except (TypeError, ValueError):
            return None
    if data.get("expires_in") is not None:
        try:
            return now + timedelta(seconds=int(data["expires_in"]))
        except (TypeError, ValueError):
            return None
    return None


def _parse_scopes(raw: Any) -> list[str]:
    if isinstance(raw, list):
        return [str(s) for s in raw]
    if isinstance(raw, str):
        return [s for s in raw.replace(",", " ").split() if s]
    return []


def _external_user_id(data: dict[str, Any]) -> str | None:
    athlete = data.get("athlete")
    if isinstance(athlete, dict) and athlete.get("id") is not None:
        return str(athlete["id"])
    if data.get("user_id") is not None:
        return str(data["user_id"])
    return None


class TokenLifecycleManager:
    """Builds consent URLs and keeps credential tokens fresh."""

    def __init__(
        self,
        registry: ProviderRegistry,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        settings = settings or get_settings()
        self._registry = registry
        self._transport = transport
        self._clock = clock
        self._state_secret = settings.oauth_state_secret
        self._state_ttl = timedelta(minutes=settings.oauth_state_ttl_minutes)
        self._refresh_skew = timedelta(minutes=settings.token_refresh_skew_minutes)
        self._timeout = settings.provider_timeout_seconds

    # ── State ────────────────────────────────────────────────────────

    def _encode_state(self, provider: str, user_id: int) -> str:
        issued = datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "provider": provider,
            "nonce": secrets.token_urlsafe(16),
            "iat": issued,
            "exp": issued + self._state_ttl,
        }
        return jwt.encode(payload, self._state_secret, algorithm=STATE_ALGORITHM)

    def verify_state(self, provider: str, state: str) -> int:
        """Validate a state parameter and return the user id it binds."""
        try:
            payload = jwt.decode(state, self._state_secret, algorithms=[STATE_ALGORITHM])
        except jwt.PyJWTError as e:
            raise InvalidState(f"Invalid OAuth state: {e}") from e
        if payload.get("provider") != provider:
            raise InvalidState("OAuth state was issued for another provider")
        try:
            return int(payload["sub"])
        except (KeyError, TypeError, ValueError):
            raise InvalidState("OAuth state has no user") from None

    # ── Authorization ────────────────────────────────────────────────

    def build_authorization_url(self, provider: str, user_id: int, redirect_url: str) -> str:
        oauth = self._registry.get(provider).oauth
        params = {
            "client_id": oauth.client_id,
            "response_type": "code",
            "redirect_uri": redirect_url,
            "scope": oauth.scope_separator.join(oauth.scopes),
            "state": self._encode_state(provider, user_id),
            **oauth.extra_authorize_params,
        }
        logger.info("Issued %s authorization URL for user %s", provider, user_id)
        return f"{oauth.authorize_url}?{urlencode(params)}"

    async def _token_request(
        self, oauth: OAuthEndpoints, data: dict[str, str], refresh: bool = False
    ) -> dict[str, Any]:
        body = await request_json(
            "POST",
            oauth.token_url,
            data={"client_id": oauth.client_id, "client_secret": oauth.client_secret, **data},
            headers={"Accept": "application/json"},
            timeout=self._timeout,
            transport=self._transport,
            token_endpoint=True,
            refresh=refresh,
        )
        if not isinstance(body, dict) or not body.get("access_token"):
            raise ProviderUnavailable("Token endpoint returned no access_token")
        return body

    def _token_set(self, data: dict[str, Any], fallback_refresh: str | None = None) -> TokenSet:
        return TokenSet(
            access_token=str(data["access_token"]),
            refresh_token=data.get("refresh_token") or fallback_refresh,
            expires_at=_parse_expiry(data, self._clock()),
            scopes=_parse_scopes(data.get("scope")),
            external_user_id=_external_user_id(data),
        )

    async def exchange_code(
        self, provider: str, code: str, state: str, redirect_url: str | None = None
    ) -> TokenSet:
        """Exchange a single-use authorization code for tokens.

        Raises:
            InvalidState: State is forged, expired or for another provider.
            InvalidGrant: Provider rejected the code. Not retryable.
            ProviderUnavailable: Transport error or 5xx. Retryable by the caller.
        """
        user_id = self.verify_state(provider, state)
        oauth = self._registry.get(provider).oauth

        data = {"code": code, "grant_type": "authorization_code"}
        if redirect_url:
            data["redirect_uri"] = redirect_url

        try:
            body = await self._token_request(oauth, data)
        except InvalidGrant:
            logger.warning("%s rejected authorization code for user %s", provider, user_id)
            raise

        tokens = self._token_set(body)
        tokens.user_id = user_id
        logger.info("Exchanged %s authorization code for user %s", provider, user_id)
        return tokens

    # ── Refresh / revoke ─────────────────────────────────────────────

    def needs_refresh(self, credential: IntegrationCredential) -> bool:
        if credential.token_expires_at is None or not credential.refresh_token:
            return False
        return credential.token_expires_at - self._refresh_skew <= self._clock()

    async def refresh_if_needed(self, credential: IntegrationCredential) -> IntegrationCredential:
        """Refresh the access token when it expires within the skew window.

        Mutates the credential in place; the caller commits.

        Raises:
            CredentialRevoked: The refresh token was rejected. The credential
                is marked inactive before raising.
            ProviderUnavailable: Transient failure; tokens left untouched.
        """
        if not self.needs_refresh(credential):
            return credential

        oauth = self._registry.get(credential.provider).oauth
        try:
            body = await self._token_request(
                oauth,
                {"grant_type": "refresh_token", "refresh_token": credential.refresh_token or ""},
                refresh=True,
            )
        except InvalidGrant as e:
            credential.is_active = False
            logger.warning(
                "Refresh token rejected for credential %s (%s); deactivated",
                credential.id,
                credential.provider,
            )
            raise CredentialRevoked(
                f"{credential.provider} connection revoked; reconnect required"
            ) from e

        tokens = self._token_set(body, fallback_refresh=credential.refresh_token)
        credential.access_token = tokens.access_token
        credential.refresh_token = tokens.refresh_token
        credential.token_expires_at = tokens.expires_at
        if tokens.scopes:
            credential.scopes = ",".join(tokens.scopes)
        logger.info("Refreshed %s token for credential %s", credential.provider, credential.id)
        return credential

    async def revoke(self, credential: IntegrationCredential) -> bool:
        """Deactivate locally and revoke remotely on a best-effort basis.

        Returns:
            True if the provider confirmed the revoke, False otherwise.
        """
        credential.is_active = False

        oauth = self._registry.get(credential.provider).oauth
        if not oauth.revoke_url:
            logger.info("Deactivated credential %s (%s has no revoke endpoint)", credential.id, credential.provider)
            return False

        try:
            await request_json(
                "POST",
                oauth.revoke_url,
                data={"access_token": credential.access_token},
                timeout=self._timeout,
                transport=self._transport,
            )
        except IntegrationError as e:
            logger.warning("Remote revoke failed for credential %s: %s", credential.id, e)
            return False

        logger.info("Revoked credential %s with %s", credential.id, credential.provider)
        return True
