"""Shared httpx plumbing: the one place provider HTTP failures become taxonomy errors."""

import logging
from typing import Any

import httpx

from fitsync.integrations.errors import InvalidGrant, ProviderUnavailable, RateLimited

logger = logging.getLogger(__name__)


def bearer(access_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _is_grant_rejection(response: httpx.Response, refresh: bool) -> bool:
    """Whether a 400/401 from a token endpoint means the grant itself is dead.

    Client misconfiguration (``invalid_client``, ``invalid_request``) is not:
    it must never deactivate stored credentials.
    """
    body = _error_body(response)
    error = body.get("error")
    if error == "invalid_grant":
        return True
    # Strava: {"message": "Bad Request", "errors": [{"field": "refresh_token", "code": "invalid"}]}
    errors = body.get("errors")
    if isinstance(errors, list):
        for item in errors:
            if (
                isinstance(item, dict)
                and item.get("field") in ("code", "refresh_token")
                and item.get("code") == "invalid"
            ):
                return True
    return refresh and response.status_code == 401 and error is None


def raise_for_provider_status(
    response: httpx.Response, *, token_endpoint: bool = False, refresh: bool = False
) -> None:
    """Translate a non-2xx provider response into an IntegrationError."""
    status = response.status_code
    if status < 400:
        return

    url = str(response.request.url) if response.request is not None else ""
    if status == 429:
        raise RateLimited(f"Rate limited by {url}", retry_after=_retry_after(response))
    if token_endpoint and status in (400, 401):
        if _is_grant_rejection(response, refresh):
            raise InvalidGrant(f"Token endpoint rejected grant ({status})")
        error = _error_body(response).get("error") or "unknown error"
        raise ProviderUnavailable(f"Token endpoint refused request ({status}: {error})")
    if status >= 500:
        raise ProviderUnavailable(f"Provider error {status} from {url}")
    raise ProviderUnavailable(f"Unexpected status {status} from {url}")


async def request_json(
    method: str,
    url: str,
    *,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None = None,
    token_endpoint: bool = False,
    refresh: bool = False,
    **kwargs: Any,
) -> Any:
    """Issue one provider request and return the decoded JSON body.

    Raises:
        ProviderUnavailable: Transport failure, timeout, 5xx or unparsable body.
        RateLimited: HTTP 429.
        InvalidGrant: The token endpoint rejected the code or refresh token.
    """
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.request(method, url, **kwargs)
    except httpx.HTTPError as e:
        raise ProviderUnavailable(f"{method} {url} failed: {e}") from e

    raise_for_provider_status(response, token_endpoint=token_endpoint, refresh=refresh)

    if not response.content:
        return None
    try:
        return response.json()
    except ValueError as e:
        raise ProviderUnavailable(f"Invalid JSON from {url}") from e
