"""Integration endpoints — provider catalog, OAuth connect, revoke, sync and records."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from fitsync.api.deps import DEFAULT_USER_ID, Integrations, get_integrations
from fitsync.database import get_db
from fitsync.integrations.errors import (
    CredentialRevoked,
    IntegrationError,
    InvalidGrant,
    InvalidState,
    ProviderUnavailable,
    RateLimited,
    UnknownProvider,
)
from fitsync.models.credential import IntegrationCredential
from fitsync.models.sync_run import SyncRun, SyncTrigger
from fitsync.schemas.integration import (
    AuthorizeRequest,
    AuthorizeResponse,
    CredentialRead,
    ExternalRecordRead,
    ImportResponse,
    OAuthCallbackRequest,
    PaginatedRecords,
    ProviderRead,
    SyncAccepted,
    SyncRunRead,
)

router = APIRouter(prefix="/api/integrations", tags=["integrations"])
logger = logging.getLogger(__name__)


def _http_error(e: IntegrationError) -> HTTPException:
    if isinstance(e, UnknownProvider):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidState):
        return HTTPException(status_code=401, detail=str(e))
    if isinstance(e, InvalidGrant):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, CredentialRevoked):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, RateLimited) and e.retry_after:
        return HTTPException(
            status_code=503, detail=str(e), headers={"Retry-After": str(int(e.retry_after))}
        )
    if isinstance(e, ProviderUnavailable):
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=502, detail=str(e))


async def _get_credential_or_404(
    session: AsyncSession, integrations: Integrations, credential_id: int
) -> IntegrationCredential:
    credential = await integrations.service.get_credential(session, credential_id, DEFAULT_USER_ID)
    if credential is None:
        raise HTTPException(status_code=404, detail="Integration not found")
    return credential


@router.get("/providers", response_model=list[ProviderRead])
async def list_providers(
    integrations: Integrations = Depends(get_integrations),
) -> list[ProviderRead]:
    """List the providers that can be connected."""
    providers = []
    for name in integrations.registry.providers:
        capabilities = integrations.registry.get(name)
        providers.append(
            ProviderRead(
                provider=name,
                display_name=capabilities.display_name,
                scopes=capabilities.oauth.scopes,
                supports_revoke=capabilities.oauth.revoke_url is not None,
            )
        )
    return providers


@router.get("", response_model=list[CredentialRead])
async def list_integrations(
    session: AsyncSession = Depends(get_db),
    integrations: Integrations = Depends(get_integrations),
) -> list[IntegrationCredential]:
    """List the current user's connections, active and revoked."""
    return await integrations.service.list_credentials(session, DEFAULT_USER_ID)


@router.get("/{credential_id}", response_model=CredentialRead)
async def get_integration(
    credential_id: int,
    session: AsyncSession = Depends(get_db),
    integrations: Integrations = Depends(get_integrations),
) -> IntegrationCredential:
    return await _get_credential_or_404(session, integrations, credential_id)


@router.post("/{provider}/authorize", response_model=AuthorizeResponse)
async def authorize(
    provider: str,
    body: AuthorizeRequest,
    integrations: Integrations = Depends(get_integrations),
) -> AuthorizeResponse:
    """Build the provider consent URL for the current user."""
    try:
        url = integrations.tokens.build_authorization_url(provider, DEFAULT_USER_ID, body.redirect_url)
    except IntegrationError as e:
        raise _http_error(e) from None
    return AuthorizeResponse(provider=provider, authorization_url=url)


@router.post("/{provider}/oauth/callback", response_model=CredentialRead, status_code=201)
async def oauth_callback(
    provider: str,
    body: OAuthCallbackRequest,
    session: AsyncSession = Depends(get_db),
    integrations: Integrations = Depends(get_integrations),
) -> IntegrationCredential:
    """Exchange the authorization code and store the connection.

    The user is taken from the signed state, never from the request.
    """
    try:
        credential = await integrations.service.connect(
            session, provider, body.code, body.state, body.redirect_url
        )
    except IntegrationError as e:
        logger.warning("OAuth callback for %s failed: %s", provider, e)
        raise _http_error(e) from None
    return credential


@router.delete("/{credential_id}", response_model=CredentialRead)
async def revoke_integration(
    credential_id: int,
    session: AsyncSession = Depends(get_db),
    integrations: Integrations = Depends(get_integrations),
) -> IntegrationCredential:
    """Disconnect a provider. Imported history is kept."""
    credential = await integrations.service.revoke_credential(
        session, credential_id, DEFAULT_USER_ID
    )
    if credential is None:
        raise HTTPException(status_code=404, detail="Integration not found")
    return credential


@router.post("/{credential_id}/sync", response_model=SyncAccepted, status_code=202)
async def trigger_sync(
    credential_id: int,
    session: AsyncSession = Depends(get_db),
    integrations: Integrations = Depends(get_integrations),
) -> SyncAccepted:
    """Queue a sync pass and return immediately."""
    credential = await _get_credential_or_404(session, integrations, credential_id)
    if not credential.is_active:
        raise HTTPException(status_code=409, detail="Integration revoked; reconnect required")
    integrations.scheduler.trigger(credential.id, SyncTrigger.MANUAL)
    return SyncAccepted(credential_id=credential.id)


@router.get("/{credential_id}/sync/history", response_model=list[SyncRunRead])
async def sync_history(
    credential_id: int,
    limit: int = Query(default=20, ge=1, le=100),
    session: AsyncSession = Depends(get_db),
    integrations: Integrations = Depends(get_integrations),
) -> list[SyncRun]:
    """Most recent sync runs first."""
    await _get_credential_or_404(session, integrations, credential_id)
    return await integrations.service.sync_history(session, credential_id, limit=limit)


@router.get("/{credential_id}/records", response_model=PaginatedRecords)
async def list_records(
    credential_id: int,
    imported: bool | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    session: AsyncSession = Depends(get_db),
    integrations: Integrations = Depends(get_integrations),
) -> PaginatedRecords:
    await _get_credential_or_404(session, integrations, credential_id)
    records, total = await integrations.service.list_records(
        session, credential_id, imported=imported, offset=offset, limit=limit
    )
    return PaginatedRecords(
        items=[ExternalRecordRead.model_validate(r) for r in records],
        total=total,
        offset=offset,
        limit=limit,
    )


@router.post("/records/{record_id}/import", response_model=ImportResponse)
async def import_record(
    record_id: int,
    session: AsyncSession = Depends(get_db),
    integrations: Integrations = Depends(get_integrations),
) -> ImportResponse:
    """Import a synced record as a workout session. Repeating it is a no-op."""
    try:
        outcome = await integrations.service.import_external_record(session, record_id, DEFAULT_USER_ID)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None
    if outcome is None:
        raise HTTPException(status_code=404, detail="Record not found")
    return ImportResponse(record_id=record_id, created=outcome.created, session_id=outcome.session_id)
