"""Provider webhook endpoints — unauthenticated, verified per provider."""

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from fitsync.api.deps import Integrations, get_integrations
from fitsync.integrations.errors import UnknownProvider, VerificationFailed
from fitsync.schemas.integration import WebhookAck

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{provider}", response_model=WebhookAck)
async def receive_webhook(
    provider: str,
    request: Request,
    integrations: Integrations = Depends(get_integrations),
) -> JSONResponse:
    """Accept a push event. Any resulting sync runs in the background."""
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}
    outcome = integrations.webhooks.handle(provider, body, headers)
    ack = WebhookAck(status=outcome.state.value, detail=outcome.detail)
    return JSONResponse(status_code=outcome.status_code, content=ack.model_dump())


@router.get("/{provider}")
async def webhook_handshake(
    provider: str,
    request: Request,
    integrations: Integrations = Depends(get_integrations),
) -> dict[str, str]:
    """Subscription verification challenge."""
    try:
        return integrations.webhooks.handshake(provider, dict(request.query_params))
    except UnknownProvider as e:
        raise HTTPException(status_code=400, detail=str(e)) from None
    except VerificationFailed as e:
        raise HTTPException(status_code=403, detail=str(e)) from None
