from fitsync.schemas.activity import ActivityRead
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
    WebhookAck,
)
from fitsync.schemas.system import StatusResponse

__all__ = [
    "ActivityRead",
    "AuthorizeRequest",
    "AuthorizeResponse",
    "CredentialRead",
    "ExternalRecordRead",
    "ImportResponse",
    "OAuthCallbackRequest",
    "PaginatedRecords",
    "ProviderRead",
    "StatusResponse",
    "SyncAccepted",
    "SyncRunRead",
    "WebhookAck",
]
