from datetime import datetime

from pydantic import BaseModel, Field, computed_field


class ProviderRead(BaseModel):
    provider: str
    display_name: str
    scopes: list[str]
    supports_revoke: bool


class CredentialRead(BaseModel):
    id: int
    user_id: int
    provider: str
    external_user_id: str
    scopes: str | None = None
    is_active: bool
    connected_at: datetime
    token_expires_at: datetime | None = None
    last_sync_at: datetime | None = None
    sync_cursor: str | None = None
    consecutive_failures: int = 0
    next_sync_after: datetime | None = None

    model_config = {"from_attributes": True}

    @computed_field
    @property
    def status(self) -> str:
        return "connected" if self.is_active else "reconnect_required"


class AuthorizeRequest(BaseModel):
    redirect_url: str = Field(min_length=1, max_length=500)


class AuthorizeResponse(BaseModel):
    provider: str
    authorization_url: str


class OAuthCallbackRequest(BaseModel):
    code: str = Field(min_length=1)
    state: str = Field(min_length=1)
    redirect_url: str | None = None


class SyncRunRead(BaseModel):
    id: int
    credential_id: int
    status: str
    trigger: str
    started_at: datetime
    completed_at: datetime | None = None
    records_processed: int
    records_imported: int
    records_skipped: int
    sessions_created: int
    pages_fetched: int
    error_message: str | None = None
    cursor_after: str | None = None

    model_config = {"from_attributes": True}


class SyncAccepted(BaseModel):
    credential_id: int
    status: str = "accepted"


class ExternalRecordRead(BaseModel):
    id: int
    credential_id: int
    external_id: str
    name: str
    activity_type: str
    start_time: datetime
    end_time: datetime | None = None
    duration_minutes: float | None = None
    distance_meters: float | None = None
    calories: float | None = None
    weight_kg: float | None = None
    is_imported: bool
    imported_session_id: int | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PaginatedRecords(BaseModel):
    items: list[ExternalRecordRead]
    total: int
    offset: int
    limit: int


class ImportResponse(BaseModel):
    record_id: int
    created: bool
    session_id: int | None = None


class WebhookAck(BaseModel):
    status: str
    detail: str = ""
