from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# Daily nutrition records are data, never workout sessions
NUTRITION_TYPE = "nutrition"


@dataclass
class TokenSet:
    """Tokens returned by a provider's token endpoint."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scopes: list[str] = field(default_factory=list)
    user_id: int | None = None
    external_user_id: str | None = None


@dataclass
class ProviderProfile:
    """Display information about the connected provider account."""

    external_user_id: str
    display_name: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class CanonicalActivity:
    """Provider-agnostic activity shape.

    Units are already normalized: meters, minutes, kilograms.
    """

    external_id: str
    name: str
    activity_type: str
    start_time: datetime
    end_time: datetime | None = None
    duration_minutes: float | None = None
    distance_meters: float | None = None
    calories: float | None = None
    weight_kg: float | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class ActivityPage:
    """One page of a cursor-driven pull."""

    records: list[CanonicalActivity]
    next_cursor: str | None
    has_more: bool
    malformed: int = 0


@dataclass
class WebhookEvent:
    """Canonical inbound webhook event."""

    provider: str
    external_user_id: str
    event_type: str
    external_object_id: str | None = None
    event_time: datetime | None = None

    @property
    def is_deauthorization(self) -> bool:
        return self.event_type == "deauthorize"

    @property
    def is_deletion(self) -> bool:
        return self.event_type.endswith(("delete", "deleted"))


class ProviderAdapter(ABC):
    """Translates one provider's REST API into canonical records.

    Adapters are stateless: every call is a pure function of the access token
    and request parameters, so the same cursor can be fetched repeatedly.
    """

    @property
    @abstractmethod
    def provider(self) -> str:
        """Identifier for this provider (e.g. 'strava', 'myfitnesspal')."""
        ...

    @abstractmethod
    async def fetch_user_profile(self, access_token: str) -> ProviderProfile:
        """Fetch the connected account's profile. Used at connect time only."""
        ...

    @abstractmethod
    async def fetch_activities_since(
        self, access_token: str, cursor: str | None, page_size: int
    ) -> ActivityPage:
        """Fetch the page of records that follows ``cursor``.

        Args:
            access_token: Bearer token for the provider API.
            cursor: Opaque provider cursor. None requests full history.
            page_size: Maximum number of items the provider should return.

        Returns:
            ActivityPage with parsed records, the cursor to resume from and
            whether more pages are available. Items that fail to parse are
            counted in ``malformed`` and left out of ``records``.
        """
        ...

    async def fetch_changed_records(self, access_token: str, object_id: str) -> list[CanonicalActivity]:
        """Re-fetch the records behind one provider object reported as changed.

        The default returns nothing: the provider only syncs through its cursor.
        """
        return []


class WebhookHandler(ABC):
    """Provider-specific webhook verification and parsing."""

    @abstractmethod
    def verify(self, body: bytes, headers: dict[str, str]) -> None:
        """Raise VerificationFailed unless the request is authentic. CPU only."""
        ...

    @abstractmethod
    def parse(self, body: bytes) -> WebhookEvent | None:
        """Parse a verified body. Returns None for events that need no sync.

        Raises:
            MalformedRecord: The body is not a well-formed event.
        """
        ...

    @abstractmethod
    def handshake(self, params: dict[str, str]) -> dict[str, str]:
        """Answer a subscription challenge. Raises VerificationFailed on mismatch."""
        ...
