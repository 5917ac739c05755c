"""Provider capability table.

Maps a provider identifier to the bundle the core needs (OAuth endpoints,
adapter, webhook handler). Built once at startup; the orchestrator, scheduler
and webhook ingestor only ever look providers up here.
"""

from dataclasses import dataclass, field

import httpx

from fitsync.config import Settings, get_settings
from fitsync.integrations.base import ProviderAdapter, WebhookHandler
from fitsync.integrations.errors import UnknownProvider
from fitsync.integrations.myfitnesspal import MyFitnessPalAdapter, MyFitnessPalWebhook
from fitsync.integrations.strava import StravaAdapter, StravaWebhook


@dataclass
class OAuthEndpoints:
    authorize_url: str
    token_url: str
    client_id: str
    client_secret: str
    scopes: list[str] = field(default_factory=list)
    revoke_url: str | None = None
    scope_separator: str = " "
    extra_authorize_params: dict[str, str] = field(default_factory=dict)


@dataclass
class ProviderCapabilities:
    provider: str
    display_name: str
    oauth: OAuthEndpoints
    adapter: ProviderAdapter
    webhook: WebhookHandler


class ProviderRegistry:
    def __init__(self, capabilities: list[ProviderCapabilities] | None = None) -> None:
        self._providers: dict[str, ProviderCapabilities] = {}
        for cap in capabilities or []:
            self.register(cap)

    def register(self, capabilities: ProviderCapabilities) -> None:
        self._providers[capabilities.provider] = capabilities

    def get(self, provider: str) -> ProviderCapabilities:
        try:
            return self._providers[provider]
        except KeyError:
            raise UnknownProvider(provider) from None

    def __contains__(self, provider: object) -> bool:
        return provider in self._providers

    @property
    def providers(self) -> list[str]:
        return sorted(self._providers)


def _split_scopes(raw: str) -> list[str]:
    return [s.strip() for s in raw.split(",") if s.strip()]


def build_registry(
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderRegistry:
    """Build the registry for every supported provider from settings."""
    settings = settings or get_settings()
    timeout = settings.provider_timeout_seconds

    strava = ProviderCapabilities(
        provider="strava",
        display_name="Strava",
        oauth=OAuthEndpoints(
            authorize_url="https://www.strava.com/oauth/authorize",
            token_url="https://www.strava.com/oauth/token",
            revoke_url="https://www.strava.com/oauth/deauthorize",
            client_id=settings.strava_client_id,
            client_secret=settings.strava_client_secret,
            scopes=_split_scopes(settings.strava_scopes),
            scope_separator=",",
            extra_authorize_params={"approval_prompt": "auto"},
        ),
        adapter=StravaAdapter(timeout=timeout, transport=transport),
        webhook=StravaWebhook(
            secret=settings.strava_webhook_secret,
            verify_token=settings.strava_webhook_verify_token,
        ),
    )

    myfitnesspal = ProviderCapabilities(
        provider="myfitnesspal",
        display_name="MyFitnessPal",
        oauth=OAuthEndpoints(
            authorize_url="https://www.myfitnesspal.com/oauth2/authorize",
            token_url="https://www.myfitnesspal.com/oauth2/token",
            client_id=settings.myfitnesspal_client_id,
            client_secret=settings.myfitnesspal_client_secret,
            scopes=_split_scopes(settings.myfitnesspal_scopes),
        ),
        adapter=MyFitnessPalAdapter(
            timeout=timeout,
            transport=transport,
            initial_history_days=settings.sync_initial_history_days,
        ),
        webhook=MyFitnessPalWebhook(token=settings.myfitnesspal_webhook_token),
    )

    return ProviderRegistry([strava, myfitnesspal])
