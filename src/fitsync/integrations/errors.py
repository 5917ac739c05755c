"""Error taxonomy for provider integrations.

Every provider failure is translated into one of these before it reaches the
orchestrator, scheduler or API layer.
"""


class IntegrationError(Exception):
    """Base integration error."""

    retryable: bool = False


class UnknownProvider(IntegrationError):
    """No capability entry for the requested provider identifier."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"Unknown provider: {provider}")


class InvalidState(IntegrationError):
    """OAuth state parameter is missing, forged, expired or for another provider."""


class InvalidGrant(IntegrationError):
    """Authorization code or refresh token rejected by the provider."""


class ProviderUnavailable(IntegrationError):
    """Transport error or 5xx from the provider."""

    retryable = True


class RateLimited(ProviderUnavailable):
    """Provider-signaled throttling."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class MalformedRecord(IntegrationError):
    """A single page item could not be parsed."""


class VerificationFailed(IntegrationError):
    """Webhook signature or shared token mismatch."""


class CredentialRevoked(IntegrationError):
    """Refresh permanently failed; the user has to reconnect."""
