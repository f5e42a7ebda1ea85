"""
Sync Errors

Exception hierarchy for the sync core. Every error carries the HTTP status it maps
to, so routes can let them propagate to the application exception handler.
"""

from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base class for sync core failures"""

    status_code = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_response(self) -> Dict[str, Any]:
        body = {"success": False, "error": self.message}
        body.update({k: v for k, v in self.context.items() if v is not None})
        return body


class IntegrationNotFound(SyncError):
    status_code = 404


class EntityNotFound(SyncError):
    status_code = 404


class ConfigurationError(SyncError):
    """Raised when a provider is used without its credentials configured"""

    status_code = 500


class ReauthorizationRequired(SyncError):
    """
    The provider rejected the stored refresh token (revoked, expired or missing).
    The user has to reconnect the integration; retrying will not help.
    """

    status_code = 403

    def __init__(self, message: str, provider: Optional[str] = None, integration_id: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
        self.integration_id = integration_id

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "reauthorizationRequired": True,
            "provider": self.provider,
            "integrationId": self.integration_id,
        }


class ProviderError(SyncError):
    """A provider API call failed. `status` is the provider's HTTP status, if any."""

    status_code = 500

    def __init__(self, provider: str, message: str, status: Optional[int] = None):
        super().__init__(f"{provider} request failed: {message}")
        self.provider = provider
        self.status = status

    @property
    def not_found(self) -> bool:
        return self.status in (404, 410)

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "provider": self.provider,
            "providerStatus": self.status,
        }
