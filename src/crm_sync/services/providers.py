import logging
from typing import Any, Dict, Optional

from crm_sync.auth.google_auth import CALENDAR_SCOPES, GMAIL_SCOPES, GMB_SCOPES, GoogleOAuthClient
from crm_sync.auth.microsoft_auth import MicrosoftGraphAuth
from crm_sync.services.business_profile import BusinessProfileService
from crm_sync.services.gmail import GmailService
from crm_sync.services.google_calendar import GoogleCalendarService
from crm_sync.services.outlook_mail import OutlookMailService
from crm_sync.sync.architecture import Provider
from crm_sync.sync.errors import ConfigurationError

# Set up logging
logger = logging.getLogger(__name__)


class ProviderRegistry:
    """
    Provider adapters keyed by provider. Adapters are built from explicit
    credentials, so tests and callers can substitute their own.
    """

    def __init__(self, adapters: Optional[Dict[Provider, Any]] = None):
        self.adapters: Dict[Provider, Any] = dict(adapters or {})

    @classmethod
    def from_settings(cls, settings) -> "ProviderRegistry":
        """Build every adapter whose OAuth credentials are configured"""
        adapters: Dict[Provider, Any] = {}
        lifetime = settings.DEFAULT_TOKEN_LIFETIME_SECONDS

        if settings.GOOGLE_CLIENT_ID and settings.GOOGLE_CLIENT_SECRET:
            def google_client(redirect_uri, scopes, provider):
                return GoogleOAuthClient(
                    settings.GOOGLE_CLIENT_ID,
                    settings.GOOGLE_CLIENT_SECRET,
                    redirect_uri,
                    scopes,
                    provider=provider.value,
                    default_token_lifetime=lifetime
                )

            adapters[Provider.CALENDAR] = GoogleCalendarService(
                google_client(settings.GOOGLE_REDIRECT_URI, CALENDAR_SCOPES, Provider.CALENDAR)
            )
            adapters[Provider.GMAIL] = GmailService(
                google_client(settings.GMAIL_REDIRECT_URI, GMAIL_SCOPES, Provider.GMAIL)
            )
            adapters[Provider.GMB] = BusinessProfileService(
                google_client(settings.GMB_REDIRECT_URI, GMB_SCOPES, Provider.GMB)
            )
        else:
            logger.warning("Google OAuth credentials not configured, Calendar, Gmail and Business Profile disabled")

        if settings.MS_CLIENT_ID and settings.MS_CLIENT_SECRET:
            adapters[Provider.OUTLOOK] = OutlookMailService(
                MicrosoftGraphAuth(
                    settings.MS_CLIENT_ID,
                    settings.MS_CLIENT_SECRET,
                    settings.MS_REDIRECT_URI,
                    tenant_id=settings.MS_TENANT_ID,
                    default_token_lifetime=lifetime
                )
            )
        else:
            logger.warning("Microsoft Graph credentials not configured, Outlook disabled")

        return cls(adapters)

    def get(self, provider: Provider) -> Any:
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise ConfigurationError(
                f"{provider.value} integration is not configured",
                provider=provider.value
            )
        return adapter

    def create_auth_url(self, provider: Provider, state: str) -> Dict[str, str]:
        return self.get(provider).auth.create_auth_url(state)
