import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from crm_sync.services.http_client import provider_error
from crm_sync.sync.architecture import TokenSet
from crm_sync.sync.errors import ConfigurationError, ProviderError, ReauthorizationRequired

# Set up logging
logger = logging.getLogger(__name__)

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

# Google may return scopes in a different order or with granted extras
os.environ.setdefault("OAUTHLIB_RELAX_TOKEN_SCOPE", "1")

# OAuth scopes per Google integration
CALENDAR_SCOPES = [
    'https://www.googleapis.com/auth/calendar.events',
    'https://www.googleapis.com/auth/calendar.readonly',
    'https://www.googleapis.com/auth/userinfo.email',
    'openid',
]

GMAIL_SCOPES = [
    'https://www.googleapis.com/auth/gmail.readonly',
    'https://www.googleapis.com/auth/gmail.send',
    'https://www.googleapis.com/auth/gmail.modify',
    'https://www.googleapis.com/auth/userinfo.email',
    'https://www.googleapis.com/auth/userinfo.profile',
    'openid',
]

GMB_SCOPES = [
    'https://www.googleapis.com/auth/business.manage',
    'https://www.googleapis.com/auth/userinfo.email',
    'https://www.googleapis.com/auth/userinfo.profile',
    'openid',
]


class GoogleOAuthClient:
    """
    OAuth client for one Google integration (Calendar, Gmail or Business Profile).
    Constructed with explicit credentials so each adapter owns its own client.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: List[str],
        provider: str = "google",
        default_token_lifetime: int = 3600
    ):
        if not all([client_id, client_secret]):
            raise ConfigurationError("Google OAuth credentials not configured", provider=provider)

        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = scopes
        self.provider = provider
        self.default_token_lifetime = default_token_lifetime

    def _flow(self) -> Flow:
        flow = Flow.from_client_config(
            {
                "web": {
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "auth_uri": GOOGLE_AUTH_URI,
                    "token_uri": GOOGLE_TOKEN_URI,
                    "redirect_uris": [self.redirect_uri]
                }
            },
            scopes=self.scopes,
            autogenerate_code_verifier=False
        )
        flow.redirect_uri = self.redirect_uri
        return flow

    def create_auth_url(self, state: Optional[str] = None) -> Dict[str, str]:
        """
        Create authentication URL for the Google OAuth flow.
        The state parameter carries the CRM user id back to the callback.
        """
        auth_url, _ = self._flow().authorization_url(
            access_type='offline',
            prompt='consent',
            state=state or ""
        )
        return {"auth_url": auth_url}

    def _expiry(self, credentials: Credentials) -> datetime:
        # google-auth reports expiry as naive UTC
        if credentials.expiry:
            return credentials.expiry.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) + timedelta(seconds=self.default_token_lifetime)

    async def exchange_code(self, code: str) -> TokenSet:
        """Exchange authorization code for tokens"""
        flow = self._flow()
        try:
            flow.fetch_token(code=code)
        except Exception as e:
            logger.error(f"Failed to exchange {self.provider} authorization code: {e}")
            raise ProviderError(self.provider, f"code exchange failed: {e}") from e

        credentials = flow.credentials
        return TokenSet(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expires_at=self._expiry(credentials),
            account=self.get_user_email(credentials.token)
        )

    async def refresh(self, refresh_token: str) -> TokenSet:
        """Use a refresh token to obtain a new access token"""
        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=self.scopes
        )
        try:
            credentials.refresh(Request())
        except RefreshError as e:
            if getattr(e, "retryable", False):
                logger.error(f"{self.provider} token endpoint failed: {e}")
                raise ProviderError(self.provider, f"token refresh failed: {e}") from e
            logger.warning(f"{self.provider} refresh token rejected: {e}")
            raise ReauthorizationRequired(
                f"{self.provider} access was revoked or expired, reconnect the integration",
                provider=self.provider
            ) from e
        except TransportError as e:
            logger.error(f"{self.provider} token endpoint unreachable: {e}")
            raise ProviderError(self.provider, f"token refresh failed: {e}") from e

        return TokenSet(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token or refresh_token,
            expires_at=self._expiry(credentials)
        )

    def get_credentials(self, access_token: str) -> Credentials:
        """Create Google OAuth credentials for an already-fresh access token"""
        return Credentials(
            token=access_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=self.scopes
        )

    def build_service(self, api: str, version: str, access_token: str):
        """Get a googleapiclient service bound to the access token"""
        return build(api, version, credentials=self.get_credentials(access_token), cache_discovery=False)

    def get_user_email(self, access_token: str) -> Optional[str]:
        """Look up the email address of the connected Google account"""
        try:
            service = self.build_service('oauth2', 'v2', access_token)
            return service.userinfo().get().execute().get('email')
        except HttpError as error:
            raise provider_error(self.provider, error) from error
