import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import msal

from crm_sync.sync.architecture import TokenSet
from crm_sync.sync.errors import ConfigurationError, ProviderError, ReauthorizationRequired

# Set up logging
logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

# OAuth scopes for Outlook mail. msal adds offline_access, openid and profile itself.
MAIL_SCOPES = [
    'Mail.ReadWrite',
    'Mail.Send',
    'User.Read'
]

# Token endpoint errors that mean the refresh token can no longer be used
REAUTH_ERRORS = {"invalid_grant", "interaction_required", "consent_required"}


class MicrosoftGraphAuth:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        tenant_id: Optional[str] = None,
        default_token_lifetime: int = 3600
    ):
        """Initialize Microsoft Graph authentication"""
        if not all([client_id, client_secret]):
            raise ConfigurationError("Microsoft Graph API credentials not configured", provider="outlook")

        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.tenant_id = tenant_id or "common"
        self.default_token_lifetime = default_token_lifetime

    def _app(self) -> msal.ConfidentialClientApplication:
        return msal.ConfidentialClientApplication(
            self.client_id,
            authority=f"https://login.microsoftonline.com/{self.tenant_id}",
            client_credential=self.client_secret
        )

    def create_auth_url(self, state: Optional[str] = None) -> Dict[str, str]:
        """Create authentication URL for the Microsoft OAuth flow"""
        auth_url = self._app().get_authorization_request_url(
            scopes=MAIL_SCOPES,
            redirect_uri=self.redirect_uri,
            state=state,
            prompt="consent"
        )
        return {"auth_url": auth_url}

    def _token_set(self, result: Dict[str, Any], refresh_token: Optional[str] = None) -> TokenSet:
        expires_in = int(result.get("expires_in") or self.default_token_lifetime)
        claims = result.get("id_token_claims") or {}
        return TokenSet(
            access_token=result["access_token"],
            refresh_token=result.get("refresh_token") or refresh_token,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            token_type=result.get("token_type", "Bearer"),
            account=claims.get("preferred_username") or claims.get("email")
        )

    async def exchange_code(self, code: str) -> TokenSet:
        """Exchange authorization code for tokens"""
        result = self._app().acquire_token_by_authorization_code(
            code=code,
            scopes=MAIL_SCOPES,
            redirect_uri=self.redirect_uri
        )

        if "error" in result:
            logger.error(f"Microsoft code exchange failed: {result.get('error_description')}")
            raise ProviderError("outlook", result.get("error_description") or result["error"])

        return self._token_set(result)

    async def refresh(self, refresh_token: str) -> TokenSet:
        """Use a refresh token to obtain a new access token"""
        result = self._app().acquire_token_by_refresh_token(
            refresh_token,
            scopes=MAIL_SCOPES
        )

        if "error" in result:
            if result["error"] in REAUTH_ERRORS:
                logger.warning(f"Microsoft refresh token rejected: {result.get('error_description')}")
                raise ReauthorizationRequired(
                    "Outlook access was revoked or expired, reconnect the integration",
                    provider="outlook"
                )
            raise ProviderError("outlook", result.get("error_description") or result["error"])

        return self._token_set(result, refresh_token)
