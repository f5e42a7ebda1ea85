from unittest.mock import patch

import pytest
from google.auth.exceptions import RefreshError, TransportError

from crm_sync.auth.google_auth import CALENDAR_SCOPES, GoogleOAuthClient
from crm_sync.sync.errors import ProviderError, ReauthorizationRequired


@pytest.fixture
def oauth_client():
    return GoogleOAuthClient(
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="https://crm.example.com/api/auth/google/callback",
        scopes=CALENDAR_SCOPES,
        provider="calendar"
    )


@pytest.mark.asyncio
async def test_revoked_refresh_token_requires_reauthorization(oauth_client):
    with patch("crm_sync.auth.google_auth.Credentials.refresh", side_effect=RefreshError("invalid_grant: Token has been revoked")):
        with pytest.raises(ReauthorizationRequired) as exc_info:
            await oauth_client.refresh("R1")

    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_token_endpoint_outage_is_a_provider_error(oauth_client):
    error = RefreshError("internal_failure: server error", retryable=True)
    with patch("crm_sync.auth.google_auth.Credentials.refresh", side_effect=error):
        with pytest.raises(ProviderError) as exc_info:
            await oauth_client.refresh("R1")

    assert not isinstance(exc_info.value, ReauthorizationRequired)
    assert exc_info.value.provider == "calendar"


@pytest.mark.asyncio
async def test_network_failure_during_refresh_is_a_provider_error(oauth_client):
    with patch("crm_sync.auth.google_auth.Credentials.refresh", side_effect=TransportError("connection reset")):
        with pytest.raises(ProviderError):
            await oauth_client.refresh("R1")
