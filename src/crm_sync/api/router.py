"""
OAuth API Router

Connect and disconnect flows for Google Calendar, Gmail, Outlook and Google
Business Profile. The OAuth state parameter is a short-lived signed token naming
the CRM user, so the callback can be matched to the user who started the flow.
"""

import logging
from datetime import timedelta
from enum import Enum
from typing import Optional
from urllib.parse import urlencode, urlparse

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import RedirectResponse

from crm_sync.auth.session import (
    create_session_token, decode_session_token, get_current_user, get_optional_user
)
from crm_sync.services.providers import ProviderRegistry
from crm_sync.api.dependencies import get_integration_manager, get_registry
from crm_sync.sync.architecture import Provider
from crm_sync.sync.errors import SyncError
from crm_sync.sync.token_manager import IntegrationManager
from crm_sync.utils.config import settings

# Set up logging
logger = logging.getLogger(__name__)

# Initialize API router
router = APIRouter(tags=["auth"])

STATE_LIFETIME = timedelta(minutes=15)


class IntegrationProvider(str, Enum):
    """Providers connected through /integrations/{provider}/..."""
    GMAIL = "gmail"
    OUTLOOK = "outlook"
    GMB = "gmb"


SUCCESS_FLAGS = {
    Provider.CALENDAR: "google_connected",
    Provider.GMAIL: "gmail_connected",
    Provider.OUTLOOK: "outlook_connected",
    Provider.GMB: "gmb_connected",
}


def settings_redirect(**flags: str) -> RedirectResponse:
    url = settings.settings_url
    separator = "&" if urlparse(url).query else "?"
    return RedirectResponse(f"{url}{separator}{urlencode(flags)}", status_code=302)


def create_auth_url(registry: ProviderRegistry, provider: Provider, user_id: str):
    state = create_session_token(user_id, expires_delta=STATE_LIFETIME)
    return registry.create_auth_url(provider, state)


async def complete_oauth(
    manager: IntegrationManager,
    provider: Provider,
    code: Optional[str],
    state: Optional[str],
    error: Optional[str],
    session_user: Optional[str]
) -> RedirectResponse:
    """Exchange the callback code and redirect back to the CRM settings page"""
    if error:
        logger.warning(f"{provider.value} OAuth error: {error}")
        return settings_redirect(error=error)

    if not code or not state:
        return settings_redirect(error="invalid_callback")

    user_id = decode_session_token(state)
    if not user_id or (session_user and session_user != user_id):
        return settings_redirect(error="unauthorized")

    try:
        integration = await manager.connect(user_id, provider, code)
    except SyncError as e:
        logger.error(f"Error in {provider.value} OAuth callback: {e}")
        return settings_redirect(error="callback_failed")

    logger.info(f"Connected {provider.value} integration {integration.id} for user {user_id}")
    return settings_redirect(success=SUCCESS_FLAGS[provider])


# Google Calendar
@router.get("/auth/google/initiate")
async def google_auth_initiate(
    user_id: str = Depends(get_current_user),
    registry: ProviderRegistry = Depends(get_registry)
):
    """Get Google OAuth URL for connecting a calendar"""
    return create_auth_url(registry, Provider.CALENDAR, user_id)


@router.get("/auth/google/callback")
async def google_auth_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    session_user: Optional[str] = Depends(get_optional_user),
    manager: IntegrationManager = Depends(get_integration_manager)
):
    """Handle Google OAuth callback and store the calendar integration"""
    return await complete_oauth(manager, Provider.CALENDAR, code, state, error, session_user)


@router.post("/auth/google/disconnect")
async def google_disconnect(
    user_id: str = Depends(get_current_user),
    manager: IntegrationManager = Depends(get_integration_manager)
):
    """Disconnect every Google Calendar integration of the user"""
    for integration in await manager.storage.list_integrations(user_id, Provider.CALENDAR):
        await manager.disconnect(integration)
    return {"success": True}


# Gmail, Outlook and Business Profile
@router.get("/integrations/{provider}/auth")
async def integration_auth(
    provider: IntegrationProvider,
    user_id: str = Depends(get_current_user),
    registry: ProviderRegistry = Depends(get_registry)
):
    """Get the OAuth URL for a mailbox or business integration"""
    return create_auth_url(registry, Provider(provider.value), user_id)


@router.get("/integrations/{provider}/callback")
async def integration_callback(
    provider: IntegrationProvider,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    session_user: Optional[str] = Depends(get_optional_user),
    manager: IntegrationManager = Depends(get_integration_manager)
):
    return await complete_oauth(manager, Provider(provider.value), code, state, error, session_user)


@router.post("/integrations/{provider}/disconnect")
async def integration_disconnect(
    provider: IntegrationProvider,
    integration_id: Optional[str] = Body(None, alias="integrationId", embed=True),
    user_id: str = Depends(get_current_user),
    manager: IntegrationManager = Depends(get_integration_manager)
):
    """Disconnect one integration, or all of the user's integrations for the provider"""
    target = Provider(provider.value)
    if integration_id:
        integrations = [await manager.get_integration(user_id, target, integration_id)]
    else:
        integrations = await manager.storage.list_integrations(user_id, target)

    for integration in integrations:
        await manager.disconnect(integration)
    return {"success": True}
