"""
Webhook Receiver

Handles push notifications from Google Calendar channels, Gmail (via Cloud Pub/Sub)
and Microsoft Graph subscriptions. Providers retry anything that is not a 2xx, so
every handler acknowledges: unknown, forged or duplicate notifications are dropped
and processing failures are logged.
"""

import base64
import json
import logging
from typing import Any, Dict, Mapping, Optional

from crm_sync.sync.architecture import Provider, utcnow
from crm_sync.sync.storage import SyncStorageManager

# Set up logging
logger = logging.getLogger(__name__)


def decode_pubsub_data(data: str) -> Dict[str, Any]:
    """Decode the base64 JSON payload of a Pub/Sub push message"""
    padded = data + "=" * (-len(data) % 4)
    return json.loads(base64.b64decode(padded).decode("utf-8"))


def _message_number(value: Optional[str]) -> Optional[int]:
    if value and value.strip().isdigit():
        return int(value)
    return None


class WebhookReceiver:
    def __init__(self, storage: SyncStorageManager, calendar_controller, mailbox_controller):
        self.storage = storage
        self.calendar = calendar_controller
        self.mailbox = mailbox_controller

    async def handle_calendar_notification(self, headers: Mapping[str, str]) -> Dict[str, Any]:
        channel_id = headers.get("x-goog-channel-id")
        resource_state = headers.get("x-goog-resource-state")
        resource_id = headers.get("x-goog-resource-id")
        channel_token = headers.get("x-goog-channel-token")
        message_number = _message_number(headers.get("x-goog-message-number"))

        logger.info(f"Calendar webhook received: channel={channel_id} state={resource_state} number={message_number}")

        if not channel_id:
            return {"received": True, "processed": False}

        # Sent once when the channel is created
        if resource_state == "sync":
            return {"received": True, "processed": False, "message": "Sync notification acknowledged"}

        try:
            integration = await self.storage.find_integration_by_channel(channel_id)
            if not integration or integration.provider != Provider.CALENDAR or not integration.sync_enabled:
                logger.warning(f"No active integration found for channel {channel_id}")
                return {"received": True, "processed": False}

            if resource_id and integration.watch_resource_id and resource_id != integration.watch_resource_id:
                logger.warning(f"Resource mismatch for channel {channel_id}")
                return {"received": True, "processed": False}

            if integration.watch_token and channel_token != integration.watch_token:
                logger.warning(f"Invalid channel token for channel {channel_id}")
                return {"received": True, "processed": False}

            async with self.storage.lock(f"webhook:{integration.id}"):
                current = await self.storage.get_integration(integration.id) or integration
                if (
                    message_number is not None
                    and current.watch_message_number is not None
                    and message_number <= current.watch_message_number
                ):
                    logger.info(f"Dropping re-delivered notification {message_number} for channel {channel_id}")
                    return {"received": True, "processed": False, "duplicate": True}

                if message_number is not None:
                    await self.storage.update_integration(current, watch_message_number=message_number)

                result = await self.calendar.pull_calendar_changes(current)

                try:
                    await self.storage.update_integration(current, last_sync_at=utcnow())
                except Exception as e:
                    logger.warning(f"Failed to update last_sync_at for integration {current.id}: {e}")

            return {"received": True, "processed": True, "updated": result.updated}
        except Exception as e:
            logger.error(f"Error processing calendar webhook for channel {channel_id}: {e}")
            return {"received": True, "processed": False}

    async def handle_gmail_push(self, envelope: Dict[str, Any]) -> Dict[str, Any]:
        email_address = None
        try:
            message = envelope.get("message") if isinstance(envelope, dict) else None
            data = message.get("data") if isinstance(message, dict) else None
            if not data or not isinstance(data, str):
                logger.info("Invalid Pub/Sub message format")
                return {"received": True, "processed": 0}

            try:
                notification = decode_pubsub_data(data)
            except ValueError as e:
                logger.warning(f"Undecodable Pub/Sub payload: {e}")
                return {"received": True, "processed": 0}

            if not isinstance(notification, dict):
                logger.info("Pub/Sub payload is not a Gmail notification")
                return {"received": True, "processed": 0}

            email_address = notification.get("emailAddress")
            history_id = notification.get("historyId")
            if not email_address or not isinstance(email_address, str):
                return {"received": True, "processed": 0}

            integration = await self.storage.find_integration_by_mailbox(Provider.GMAIL, email_address)
            if not integration:
                logger.info(f"No active Gmail integration found for {email_address}")
                return {"received": True, "processed": 0}

            async with self.storage.lock(f"webhook:{integration.id}"):
                current = await self.storage.get_integration(integration.id) or integration
                result = await self.mailbox.process_notification(
                    current, history_id=str(history_id) if history_id else None
                )
            return {"received": True, "processed": result.synced}
        except Exception as e:
            logger.error(f"Error processing Gmail webhook for {email_address}: {e}")
            return {"received": True, "processed": 0}

    async def handle_outlook_notification(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        processed = 0
        handled = set()

        notifications = payload.get("value") if isinstance(payload, dict) else None
        if not isinstance(notifications, list):
            return {"received": True, "processed": processed}

        for notification in notifications:
            if not isinstance(notification, dict):
                continue
            subscription_id = notification.get("subscriptionId")
            if not subscription_id:
                continue
            try:
                integration = await self.storage.find_integration_by_channel(subscription_id)
                if not integration or integration.provider != Provider.OUTLOOK or not integration.sync_enabled:
                    logger.warning(f"No active integration found for subscription {subscription_id}")
                    continue

                if integration.watch_token and notification.get("clientState") != integration.watch_token:
                    logger.warning(f"Invalid clientState for subscription {subscription_id}")
                    continue

                # One delta run covers every notification in the batch
                if integration.id in handled:
                    continue
                handled.add(integration.id)

                async with self.storage.lock(f"webhook:{integration.id}"):
                    current = await self.storage.get_integration(integration.id) or integration
                    result = await self.mailbox.process_notification(current)
                processed += result.synced
            except Exception as e:
                logger.error(f"Error processing Outlook notification for subscription {subscription_id}: {e}")

        return {"received": True, "processed": processed}
