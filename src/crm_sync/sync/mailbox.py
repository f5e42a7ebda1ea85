"""
Mailbox Synchronization

Ingests Gmail and Outlook messages as CRM email threads, sends mail on behalf of
the user and keeps read state in step with the provider.
"""

import logging
import uuid
from typing import Any, Dict, Iterable, Optional

from crm_sync.services.calendar_event import EmailMessage, OutgoingEmail
from crm_sync.sync.architecture import EmailThread, EntityType, Integration, Provider, SyncResult, utcnow
from crm_sync.sync.changes import polling_strategy_for, strategy_for
from crm_sync.sync.errors import EntityNotFound, SyncError
from crm_sync.sync.storage import SyncStorageManager
from crm_sync.utils.config import settings as default_settings

# Set up logging
logger = logging.getLogger(__name__)

SYNCED = "synced"
UPDATED = "updated"
SKIPPED = "skipped"


def thread_record_id(integration_id: str, provider_message_id: str) -> str:
    """Stable record ID, so a retried ingest of the same message lands on the same record"""
    return uuid.uuid5(uuid.NAMESPACE_URL, f"{integration_id}/{provider_message_id}").hex


class MailboxSyncController:
    def __init__(self, storage: SyncStorageManager, manager, registry, settings=None):
        self.storage = storage
        self.manager = manager
        self.registry = registry
        self.settings = settings or default_settings

    async def sync_mailbox(
        self,
        user_id: str,
        provider: Provider,
        integration_id: Optional[str] = None,
        max_results: int = 50
    ) -> SyncResult:
        """Pull the most recent messages of a mailbox"""
        integration = await self.manager.get_integration(user_id, provider, integration_id)
        access_token = await self.manager.ensure_fresh_token(integration)
        adapter = self.registry.get(provider)

        strategy = polling_strategy_for(integration, self.settings)
        change_set = await strategy.changes(adapter, access_token, integration, limit=max_results)
        logger.info(f"Fetched {len(change_set.items)} messages from {provider.value} for integration {integration.id}")

        result = await self.ingest(integration, change_set.items)

        fields: Dict[str, Any] = {"last_sync_at": utcnow()}
        if provider == Provider.GMAIL and change_set.cursor and not integration.watch_history_id:
            fields["watch_history_id"] = change_set.cursor
        await self._update_non_critical(integration, fields)
        return result

    async def process_notification(self, integration: Integration, history_id: Optional[str] = None) -> SyncResult:
        """Ingest what changed since the integration's stored cursor"""
        access_token = await self.manager.ensure_fresh_token(integration)
        adapter = self.registry.get(integration.provider)

        change_set = await strategy_for(integration, self.settings).changes(adapter, access_token, integration)
        result = await self.ingest(integration, change_set.items)

        fields: Dict[str, Any] = {"last_sync_at": utcnow()}
        if integration.provider == Provider.GMAIL:
            cursor = change_set.cursor or history_id
            if cursor:
                fields["watch_history_id"] = cursor
        elif integration.provider == Provider.OUTLOOK and change_set.cursor is not None:
            fields["delta_link"] = change_set.cursor or None
        await self.storage.update_integration(integration, **fields)

        logger.info(
            f"Processed {integration.provider.value} notification for integration {integration.id}: "
            f"{result.synced} new, {result.updated} updated"
        )
        return result

    async def _update_non_critical(self, integration: Integration, fields: Dict[str, Any]) -> None:
        try:
            await self.storage.update_integration(integration, **fields)
        except Exception as e:
            logger.warning(f"Failed to update integration {integration.id} after sync: {e}")

    async def ingest(self, integration: Integration, messages: Iterable[EmailMessage]) -> SyncResult:
        result = SyncResult()
        for message in messages:
            try:
                outcome = await self.ingest_message(integration, message)
            except Exception as e:
                logger.error(f"Error processing message {message.provider_id}: {e}")
                result.errors.append(f"{message.provider_id}: {e}")
                continue

            if outcome == SYNCED:
                result.synced += 1
            elif outcome == UPDATED:
                result.updated += 1
            else:
                result.skipped += 1
        return result

    async def ingest_message(self, integration: Integration, message: EmailMessage) -> str:
        """
        Store one provider message as an email thread, at most once per
        (integration, message). Already-linked messages only get their read state pulled.
        """
        async with self.storage.lock(f"external:{integration.id}:{message.provider_id}"):
            link = await self.storage.get_link_by_external_id(integration.id, message.provider_id)
            if link:
                thread = await self.storage.get_email_thread(link.entity_id)
                if thread and thread.is_read != message.is_read:
                    thread.is_read = message.is_read
                    await self.storage.save_email_thread(thread)
                    return UPDATED
                return SKIPPED

            customer = await self.storage.find_customer_by_email(integration.user_id, message.counterpart_email)
            if not integration.sync_all_mail and not customer:
                logger.debug(f"Skipping non-customer email {message.provider_id}")
                return SKIPPED

            thread = EmailThread(
                id=thread_record_id(integration.id, message.provider_id),
                user_id=integration.user_id,
                integration_id=integration.id,
                customer_id=customer.id if customer else None,
                provider=integration.provider,
                provider_message_id=message.provider_id,
                provider_thread_id=message.thread_id,
                from_email=message.from_email,
                from_name=message.from_name,
                to_emails=message.to_emails,
                cc_emails=message.cc_emails,
                bcc_emails=message.bcc_emails,
                subject=message.subject,
                body_text=message.body_text,
                body_html=message.body_html,
                is_read=message.is_read,
                is_sent=message.is_sent,
                sent_at=message.timestamp if message.is_sent else None,
                received_at=None if message.is_sent else message.timestamp
            )
            await self.storage.save_email_thread(thread)
            link, _ = await self.storage.claim_link(integration.id, EntityType.EMAIL_THREAD, thread.id)
            await self.storage.link_external(link, message.provider_id)
            return SYNCED

    async def send_email(
        self,
        user_id: str,
        provider: Provider,
        email: OutgoingEmail,
        integration_id: Optional[str] = None,
        customer_id: Optional[str] = None
    ) -> Dict[str, Optional[str]]:
        """Send a message and record it as a sent email thread"""
        integration = await self.manager.get_integration(user_id, provider, integration_id)
        access_token = await self.manager.ensure_fresh_token(integration)
        response = await self.registry.get(provider).send_message(access_token, email)

        message_id = response["id"]
        thread_id = response.get("threadId") or response.get("conversationId")
        logger.info(f"Sent {provider.value} message {message_id} for user {user_id}")

        try:
            await self._record_sent(integration, email, message_id, thread_id, customer_id)
        except Exception as e:
            logger.warning(f"Sent message {message_id} but failed to record it: {e}")

        return {"messageId": message_id, "threadId": thread_id}

    async def _record_sent(
        self,
        integration: Integration,
        email: OutgoingEmail,
        message_id: str,
        thread_id: Optional[str],
        customer_id: Optional[str]
    ) -> None:
        if not customer_id and len(email.to) == 1:
            customer = await self.storage.find_customer_by_email(integration.user_id, email.to[0])
            customer_id = customer.id if customer else None

        is_html = email.body_type == "html"
        thread = EmailThread(
            id=thread_record_id(integration.id, message_id),
            user_id=integration.user_id,
            integration_id=integration.id,
            customer_id=customer_id,
            provider=integration.provider,
            provider_message_id=message_id,
            provider_thread_id=thread_id,
            from_email=integration.email_address,
            to_emails=email.to,
            cc_emails=email.cc,
            bcc_emails=email.bcc,
            subject=email.subject,
            body_text=None if is_html else email.body,
            body_html=email.body if is_html else None,
            is_read=True,
            is_sent=True,
            sent_at=utcnow()
        )

        async with self.storage.lock(f"external:{integration.id}:{message_id}"):
            await self.storage.save_email_thread(thread)
            link, _ = await self.storage.claim_link(integration.id, EntityType.EMAIL_THREAD, thread.id)
            await self.storage.link_external(link, message_id)

    async def mark_read(self, user_id: str, email_id: str, is_read: bool = True) -> Optional[str]:
        """
        Update read state in the CRM, then on the provider.
        Returns a warning when the provider update failed.
        """
        thread = await self.storage.get_email_thread(email_id)
        if not thread or thread.user_id != user_id:
            raise EntityNotFound("Email not found", emailId=email_id)

        thread.is_read = is_read
        await self.storage.save_email_thread(thread)

        integration = await self.storage.get_integration(thread.integration_id)
        if not integration:
            return f"Updated in CRM but the {thread.provider.value} integration no longer exists"

        try:
            access_token = await self.manager.ensure_fresh_token(integration)
            await self.registry.get(thread.provider).mark_read(access_token, thread.provider_message_id, is_read)
        except SyncError as e:
            logger.warning(f"Failed to update read state of message {thread.provider_message_id}: {e}")
            return f"Updated in CRM but failed to sync with {thread.provider.value}"
        return None
