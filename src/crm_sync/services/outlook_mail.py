import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from crm_sync.auth.microsoft_auth import GRAPH_BASE_URL, MicrosoftGraphAuth
from crm_sync.services.calendar_event import EmailMessage, OutgoingEmail, WatchChannel, parse_timestamp
from crm_sync.services.http_client import JsonHttpClient
from crm_sync.sync.architecture import Provider, TokenSet, as_utc, utcnow

# Set up logging
logger = logging.getLogger(__name__)

MESSAGE_FIELDS = (
    "id,conversationId,subject,bodyPreview,body,from,toRecipients,ccRecipients,"
    "bccRecipients,receivedDateTime,sentDateTime,isRead,hasAttachments"
)

# Graph caps mail subscriptions at just under three days
MAX_SUBSCRIPTION_MINUTES = 4230


def _recipients(addresses: List[str]) -> List[Dict[str, Any]]:
    return [{"emailAddress": {"address": address}} for address in addresses]


class OutlookMailService:
    """Outlook (Microsoft Graph mail) adapter"""

    provider = Provider.OUTLOOK

    def __init__(
        self,
        auth: MicrosoftGraphAuth,
        client_factory: Optional[Callable[[str], JsonHttpClient]] = None
    ):
        self.auth = auth
        self.client_factory = client_factory or (
            lambda access_token: JsonHttpClient(self.provider.value, access_token, GRAPH_BASE_URL)
        )

    def _client(self, access_token: str) -> JsonHttpClient:
        return self.client_factory(access_token)

    async def exchange_code(self, code: str) -> TokenSet:
        return await self.auth.exchange_code(code)

    async def refresh(self, refresh_token: str) -> TokenSet:
        return await self.auth.refresh(refresh_token)

    async def get_profile(self, access_token: str) -> Dict[str, Any]:
        return await self._client(access_token).get(
            "/me", params={"$select": "id,displayName,mail,userPrincipalName"}
        )

    async def list_messages(
        self,
        access_token: str,
        top: int = 50,
        received_since: Optional[datetime] = None,
        mailbox: Optional[str] = None
    ) -> List[EmailMessage]:
        """Most recent messages, optionally limited to those received after a timestamp"""
        params = {
            "$top": top,
            "$orderby": "receivedDateTime desc",
            "$select": MESSAGE_FIELDS,
        }
        if received_since:
            since = as_utc(received_since).strftime("%Y-%m-%dT%H:%M:%SZ")
            params["$filter"] = f"receivedDateTime ge {since}"

        response = await self._client(access_token).get("/me/messages", params=params)
        return [EmailMessage.from_outlook(m, mailbox) for m in (response or {}).get("value", [])]

    async def get_message(self, access_token: str, message_id: str, mailbox: Optional[str] = None) -> EmailMessage:
        message = await self._client(access_token).get(
            f"/me/messages/{message_id}", params={"$select": MESSAGE_FIELDS}
        )
        return EmailMessage.from_outlook(message, mailbox)

    async def messages_delta(
        self,
        access_token: str,
        delta_link: Optional[str] = None,
        mailbox: Optional[str] = None,
        received_since: Optional[datetime] = None
    ) -> Tuple[List[EmailMessage], Optional[str]]:
        """
        Follow the Inbox delta feed until a new delta link is issued.
        Returns (changed_messages, delta_link). A new feed can be limited to
        messages received after received_since. An expired delta link surfaces as
        ProviderError(not_found).
        """
        client = self._client(access_token)
        if delta_link:
            response = await client.get(delta_link)
        else:
            params = {"$select": MESSAGE_FIELDS}
            if received_since:
                since = as_utc(received_since).strftime("%Y-%m-%dT%H:%M:%SZ")
                params["$filter"] = f"receivedDateTime ge {since}"
            response = await client.get("/me/mailFolders/inbox/messages/delta", params=params)

        messages = []
        while True:
            for message in (response or {}).get("value", []):
                # Removed items only carry an id and an @removed marker
                if "@removed" in message or "from" not in message:
                    continue
                messages.append(EmailMessage.from_outlook(message, mailbox))

            next_link = (response or {}).get("@odata.nextLink")
            if not next_link:
                return messages, (response or {}).get("@odata.deltaLink")
            response = await client.get(next_link)

    async def send_message(self, access_token: str, email: OutgoingEmail) -> Dict[str, Any]:
        """
        Send a message. A draft is created first so the sent message ID is known.
        Returns {"id", "conversationId"}.
        """
        client = self._client(access_token)
        message = {
            "subject": email.subject,
            "body": {
                "contentType": "HTML" if email.body_type == "html" else "Text",
                "content": email.body,
            },
            "toRecipients": _recipients(email.to),
            "ccRecipients": _recipients(email.cc),
            "bccRecipients": _recipients(email.bcc),
        }
        if email.attachments:
            message["attachments"] = [
                {
                    "@odata.type": "#microsoft.graph.fileAttachment",
                    "name": attachment.filename,
                    "contentType": attachment.mime_type,
                    "contentBytes": attachment.content,
                }
                for attachment in email.attachments
            ]

        draft = await client.post("/me/messages", json=message)
        await client.post(f"/me/messages/{draft['id']}/send")
        return {"id": draft["id"], "conversationId": draft.get("conversationId")}

    async def mark_read(self, access_token: str, message_id: str, is_read: bool = True) -> None:
        await self._client(access_token).patch(f"/me/messages/{message_id}", json={"isRead": is_read})

    async def start_watch(self, access_token: str, notification_url: str, client_state: str) -> WatchChannel:
        """Subscribe to new and updated Inbox messages"""
        expiration = utcnow() + timedelta(minutes=MAX_SUBSCRIPTION_MINUTES)
        response = await self._client(access_token).post("/subscriptions", json={
            "changeType": "created,updated",
            "notificationUrl": notification_url,
            "resource": "me/mailFolders('Inbox')/messages",
            "expirationDateTime": expiration.strftime("%Y-%m-%dT%H:%M:%S.0000000Z"),
            "clientState": client_state,
        })
        return WatchChannel(
            channel_id=response["id"],
            resource_id=response.get("resource"),
            expiration=parse_timestamp(response.get("expirationDateTime")) or expiration,
            token=client_state
        )

    async def stop_watch(self, access_token: str, subscription_id: str) -> None:
        await self._client(access_token).delete(f"/subscriptions/{subscription_id}")
