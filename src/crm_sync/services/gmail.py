import base64
import logging
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email import encoders
from typing import Any, Dict, List, Optional, Tuple

from googleapiclient.errors import HttpError

from crm_sync.auth.google_auth import GoogleOAuthClient
from crm_sync.services.calendar_event import EmailMessage, OutgoingEmail, WatchChannel, parse_epoch_millis
from crm_sync.services.http_client import provider_error
from crm_sync.sync.architecture import Provider, TokenSet

# Set up logging
logger = logging.getLogger(__name__)


def build_mime_message(email: OutgoingEmail) -> str:
    """Build an RFC 2822 message and return it base64url-encoded for the Gmail API"""
    subtype = "html" if email.body_type == "html" else "plain"
    body = MIMEText(email.body, subtype, "utf-8")

    if email.attachments:
        message = MIMEMultipart("mixed")
        message.attach(body)
        for attachment in email.attachments:
            maintype, _, subtype = attachment.mime_type.partition("/")
            part = MIMEBase(maintype or "application", subtype or "octet-stream")
            part.set_payload(base64.b64decode(attachment.content))
            encoders.encode_base64(part)
            part.add_header("Content-Disposition", "attachment", filename=attachment.filename)
            message.attach(part)
    else:
        message = body

    message["To"] = ", ".join(email.to)
    if email.cc:
        message["Cc"] = ", ".join(email.cc)
    if email.bcc:
        message["Bcc"] = ", ".join(email.bcc)
    message["Subject"] = email.subject

    return base64.urlsafe_b64encode(message.as_bytes()).decode("ascii").rstrip("=")


class GmailService:
    """Gmail adapter. Callers pass an access token that is already fresh."""

    provider = Provider.GMAIL

    def __init__(self, auth: GoogleOAuthClient):
        self.auth = auth

    def _service(self, access_token: str):
        return self.auth.build_service('gmail', 'v1', access_token)

    def _error(self, action: str, error: HttpError):
        logger.error(f"Gmail {action} failed: {error}")
        return provider_error(self.provider.value, error)

    async def exchange_code(self, code: str) -> TokenSet:
        return await self.auth.exchange_code(code)

    async def refresh(self, refresh_token: str) -> TokenSet:
        return await self.auth.refresh(refresh_token)

    async def get_profile(self, access_token: str) -> Dict[str, Any]:
        try:
            return self._service(access_token).users().getProfile(userId='me').execute()
        except HttpError as error:
            raise self._error("profile lookup", error) from error

    async def list_message_ids(
        self,
        access_token: str,
        max_results: int = 50,
        label_ids: Optional[List[str]] = None,
        query: Optional[str] = None
    ) -> List[str]:
        """IDs of the most recent messages, newest first"""
        params = {'userId': 'me', 'maxResults': max_results}
        if label_ids:
            params['labelIds'] = label_ids
        if query:
            params['q'] = query
        try:
            response = self._service(access_token).users().messages().list(**params).execute()
        except HttpError as error:
            raise self._error("message list", error) from error
        return [m['id'] for m in response.get('messages', [])]

    async def get_message(self, access_token: str, message_id: str) -> EmailMessage:
        try:
            message = self._service(access_token).users().messages().get(
                userId='me', id=message_id, format='full'
            ).execute()
        except HttpError as error:
            raise self._error(f"fetch of message {message_id}", error) from error
        return EmailMessage.from_gmail(message)

    async def list_messages(
        self,
        access_token: str,
        max_results: int = 50,
        label_ids: Optional[List[str]] = None,
        query: Optional[str] = None
    ) -> List[EmailMessage]:
        ids = await self.list_message_ids(access_token, max_results, label_ids, query)
        return [await self.get_message(access_token, message_id) for message_id in ids]

    async def list_history(self, access_token: str, start_history_id: str) -> Tuple[List[str], Optional[str]]:
        """
        Message IDs added to, or relabelled in, the INBOX since start_history_id.
        Returns (message_ids, latest_history_id). A 404 means the history ID is
        too old and surfaces as ProviderError(not_found).
        """
        service = self._service(access_token)
        params = {
            'userId': 'me',
            'startHistoryId': start_history_id,
            'labelId': 'INBOX',
            'historyTypes': ['messageAdded', 'labelAdded', 'labelRemoved']
        }
        message_ids: List[str] = []
        latest = None

        while True:
            try:
                response = service.users().history().list(**params).execute()
            except HttpError as error:
                raise self._error("history list", error) from error

            latest = response.get('historyId', latest)
            for record in response.get('history', []):
                for key in ('messagesAdded', 'labelsAdded', 'labelsRemoved'):
                    for entry in record.get(key, []):
                        message_id = entry.get('message', {}).get('id')
                        if message_id and message_id not in message_ids:
                            message_ids.append(message_id)

            page_token = response.get('nextPageToken')
            if not page_token:
                return message_ids, latest
            params['pageToken'] = page_token

    async def send_message(self, access_token: str, email: OutgoingEmail) -> Dict[str, Any]:
        """Send a message; returns the created message resource (id, threadId)"""
        try:
            return self._service(access_token).users().messages().send(
                userId='me',
                body={'raw': build_mime_message(email)}
            ).execute()
        except HttpError as error:
            raise self._error("send", error) from error

    async def mark_read(self, access_token: str, message_id: str, is_read: bool = True) -> None:
        body = {'removeLabelIds': ['UNREAD']} if is_read else {'addLabelIds': ['UNREAD']}
        try:
            self._service(access_token).users().messages().modify(
                userId='me', id=message_id, body=body
            ).execute()
        except HttpError as error:
            raise self._error(f"modify of message {message_id}", error) from error

    async def start_watch(self, access_token: str, topic_name: str) -> WatchChannel:
        """Publish INBOX changes to a Pub/Sub topic"""
        try:
            response = self._service(access_token).users().watch(
                userId='me',
                body={'topicName': topic_name, 'labelIds': ['INBOX']}
            ).execute()
        except HttpError as error:
            raise self._error("watch", error) from error

        return WatchChannel(
            history_id=str(response['historyId']) if response.get('historyId') else None,
            expiration=parse_epoch_millis(response.get('expiration'))
        )

    async def stop_watch(self, access_token: str) -> None:
        try:
            self._service(access_token).users().stop(userId='me').execute()
        except HttpError as error:
            raise self._error("watch stop", error) from error
