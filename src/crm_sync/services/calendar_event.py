"""
Provider resource models

Normalized shapes for the resources the provider adapters read and write:
calendar events, mailbox messages, business reviews and watch channels.
"""

import base64
from datetime import datetime, timezone
from email.utils import getaddresses, parseaddr
from typing import Any, Dict, List, Optional, Tuple
from pydantic import BaseModel, Field

JOB_MARKER_KEY = "crmJobId"

STAR_RATINGS = {
    "ONE": 1,
    "TWO": 2,
    "THREE": 3,
    "FOUR": 4,
    "FIVE": 5,
}


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp as returned by Google and Graph APIs"""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_epoch_millis(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def split_address(value: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Split 'Name <addr@example.com>' into (name, address)"""
    if not value:
        return None, None
    name, address = parseaddr(value)
    return name or None, address or value.strip()


def split_address_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [address for _, address in getaddresses([value]) if address]


def _decode_body(data: str) -> str:
    padded = data + '=' * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode('utf-8', errors='replace')


class CalendarEvent(BaseModel):
    """Normalized Google Calendar event"""
    id: str
    provider_id: str
    calendar_id: Optional[str] = None
    title: str = "(No title)"
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: datetime
    end_time: datetime
    all_day: bool = False
    status: Optional[str] = None
    link: Optional[str] = None
    updated_at: Optional[datetime] = None
    crm_job_id: Optional[str] = None
    original_data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_google(cls, event: Dict[str, Any], calendar_id: Optional[str] = None) -> "CalendarEvent":
        """
        Create a normalized CalendarEvent from a Google Calendar API event
        """
        start = event.get("start", {})
        end = event.get("end", {})

        # All-day events only carry a date
        all_day = "date" in start and "dateTime" not in start
        if all_day:
            start_dt = parse_timestamp(f"{start['date']}T00:00:00+00:00")
            end_dt = parse_timestamp(f"{end.get('date', start['date'])}T00:00:00+00:00")
        else:
            start_dt = parse_timestamp(start.get("dateTime"))
            end_dt = parse_timestamp(end.get("dateTime")) or start_dt

        private = event.get("extendedProperties", {}).get("private", {})

        return cls(
            id=f"google_{event['id']}",
            provider_id=event["id"],
            calendar_id=calendar_id,
            title=event.get("summary") or "(No title)",
            description=event.get("description"),
            location=event.get("location"),
            start_time=start_dt,
            end_time=end_dt,
            all_day=all_day,
            status=event.get("status"),
            link=event.get("htmlLink"),
            updated_at=parse_timestamp(event.get("updated")),
            crm_job_id=private.get(JOB_MARKER_KEY),
            original_data=event
        )

    def to_response(self) -> Dict[str, Any]:
        return {
            "id": self.provider_id,
            "summary": self.title,
            "description": self.description,
            "location": self.location,
            "start": self.start_time.isoformat(),
            "end": self.end_time.isoformat(),
            "allDay": self.all_day,
            "status": self.status,
            "htmlLink": self.link,
        }


class CalendarEventDraft(BaseModel):
    """Event body pushed to the provider for a job"""
    summary: str
    description: Optional[str] = None
    location: Optional[str] = None
    start: datetime
    end: datetime
    time_zone: str = "Europe/London"
    job_id: Optional[str] = None

    def to_google(self, include_reminders: bool = True) -> Dict[str, Any]:
        body = {
            "summary": self.summary,
            "description": self.description or "",
            "location": self.location,
            "start": {"dateTime": self.start.isoformat(), "timeZone": self.time_zone},
            "end": {"dateTime": self.end.isoformat(), "timeZone": self.time_zone},
        }
        if self.job_id:
            body["extendedProperties"] = {"private": {JOB_MARKER_KEY: self.job_id}}
        if include_reminders:
            body["reminders"] = {
                "useDefault": False,
                "overrides": [
                    {"method": "email", "minutes": 24 * 60},
                    {"method": "popup", "minutes": 60},
                ],
            }
        return body


class EmailMessage(BaseModel):
    """Normalized mailbox message from Gmail or Outlook"""
    provider_id: str
    thread_id: Optional[str] = None
    from_email: Optional[str] = None
    from_name: Optional[str] = None
    to_emails: List[str] = Field(default_factory=list)
    cc_emails: List[str] = Field(default_factory=list)
    bcc_emails: List[str] = Field(default_factory=list)
    subject: Optional[str] = None
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    is_read: bool = False
    is_sent: bool = False
    timestamp: Optional[datetime] = None

    @property
    def counterpart_email(self) -> Optional[str]:
        """Address of the other party: recipient for sent mail, sender otherwise"""
        if self.is_sent:
            return self.to_emails[0] if self.to_emails else None
        return self.from_email

    @classmethod
    def from_gmail(cls, message: Dict[str, Any]) -> "EmailMessage":
        headers = {
            h.get("name", "").lower(): h.get("value", "")
            for h in message.get("payload", {}).get("headers", [])
        }
        labels = message.get("labelIds", []) or []
        text, html = extract_gmail_body(message.get("payload", {}))
        from_name, from_email = split_address(headers.get("from"))

        return cls(
            provider_id=message["id"],
            thread_id=message.get("threadId"),
            from_email=from_email,
            from_name=from_name,
            to_emails=split_address_list(headers.get("to")),
            cc_emails=split_address_list(headers.get("cc")),
            bcc_emails=split_address_list(headers.get("bcc")),
            subject=headers.get("subject"),
            body_text=text or None,
            body_html=html or None,
            is_read="UNREAD" not in labels,
            is_sent="SENT" in labels,
            timestamp=parse_epoch_millis(message.get("internalDate"))
        )

    @classmethod
    def from_outlook(cls, message: Dict[str, Any], mailbox: Optional[str] = None) -> "EmailMessage":
        sender = (message.get("from") or {}).get("emailAddress", {})
        from_email = sender.get("address")

        def addresses(field: str) -> List[str]:
            return [
                r["emailAddress"]["address"]
                for r in message.get(field) or []
                if r.get("emailAddress", {}).get("address")
            ]

        body = message.get("body") or {}
        is_html = body.get("contentType", "").lower() == "html"
        is_sent = bool(mailbox and from_email and from_email.lower() == mailbox.lower())

        return cls(
            provider_id=message["id"],
            thread_id=message.get("conversationId") or message["id"],
            from_email=from_email,
            from_name=sender.get("name"),
            to_emails=addresses("toRecipients"),
            cc_emails=addresses("ccRecipients"),
            bcc_emails=addresses("bccRecipients"),
            subject=message.get("subject"),
            body_text=message.get("bodyPreview") or None,
            body_html=body.get("content") if is_html else None,
            is_read=bool(message.get("isRead", False)),
            is_sent=is_sent,
            timestamp=parse_timestamp(
                message.get("sentDateTime") if is_sent else message.get("receivedDateTime")
            )
        )


def extract_gmail_body(payload: Dict[str, Any]) -> Tuple[str, str]:
    """Walk a Gmail MIME payload and return its (text, html) bodies"""
    text = ""
    html = ""

    data = payload.get("body", {}).get("data")
    if data:
        decoded = _decode_body(data)
        if payload.get("mimeType") == "text/plain":
            text = decoded
        elif payload.get("mimeType") == "text/html":
            html = decoded

    for part in payload.get("parts", []) or []:
        part_text, part_html = extract_gmail_body(part)
        text = text or part_text
        html = html or part_html

    return text, html


class EmailAttachment(BaseModel):
    filename: str
    content: str  # base64 encoded
    mime_type: str = "application/octet-stream"


class OutgoingEmail(BaseModel):
    to: List[str]
    cc: List[str] = Field(default_factory=list)
    bcc: List[str] = Field(default_factory=list)
    subject: str = ""
    body: str = ""
    body_type: str = "html"  # "text" or "html"
    attachments: List[EmailAttachment] = Field(default_factory=list)


class BusinessReview(BaseModel):
    """Normalized Google Business Profile review"""
    review_id: str
    reviewer_name: Optional[str] = None
    reviewer_photo_url: Optional[str] = None
    rating: int = 0
    comment: Optional[str] = None
    reply_text: Optional[str] = None
    reply_updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_gmb(cls, review: Dict[str, Any]) -> "BusinessReview":
        reviewer = review.get("reviewer", {})
        reply = review.get("reviewReply") or {}
        return cls(
            review_id=review["reviewId"],
            reviewer_name=reviewer.get("displayName"),
            reviewer_photo_url=reviewer.get("profilePhotoUrl"),
            rating=STAR_RATINGS.get(review.get("starRating", ""), 0),
            comment=review.get("comment"),
            reply_text=reply.get("comment"),
            reply_updated_at=parse_timestamp(reply.get("updateTime")),
            created_at=parse_timestamp(review.get("createTime")),
            updated_at=parse_timestamp(review.get("updateTime"))
        )


class WatchChannel(BaseModel):
    """A push-notification subscription as returned by a provider"""
    channel_id: Optional[str] = None
    resource_id: Optional[str] = None
    expiration: Optional[datetime] = None
    history_id: Optional[str] = None
    token: Optional[str] = None
