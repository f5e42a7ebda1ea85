"""
CRM Synchronization Architecture

This module defines the records shared by the sync core: provider integrations,
the external-resource link table and the internal entities that get mirrored.

Architecture Overview:
---------------------

1. Integrations:
   - One record per (user, provider, connected account)
   - Holds OAuth tokens, the provider resource being synced (calendar ID, mailbox,
     business location) and push-notification (watch) state
   - Owned by the IntegrationManager, which refreshes tokens before provider calls

2. External-Resource Links:
   - Join records asserting "internal entity X is mirrored as provider resource Y
     under integration Z"
   - At most one link per (entity, integration) and per (integration, external ID)
   - Written as PENDING before a provider create, promoted to LINKED afterwards, so
     an interrupted push is reconciled instead of duplicated

3. Internal Entities:
   - Jobs (mirrored as calendar events), email threads (mirrored mailbox messages)
     and reviews (Business Profile reviews)
   - Two-way sync only ever writes a small safe field set back: job start time and
     notes, email read state

4. Synchronization Flow:
   - Push: internal entity -> provider create/update, keyed by the link table
   - Pull: provider changes -> restricted field merge, triggered by webhooks or sync
     endpoints, using history/delta cursors where the provider offers one and
     bounded polling otherwise
"""

import uuid
from enum import Enum
from typing import List, Optional, Tuple
from pydantic import BaseModel, Field
from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and convert aware ones to UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class Provider(str, Enum):
    """Third-party services an integration can connect to"""
    CALENDAR = "calendar"  # Google Calendar
    GMAIL = "gmail"
    OUTLOOK = "outlook"  # Microsoft Graph mail
    GMB = "gmb"  # Google Business Profile


class EntityType(str, Enum):
    """Internal entities that can be mirrored to a provider"""
    JOB = "job"
    EMAIL_THREAD = "email_thread"
    REVIEW = "review"


class LinkStatus(str, Enum):
    PENDING = "pending"  # Claimed, provider resource not confirmed yet
    LINKED = "linked"


class ConflictResolution(str, Enum):
    """Strategy for merging provider-side edits into internal records"""
    PROVIDER_WINS = "provider_wins"  # Last write wins, provider edit always applied
    NEWER_WINS = "newer_wins"  # Applied only if the provider edit is more recent


class ConflictType(str, Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"


class TokenSet(BaseModel):
    """Tokens returned by an OAuth code exchange or refresh"""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    token_type: str = "Bearer"
    account: Optional[str] = None  # Email address of the connected account, when known


class Integration(BaseModel):
    """Stored OAuth credential and sync configuration for one connected account"""
    id: str = Field(default_factory=new_id)
    user_id: str
    provider: Provider
    email_address: Optional[str] = None
    resource_id: Optional[str] = None
    access_token: str
    refresh_token: Optional[str] = None
    token_expiry: datetime
    sync_enabled: bool = True
    two_way_sync_enabled: bool = False
    sync_all_mail: bool = True
    sync_from_date: Optional[datetime] = None
    conflict_resolution: ConflictResolution = ConflictResolution.PROVIDER_WINS

    # Push notification state
    watch_channel_id: Optional[str] = None
    watch_resource_id: Optional[str] = None
    watch_expiration: Optional[datetime] = None
    watch_token: Optional[str] = None
    watch_history_id: Optional[str] = None
    watch_message_number: Optional[int] = None
    delta_link: Optional[str] = None

    # Business Profile location being synced
    business_account_id: Optional[str] = None
    business_location_id: Optional[str] = None

    last_sync_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def token_expired(self, now: Optional[datetime] = None) -> bool:
        return as_utc(self.token_expiry) <= (now or utcnow())

    def clear_watch(self) -> None:
        self.watch_channel_id = None
        self.watch_resource_id = None
        self.watch_expiration = None
        self.watch_token = None
        self.watch_message_number = None


class ExternalLink(BaseModel):
    """Join record between an internal entity and its provider-side mirror"""
    id: str = Field(default_factory=new_id)
    integration_id: str
    entity_type: EntityType
    entity_id: str
    external_id: Optional[str] = None
    status: LinkStatus = LinkStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_pushed_at: Optional[datetime] = None


class Customer(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class Job(BaseModel):
    """A booked job. Only booking_datetime and notes are written by two-way sync."""
    id: str = Field(default_factory=new_id)
    user_id: str
    customer_id: Optional[str] = None
    service_name: Optional[str] = None
    duration_hours: Optional[float] = None
    booking_datetime: datetime
    notes: Optional[str] = None
    vehicle: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)
    last_synced_from_provider: Optional[datetime] = None

    def window(self, default_hours: float) -> Tuple[datetime, datetime]:
        start = as_utc(self.booking_datetime)
        return start, start + timedelta(hours=self.duration_hours or default_hours)


class EmailThread(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    integration_id: str
    customer_id: Optional[str] = None
    provider: Provider
    provider_message_id: str
    provider_thread_id: Optional[str] = None
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
    sent_at: Optional[datetime] = None
    received_at: Optional[datetime] = None


class Review(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    integration_id: str
    provider_review_id: str
    reviewer_name: Optional[str] = None
    reviewer_photo_url: Optional[str] = None
    rating: int = 0
    comment: Optional[str] = None
    reply_text: Optional[str] = None
    replied_at: Optional[datetime] = None
    review_created_at: Optional[datetime] = None
    review_updated_at: Optional[datetime] = None


class Conflict(BaseModel):
    """A booking overlapping a proposed time window"""
    type: ConflictType
    title: str
    start: datetime
    end: datetime


class SyncResult(BaseModel):
    """Outcome of a sync operation"""
    success: bool = True
    synced: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)

    def to_response(self) -> dict:
        return {
            "success": self.success,
            "synced": self.synced,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
        }
