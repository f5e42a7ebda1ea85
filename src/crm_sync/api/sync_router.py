"""
Synchronization API Router

This module defines the API endpoints for calendar, mailbox and review sync.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field, model_validator

from crm_sync.api.dependencies import (
    get_calendar_controller, get_conflict_checker, get_integration_manager,
    get_mailbox_controller, get_review_controller, get_watch_manager
)
from crm_sync.api.router import IntegrationProvider
from crm_sync.auth.session import get_current_user
from crm_sync.services.calendar_event import EmailAttachment, OutgoingEmail
from crm_sync.sync.architecture import Provider, as_utc
from crm_sync.sync.conflicts import ConflictChecker
from crm_sync.sync.controller import CalendarSyncController
from crm_sync.sync.mailbox import MailboxSyncController
from crm_sync.sync.reviews import ReviewSyncController
from crm_sync.sync.token_manager import IntegrationManager
from crm_sync.sync.watches import WatchManager

# Create router
router = APIRouter(tags=["sync"])


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class JobRequest(CamelModel):
    job_id: str = Field(alias="jobId")


class DeleteJobRequest(JobRequest):
    delete_from_calendar: bool = Field(True, alias="deleteFromCalendar")


class ConflictRequest(CamelModel):
    start_time: datetime = Field(alias="startTime")
    end_time: datetime = Field(alias="endTime")
    exclude_job_id: Optional[str] = Field(None, alias="excludeJobId")

    @model_validator(mode="after")
    def check_range(self):
        if as_utc(self.end_time) <= as_utc(self.start_time):
            raise ValueError("endTime must be after startTime")
        return self


class IntegrationRequest(CamelModel):
    integration_id: Optional[str] = Field(None, alias="integrationId")


class MailSyncRequest(IntegrationRequest):
    max_results: int = Field(50, alias="maxResults", ge=1, le=500)


class AttachmentPayload(CamelModel):
    filename: str
    content: str
    mime_type: str = Field("application/octet-stream", alias="mimeType")


class SendEmailRequest(IntegrationRequest):
    to: List[str] = Field(min_length=1)
    cc: List[str] = Field(default_factory=list)
    bcc: List[str] = Field(default_factory=list)
    subject: str = ""
    body: str
    body_type: str = Field("html", alias="bodyType", pattern="^(html|text)$")
    customer_id: Optional[str] = Field(None, alias="customerId")
    attachments: List[AttachmentPayload] = Field(default_factory=list)


class MarkReadRequest(CamelModel):
    email_id: str = Field(alias="emailId")
    is_read: bool = Field(True, alias="isRead")


class ReplyRequest(CamelModel):
    review_id: str = Field(alias="reviewId")
    reply_text: str = Field(alias="replyText", min_length=1)


def mail_provider(provider: IntegrationProvider) -> Provider:
    if provider == IntegrationProvider.GMB:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
    return Provider(provider.value)


# Calendar endpoints
@router.post("/calendar/sync-job")
async def sync_job(
    request: JobRequest,
    user_id: str = Depends(get_current_user),
    controller: CalendarSyncController = Depends(get_calendar_controller)
):
    """Create or update the calendar event for a job"""
    event = await controller.push_job(user_id, request.job_id)
    return {"success": True, "eventId": event.provider_id, "eventLink": event.link}


@router.post("/calendar/delete-job")
async def delete_job(
    request: DeleteJobRequest,
    user_id: str = Depends(get_current_user),
    controller: CalendarSyncController = Depends(get_calendar_controller)
):
    """Delete a job and its calendar event"""
    deleted = await controller.delete_job(user_id, request.job_id, request.delete_from_calendar)
    return {"success": True, "calendarEventDeleted": deleted}


@router.get("/calendar/events")
async def list_events(
    time_min: datetime = Query(..., alias="timeMin"),
    time_max: datetime = Query(..., alias="timeMax"),
    user_id: str = Depends(get_current_user),
    controller: CalendarSyncController = Depends(get_calendar_controller)
):
    """Calendar events that did not originate from CRM jobs"""
    events = await controller.list_external_events(user_id, time_min, time_max)
    return {"events": [event.to_response() for event in events]}


@router.get("/calendar/list-calendars")
async def list_calendars(
    user_id: str = Depends(get_current_user),
    controller: CalendarSyncController = Depends(get_calendar_controller)
):
    return {"calendars": await controller.list_calendars(user_id)}


@router.post("/calendar/check-conflict")
async def check_conflict(
    request: ConflictRequest,
    user_id: str = Depends(get_current_user),
    checker: ConflictChecker = Depends(get_conflict_checker)
):
    """Find bookings overlapping a proposed time slot"""
    conflicts = await checker.check_conflict(user_id, request.start_time, request.end_time, request.exclude_job_id)
    return {
        "hasConflict": bool(conflicts),
        "conflicts": [conflict.model_dump(mode="json") for conflict in conflicts],
    }


@router.post("/calendar/watch/start")
async def start_calendar_watch(
    user_id: str = Depends(get_current_user),
    manager: IntegrationManager = Depends(get_integration_manager),
    watches: WatchManager = Depends(get_watch_manager)
):
    integration = await manager.get_integration(user_id, Provider.CALENDAR)
    await watches.start_watch(integration)
    return {
        "success": True,
        "channelId": integration.watch_channel_id,
        "expiration": integration.watch_expiration,
    }


@router.post("/calendar/watch/stop")
async def stop_calendar_watch(
    user_id: str = Depends(get_current_user),
    manager: IntegrationManager = Depends(get_integration_manager),
    watches: WatchManager = Depends(get_watch_manager)
):
    integration = await manager.get_integration(user_id, Provider.CALENDAR)
    if not await watches.stop_watch(integration):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No active watch channel")
    return {"success": True}


@router.post("/calendar/watch/renew")
async def renew_watches(
    user_id: str = Depends(get_current_user),
    watches: WatchManager = Depends(get_watch_manager)
):
    """Renew the user's watches that are close to expiring"""
    result = await watches.renew_expiring(user_id)
    return {"success": not result["failed"], **result}


# Mailbox endpoints
@router.post("/integrations/{provider}/sync")
async def sync_mailbox(
    provider: IntegrationProvider,
    request: MailSyncRequest,
    user_id: str = Depends(get_current_user),
    controller: MailboxSyncController = Depends(get_mailbox_controller)
):
    """Import the most recent messages of a mailbox"""
    result = await controller.sync_mailbox(
        user_id, mail_provider(provider), request.integration_id, request.max_results
    )
    return result.to_response()


@router.post("/integrations/{provider}/watch")
async def start_mailbox_watch(
    provider: IntegrationProvider,
    request: IntegrationRequest,
    user_id: str = Depends(get_current_user),
    manager: IntegrationManager = Depends(get_integration_manager),
    watches: WatchManager = Depends(get_watch_manager)
):
    integration = await manager.get_integration(user_id, mail_provider(provider), request.integration_id)
    await watches.start_watch(integration)
    return {
        "success": True,
        "historyId": integration.watch_history_id,
        "subscriptionId": integration.watch_channel_id,
        "expiration": integration.watch_expiration,
    }


@router.post("/integrations/{provider}/watch/stop")
async def stop_mailbox_watch(
    provider: IntegrationProvider,
    request: IntegrationRequest,
    user_id: str = Depends(get_current_user),
    manager: IntegrationManager = Depends(get_integration_manager),
    watches: WatchManager = Depends(get_watch_manager)
):
    integration = await manager.get_integration(user_id, mail_provider(provider), request.integration_id)
    stopped = await watches.stop_watch(integration)
    return {"success": True, "stopped": stopped}


@router.post("/integrations/{provider}/send")
async def send_email(
    provider: IntegrationProvider,
    request: SendEmailRequest,
    user_id: str = Depends(get_current_user),
    controller: MailboxSyncController = Depends(get_mailbox_controller)
):
    email = OutgoingEmail(
        to=request.to,
        cc=request.cc,
        bcc=request.bcc,
        subject=request.subject,
        body=request.body,
        body_type=request.body_type,
        attachments=[
            EmailAttachment(filename=a.filename, content=a.content, mime_type=a.mime_type)
            for a in request.attachments
        ]
    )
    sent = await controller.send_email(
        user_id, mail_provider(provider), email,
        integration_id=request.integration_id,
        customer_id=request.customer_id
    )
    return {"success": True, **sent}


@router.post("/emails/mark-read")
async def mark_read(
    request: MarkReadRequest,
    user_id: str = Depends(get_current_user),
    controller: MailboxSyncController = Depends(get_mailbox_controller)
):
    warning = await controller.mark_read(user_id, request.email_id, request.is_read)
    if warning:
        return {"success": True, "warning": warning}
    return {"success": True}


# Business Profile endpoints
@router.post("/integrations/gmb/sync-reviews")
async def sync_reviews(
    request: IntegrationRequest,
    user_id: str = Depends(get_current_user),
    controller: ReviewSyncController = Depends(get_review_controller)
):
    result = await controller.sync_reviews(user_id, request.integration_id)
    return result.to_response()


@router.post("/integrations/gmb/reply")
async def reply_to_review(
    request: ReplyRequest,
    user_id: str = Depends(get_current_user),
    controller: ReviewSyncController = Depends(get_review_controller)
):
    await controller.reply_to_review(user_id, request.review_id, request.reply_text)
    return {"success": True}
