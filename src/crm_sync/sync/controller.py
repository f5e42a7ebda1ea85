"""
Calendar Synchronization Controller

This module defines the controller that mirrors CRM jobs into the user's Google
Calendar and merges provider-side edits back into jobs.

Push is keyed by the external-resource link table: a PENDING link is claimed before
the provider create, so an interrupted push is reconciled through the event's
private job marker on the next attempt instead of creating a second event.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from crm_sync.services.calendar_event import CalendarEvent, CalendarEventDraft
from crm_sync.sync.architecture import (
    ConflictResolution, EntityType, Integration, Job, LinkStatus, Provider, SyncResult,
    as_utc, utcnow
)
from crm_sync.sync.changes import BoundedWindowStrategy
from crm_sync.sync.errors import EntityNotFound, IntegrationNotFound, ProviderError, SyncError
from crm_sync.sync.storage import SyncStorageManager
from crm_sync.utils.config import settings as default_settings

# Set up logging
logger = logging.getLogger(__name__)

CUSTOMER_LINE_PREFIX = "Customer: "
CAR_LINE_PREFIX = "Car: "

# How far around a job's booking time to look for an orphaned mirror event
ORPHAN_SEARCH_DAYS = 366


def build_description(notes: Optional[str], customer_name: Optional[str], vehicle: Optional[str]) -> Optional[str]:
    lines = [
        notes,
        f"{CUSTOMER_LINE_PREFIX}{customer_name}" if customer_name else None,
        f"{CAR_LINE_PREFIX}{vehicle}" if vehicle else None,
    ]
    return "\n".join(line for line in lines if line) or None


def strip_generated_lines(description: Optional[str]) -> Optional[str]:
    """Remove the Customer/Car lines added on push, leaving the job notes"""
    if not description:
        return None
    lines = [
        line for line in description.splitlines()
        if not line.startswith((CUSTOMER_LINE_PREFIX, CAR_LINE_PREFIX))
    ]
    return "\n".join(lines).strip() or None


def merge_event_into_job(job: Job, event: CalendarEvent, resolution: ConflictResolution) -> bool:
    """
    Apply the provider-editable fields of an event to a job: start time of timed
    events and notes. Returns True if the job changed.
    """
    if resolution == ConflictResolution.NEWER_WINS and event.updated_at:
        if as_utc(job.updated_at) > as_utc(event.updated_at):
            return False

    changed = False
    if not event.all_day and as_utc(job.booking_datetime) != as_utc(event.start_time):
        job.booking_datetime = event.start_time
        changed = True

    notes = strip_generated_lines(event.description)
    if notes is not None and notes != job.notes:
        job.notes = notes
        changed = True

    if changed:
        job.last_synced_from_provider = utcnow()
    return changed


class CalendarSyncController:
    """
    Controller for synchronizing CRM jobs with a Google calendar
    """

    def __init__(self, storage: SyncStorageManager, manager, registry, settings=None):
        """Initialize the calendar sync controller"""
        self.storage = storage
        self.manager = manager
        self.registry = registry
        self.settings = settings or default_settings

    @property
    def adapter(self):
        return self.registry.get(Provider.CALENDAR)

    async def get_calendar_integration(self, user_id: str) -> Integration:
        integration = await self.storage.find_integration(user_id, Provider.CALENDAR)
        if not integration:
            raise IntegrationNotFound("No active Google Calendar integration found", provider=Provider.CALENDAR.value)
        return integration

    async def get_job(self, user_id: str, job_id: str) -> Job:
        job = await self.storage.get_job(job_id)
        if not job or job.user_id != user_id:
            raise EntityNotFound("Job not found", jobId=job_id)
        return job

    async def build_event_draft(self, job: Job) -> CalendarEventDraft:
        """Event body for a job: title, notes plus customer and car, customer address"""
        customer = await self.storage.get_customer(job.customer_id) if job.customer_id else None
        customer_name = customer.name if customer else None
        start, end = job.window(self.settings.DEFAULT_JOB_DURATION_HOURS)

        return CalendarEventDraft(
            summary=f"{job.service_name or 'Job'} - {customer_name or 'Customer'}",
            description=build_description(job.notes, customer_name, job.vehicle),
            location=customer.address if customer else None,
            start=start,
            end=end,
            time_zone=self.settings.CALENDAR_TIMEZONE,
            job_id=job.id
        )

    async def push_job(self, user_id: str, job_id: str) -> CalendarEvent:
        """
        Create or update the calendar event mirroring a job.
        Repeated pushes update the same event; a job never gets a second mirror.
        """
        integration = await self.get_calendar_integration(user_id)
        job = await self.get_job(user_id, job_id)
        access_token = await self.manager.ensure_fresh_token(integration)
        draft = await self.build_event_draft(job)
        calendar_id = integration.resource_id or "primary"
        adapter = self.adapter

        async with self.storage.lock(f"push:{integration.id}:{job.id}"):
            link, created = await self.storage.claim_link(integration.id, EntityType.JOB, job.id)
            event = None

            if link.status == LinkStatus.LINKED and link.external_id:
                try:
                    event = await adapter.update_event(access_token, calendar_id, link.external_id, draft)
                    logger.info(f"Updated event {link.external_id} for job {job.id}")
                except ProviderError as e:
                    if not e.not_found:
                        raise
                    logger.warning(f"Event {link.external_id} for job {job.id} was deleted in the calendar, recreating")

            elif not created:
                # A previous push claimed the link but never recorded the event
                orphans = await adapter.find_events_by_marker(
                    access_token, calendar_id, job.id,
                    draft.start - timedelta(days=ORPHAN_SEARCH_DAYS),
                    draft.end + timedelta(days=ORPHAN_SEARCH_DAYS)
                )
                if orphans:
                    event = await adapter.update_event(access_token, calendar_id, orphans[0].provider_id, draft)
                    logger.info(f"Recovered event {event.provider_id} for job {job.id} from an interrupted push")

            if event is None:
                event = await adapter.create_event(access_token, calendar_id, draft)
                logger.info(f"Created event {event.provider_id} for job {job.id}")

            link.last_pushed_at = utcnow()
            await self.storage.link_external(link, event.provider_id)

        await self._touch_last_sync(integration)
        return event

    async def _touch_last_sync(self, integration: Integration) -> None:
        try:
            await self.storage.update_integration(integration, last_sync_at=utcnow())
        except Exception as e:
            logger.warning(f"Failed to update last_sync_at for integration {integration.id}: {e}")

    async def delete_job(self, user_id: str, job_id: str, delete_from_calendar: bool = True) -> bool:
        """
        Delete a job, removing its calendar mirrors first.
        Mirror deletion is best effort; returns whether a calendar event was deleted.
        """
        job = await self.get_job(user_id, job_id)
        event_deleted = False

        for link in await self.storage.links_for_entity(EntityType.JOB, job.id):
            if delete_from_calendar and link.external_id:
                event_deleted = await self._delete_mirror(link.integration_id, link.external_id) or event_deleted
            await self.storage.delete_link(link)

        await self.storage.delete_job(job)
        logger.info(f"Deleted job {job.id}, calendar event deleted: {event_deleted}")
        return event_deleted

    async def _delete_mirror(self, integration_id: str, event_id: str) -> bool:
        integration = await self.storage.get_integration(integration_id)
        if not integration:
            return False
        try:
            access_token = await self.manager.ensure_fresh_token(integration)
            await self.adapter.delete_event(access_token, integration.resource_id or "primary", event_id)
            return True
        except ProviderError as e:
            if e.not_found:
                return True
            logger.warning(f"Failed to delete calendar event {event_id}: {e}")
        except SyncError as e:
            logger.warning(f"Failed to delete calendar event {event_id}: {e}")
        return False

    async def list_external_events(self, user_id: str, time_min: datetime, time_max: datetime) -> List[CalendarEvent]:
        """Calendar events in a range, excluding the ones mirrored from CRM jobs"""
        integration = await self.get_calendar_integration(user_id)
        return await self.external_events(integration, time_min, time_max)

    async def external_events(self, integration: Integration, time_min: datetime, time_max: datetime) -> List[CalendarEvent]:
        access_token = await self.manager.ensure_fresh_token(integration)
        events = await self.adapter.list_events(
            access_token, integration.resource_id or "primary", time_min, time_max
        )
        linked = await self.storage.linked_external_ids(integration.id)
        return [
            event for event in events
            if event.provider_id not in linked and not event.crm_job_id
        ]

    async def list_calendars(self, user_id: str) -> List[Dict[str, Any]]:
        integration = await self.get_calendar_integration(user_id)
        access_token = await self.manager.ensure_fresh_token(integration)
        return await self.adapter.list_calendars(access_token)

    async def pull_calendar_changes(self, integration: Integration) -> SyncResult:
        """
        Merge edits made in the calendar back into linked jobs (two-way sync only).
        A pull that finds nothing new writes nothing.
        """
        result = SyncResult()
        if not integration.two_way_sync_enabled:
            return result

        links = await self.storage.list_links(integration.id, EntityType.JOB, LinkStatus.LINKED)
        if not links:
            logger.debug(f"No linked jobs for integration {integration.id}")
            return result

        access_token = await self.manager.ensure_fresh_token(integration)
        strategy = BoundedWindowStrategy(self.settings.TWO_WAY_SYNC_WINDOW_DAYS)
        change_set = await strategy.changes(self.adapter, access_token, integration)
        events = {event.provider_id: event for event in change_set.items}

        for link in links:
            event = events.get(link.external_id)
            if event is None:
                continue

            job = await self.storage.get_job(link.entity_id)
            if job is None:
                result.skipped += 1
                continue

            if merge_event_into_job(job, event, integration.conflict_resolution):
                await self.storage.save_job(job)
                result.updated += 1
                logger.info(f"Updated job {job.id} from calendar event {event.provider_id}")
            else:
                result.skipped += 1

        return result
