import logging
from datetime import datetime, timedelta
from typing import List, Optional

from crm_sync.sync.architecture import Conflict, ConflictType, Provider, as_utc
from crm_sync.sync.storage import SyncStorageManager
from crm_sync.utils.config import settings as default_settings

# Set up logging
logger = logging.getLogger(__name__)


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open interval overlap; touching intervals do not overlap"""
    return as_utc(a_start) < as_utc(b_end) and as_utc(a_end) > as_utc(b_start)


class ConflictChecker:
    """Finds CRM jobs and calendar events that overlap a proposed booking"""

    def __init__(self, storage: SyncStorageManager, calendar_controller, settings=None):
        self.storage = storage
        self.calendar = calendar_controller
        self.settings = settings or default_settings

    async def check_conflict(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        exclude_job_id: Optional[str] = None
    ) -> List[Conflict]:
        start, end = as_utc(start), as_utc(end)
        conflicts = await self._job_conflicts(user_id, start, end, exclude_job_id)

        integration = await self.storage.find_integration(user_id, Provider.CALENDAR)
        if integration:
            lookback = timedelta(hours=self.settings.CONFLICT_LOOKBACK_HOURS)
            events = await self.calendar.external_events(integration, start - lookback, end)
            for event in events:
                if overlaps(event.start_time, event.end_time, start, end):
                    conflicts.append(Conflict(
                        type=ConflictType.EXTERNAL,
                        title=event.title or "(No title)",
                        start=event.start_time,
                        end=event.end_time
                    ))

        return conflicts

    async def _job_conflicts(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        exclude_job_id: Optional[str]
    ) -> List[Conflict]:
        conflicts = []
        for job in await self.storage.list_jobs(user_id):
            if job.id == exclude_job_id:
                continue
            job_start, job_end = job.window(self.settings.DEFAULT_JOB_DURATION_HOURS)
            if not overlaps(job_start, job_end, start, end):
                continue

            customer = await self.storage.get_customer(job.customer_id) if job.customer_id else None
            conflicts.append(Conflict(
                type=ConflictType.INTERNAL,
                title=f"{customer.name if customer and customer.name else 'Customer'} - {job.service_name or 'Job'}",
                start=job_start,
                end=job_end
            ))
        return conflicts
