import logging
from typing import List, Dict, Any, Optional
from datetime import datetime
from googleapiclient.errors import HttpError

from crm_sync.auth.google_auth import GoogleOAuthClient
from crm_sync.services.calendar_event import (
    CalendarEvent, CalendarEventDraft, JOB_MARKER_KEY, WatchChannel, parse_epoch_millis
)
from crm_sync.services.http_client import provider_error
from crm_sync.sync.architecture import Provider, TokenSet, as_utc

# Set up logging
logger = logging.getLogger(__name__)


def _rfc3339(value: datetime) -> str:
    return as_utc(value).isoformat().replace('+00:00', 'Z')


class GoogleCalendarService:
    """
    Google Calendar adapter. Every method is a single provider operation (list
    calls follow page tokens); callers pass an access token that is already fresh.
    """

    provider = Provider.CALENDAR

    def __init__(self, auth: GoogleOAuthClient):
        """Initialize the Google Calendar service"""
        self.auth = auth

    def _service(self, access_token: str):
        return self.auth.build_service('calendar', 'v3', access_token)

    async def exchange_code(self, code: str) -> TokenSet:
        return await self.auth.exchange_code(code)

    async def refresh(self, refresh_token: str) -> TokenSet:
        return await self.auth.refresh(refresh_token)

    async def list_calendars(self, access_token: str) -> List[Dict[str, Any]]:
        """List available calendars for the authenticated user"""
        try:
            calendar_list = self._service(access_token).calendarList().list().execute()
        except HttpError as error:
            logger.error(f"Error listing Google calendars: {error}")
            raise provider_error(self.provider.value, error) from error

        calendars = []
        for calendar in calendar_list.get('items', []):
            calendars.append({
                'id': calendar['id'],
                'summary': calendar.get('summary', 'Unnamed Calendar'),
                'timeZone': calendar.get('timeZone', 'UTC'),
                'accessRole': calendar.get('accessRole', ''),
                'primary': calendar.get('primary', False)
            })
        return calendars

    async def list_events(
        self,
        access_token: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        private_property: Optional[str] = None
    ) -> List[CalendarEvent]:
        """
        Get events from a Google calendar within [time_min, time_max]

        Args:
            access_token: Fresh Google access token
            calendar_id: ID of the calendar to fetch events from
            time_min: Lower bound (exclusive) for an event's end time
            time_max: Upper bound (exclusive) for an event's start time
            private_property: Optional "key=value" private extended property filter

        Returns:
            Normalized events, recurring events expanded
        """
        service = self._service(access_token)
        params = {
            'calendarId': calendar_id,
            'timeMin': _rfc3339(time_min),
            'timeMax': _rfc3339(time_max),
            'singleEvents': True,
            'orderBy': 'startTime',
            'maxResults': 250
        }
        if private_property:
            params['privateExtendedProperty'] = private_property

        events = []
        page_token = None
        while True:
            if page_token:
                params['pageToken'] = page_token
            try:
                result = service.events().list(**params).execute()
            except HttpError as error:
                logger.error(f"Error getting Google calendar events: {error}")
                raise provider_error(self.provider.value, error) from error

            for event in result.get('items', []):
                if event.get('status') == 'cancelled':
                    continue
                try:
                    events.append(CalendarEvent.from_google(event, calendar_id))
                except (KeyError, TypeError, ValueError) as event_error:
                    logger.error(f"Error processing Google event {event.get('id')}: {event_error}")

            page_token = result.get('nextPageToken')
            if not page_token:
                return events

    async def find_events_by_marker(
        self,
        access_token: str,
        calendar_id: str,
        job_id: str,
        time_min: datetime,
        time_max: datetime
    ) -> List[CalendarEvent]:
        """Events created for a job, found through their private job marker"""
        return await self.list_events(
            access_token, calendar_id, time_min, time_max,
            private_property=f"{JOB_MARKER_KEY}={job_id}"
        )

    async def create_event(self, access_token: str, calendar_id: str, draft: CalendarEventDraft) -> CalendarEvent:
        try:
            event = self._service(access_token).events().insert(
                calendarId=calendar_id,
                body=draft.to_google()
            ).execute()
        except HttpError as error:
            logger.error(f"Error creating Google calendar event: {error}")
            raise provider_error(self.provider.value, error) from error
        return CalendarEvent.from_google(event, calendar_id)

    async def update_event(
        self,
        access_token: str,
        calendar_id: str,
        event_id: str,
        draft: CalendarEventDraft
    ) -> CalendarEvent:
        try:
            event = self._service(access_token).events().update(
                calendarId=calendar_id,
                eventId=event_id,
                body=draft.to_google(include_reminders=False)
            ).execute()
        except HttpError as error:
            logger.error(f"Error updating Google calendar event {event_id}: {error}")
            raise provider_error(self.provider.value, error) from error
        return CalendarEvent.from_google(event, calendar_id)

    async def delete_event(self, access_token: str, calendar_id: str, event_id: str) -> None:
        try:
            self._service(access_token).events().delete(
                calendarId=calendar_id,
                eventId=event_id
            ).execute()
        except HttpError as error:
            logger.error(f"Error deleting Google calendar event {event_id}: {error}")
            raise provider_error(self.provider.value, error) from error

    async def start_watch(
        self,
        access_token: str,
        calendar_id: str,
        webhook_url: str,
        channel_id: str,
        channel_token: str,
        expiration: datetime
    ) -> WatchChannel:
        """Register a push channel for event changes on a calendar"""
        body = {
            'id': channel_id,
            'type': 'web_hook',
            'address': webhook_url,
            'token': channel_token,
            'expiration': str(int(as_utc(expiration).timestamp() * 1000))
        }
        try:
            response = self._service(access_token).events().watch(
                calendarId=calendar_id,
                body=body
            ).execute()
        except HttpError as error:
            logger.error(f"Error starting Google calendar watch: {error}")
            raise provider_error(self.provider.value, error) from error

        return WatchChannel(
            channel_id=response.get('id', channel_id),
            resource_id=response.get('resourceId'),
            expiration=parse_epoch_millis(response.get('expiration')),
            token=channel_token
        )

    async def stop_watch(self, access_token: str, channel_id: str, resource_id: str) -> None:
        try:
            self._service(access_token).channels().stop(
                body={'id': channel_id, 'resourceId': resource_id}
            ).execute()
        except HttpError as error:
            logger.error(f"Error stopping Google calendar watch {channel_id}: {error}")
            raise provider_error(self.provider.value, error) from error
