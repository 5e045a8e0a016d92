"""Google Calendar import over the Calendar v3 REST API."""

from typing import Any, Dict, List, Optional
from urllib.parse import quote

from .base import AuthenticationError, OAuthProviderAdapter
from ..models import (
    CalendarAccount, CalendarEvent, EventProvider, DEFAULT_DIFFICULTY, DEFAULT_EVENT_TYPE,
    DEFAULT_TITLE, minutes_between, parse_timestamp, to_iso, utc_now
)


def google_time(value: Optional[Dict[str, Any]]):
    """Instant of a Google ``{date|dateTime}`` object; all-day dates are UTC midnight."""
    if not isinstance(value, dict):
        return None
    if value.get('dateTime'):
        return parse_timestamp(value['dateTime'])
    if value.get('date'):
        return parse_timestamp(f"{value['date']}T00:00:00.000Z")
    return None


class GoogleCalendarAdapter(OAuthProviderAdapter):
    """Imports one Google calendar of an account."""

    provider = EventProvider.GOOGLE

    TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
    EVENTS_ENDPOINT = "https://www.googleapis.com/calendar/v3/calendars"
    DEFAULT_CALENDAR_ID = "primary"
    PAGE_SIZE = 100

    def token_endpoint(self, account: CalendarAccount) -> str:
        return self.TOKEN_ENDPOINT

    def refresh_form(self, account: CalendarAccount) -> Dict[str, str]:
        client_id = account.client_id or self.settings.google_client_id
        if not client_id:
            raise AuthenticationError("Google client id is not configured")
        return {
            'client_id': client_id,
            'grant_type': 'refresh_token',
            'refresh_token': account.refresh_token or '',
        }

    def events_url(self, account: CalendarAccount) -> str:
        calendar_id = quote(account.calendar_id or self.DEFAULT_CALENDAR_ID, safe='')
        return f"{self.EVENTS_ENDPOINT}/{calendar_id}/events"

    def delete_url(self, account: CalendarAccount, external_id: str) -> str:
        return f"{self.events_url(account)}/{quote(external_id, safe='')}"

    async def fetch_events(self, account: CalendarAccount) -> List[CalendarEvent]:
        access_token = await self.ensure_access_token(account)
        time_min, time_max, is_first_sync = self.time_window(account)

        events: List[CalendarEvent] = []
        page_token = None
        while True:
            params = {
                'singleEvents': 'true',
                'orderBy': 'startTime',
                'timeMin': to_iso(time_min),
                'timeMax': to_iso(time_max),
                'maxResults': str(self.PAGE_SIZE),
            }
            if page_token:
                params['pageToken'] = page_token

            payload = await self._get_json(self.events_url(account), access_token, params=params)
            items = payload.get('items')
            for item in items if isinstance(items, list) else []:
                if not isinstance(item, dict) or item.get('status') == 'cancelled':
                    continue
                event = self.map_item(item, account)
                if event is None:
                    continue
                if is_first_sync and event.start > time_max:
                    continue
                events.append(event)

            next_token = payload.get('nextPageToken')
            page_token = next_token if isinstance(next_token, str) and next_token else None
            if not page_token:
                break

        self.logger.info(f"Fetched {len(events)} Google events for account {account.id}")
        return events

    def map_item(self, item: Dict[str, Any], account: CalendarAccount) -> Optional[CalendarEvent]:
        start = google_time(item.get('start'))
        if start is None or not item.get('id'):
            return None
        end = google_time(item.get('end')) or start
        return CalendarEvent(
            title=item.get('summary') or DEFAULT_TITLE,
            notes=item.get('description'),
            date=start,
            start=start,
            end=end,
            duration_minutes=max(1, minutes_between(start, end)),
            event_type=DEFAULT_EVENT_TYPE,
            difficulty=DEFAULT_DIFFICULTY,
            color=account.color,
            provider=EventProvider.GOOGLE,
            account_id=account.id,
            google_id=item['id'],
            updated_at=parse_timestamp(item.get('updated')) or utc_now(),
        )
