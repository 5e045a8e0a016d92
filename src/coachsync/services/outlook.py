"""Outlook calendar import over Microsoft Graph."""

from typing import Any, Dict, List, Optional
from urllib.parse import quote

from .base import AuthenticationError, OAuthProviderAdapter
from ..models import (
    CalendarAccount, CalendarEvent, EventProvider, DEFAULT_DIFFICULTY, DEFAULT_EVENT_TYPE,
    DEFAULT_TITLE, minutes_between, parse_timestamp, to_iso, utc_now
)


class OutlookCalendarAdapter(OAuthProviderAdapter):
    """Imports the default Outlook calendar view of an account."""

    provider = EventProvider.OUTLOOK

    GRAPH_ENDPOINT = "https://graph.microsoft.com/v1.0"
    PAGE_SIZE = 50

    def token_endpoint(self, account: CalendarAccount) -> str:
        tenant = account.tenant_id or self.settings.outlook_tenant_id
        return f"https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"

    def refresh_form(self, account: CalendarAccount) -> Dict[str, str]:
        client_id = account.client_id or self.settings.outlook_client_id
        if not client_id:
            raise AuthenticationError("Outlook client id is not configured")
        return {
            'client_id': client_id,
            'grant_type': 'refresh_token',
            'refresh_token': account.refresh_token or '',
            'scope': ' '.join(self.settings.outlook_scopes),
        }

    def delete_url(self, account: CalendarAccount, external_id: str) -> str:
        return f"{self.GRAPH_ENDPOINT}/me/events/{quote(external_id, safe='')}"

    async def fetch_events(self, account: CalendarAccount) -> List[CalendarEvent]:
        access_token = await self.ensure_access_token(account)
        time_min, time_max, is_first_sync = self.time_window(account)
        headers = {'Prefer': 'outlook.timezone="UTC"'}

        url: Optional[str] = f"{self.GRAPH_ENDPOINT}/me/calendarview"
        params: Optional[Dict[str, str]] = {
            'startdatetime': to_iso(time_min),
            'enddatetime': to_iso(time_max),
            '$top': str(self.PAGE_SIZE),
            '$orderby': 'start/dateTime',
        }

        events: List[CalendarEvent] = []
        while url:
            payload = await self._get_json(url, access_token, params=params, headers=headers)
            items = payload.get('value')
            for item in items if isinstance(items, list) else []:
                if not isinstance(item, dict) or item.get('isCancelled'):
                    continue
                event = self.map_item(item, account)
                if event is None:
                    continue
                if is_first_sync and event.start > time_max:
                    continue
                events.append(event)

            next_link = payload.get('@odata.nextLink')
            url = next_link if isinstance(next_link, str) and next_link else None
            # nextLink already carries the query
            params = None

        self.logger.info(f"Fetched {len(events)} Outlook events for account {account.id}")
        return events

    def map_item(self, item: Dict[str, Any], account: CalendarAccount) -> Optional[CalendarEvent]:
        start = parse_timestamp((item.get('start') or {}).get('dateTime'))
        if start is None or not item.get('id'):
            return None
        end = parse_timestamp((item.get('end') or {}).get('dateTime')) or start
        body = item.get('body') or {}
        return CalendarEvent(
            title=item.get('subject') or DEFAULT_TITLE,
            notes=item.get('bodyPreview') or body.get('content'),
            date=start,
            start=start,
            end=end,
            duration_minutes=max(1, minutes_between(start, end)),
            event_type=DEFAULT_EVENT_TYPE,
            difficulty=DEFAULT_DIFFICULTY,
            color=account.color,
            provider=EventProvider.OUTLOOK,
            account_id=account.id,
            outlook_id=item['id'],
            updated_at=parse_timestamp(item.get('lastModifiedDateTime')) or utc_now(),
        )
