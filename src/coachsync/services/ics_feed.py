"""Read-only calendar accounts backed by a published ICS feed."""

from typing import List

import httpx

from .base import BaseProviderAdapter, FeedError
from ..ics import events_from_ics
from ..models import CalendarAccount, CalendarEvent, EventProvider


class IcsFeedAdapter(BaseProviderAdapter):
    """Imports the expanded occurrences of an ICS feed."""

    provider = EventProvider.ICS

    @staticmethod
    def feed_url(account: CalendarAccount) -> str:
        url = (account.ics_url or '').strip()
        if not url:
            raise FeedError(f"ICS account {account.id} has no feed URL")
        if url.lower().startswith('webcal://'):
            url = 'https://' + url[len('webcal://'):]
        return url

    async def fetch_events(self, account: CalendarAccount) -> List[CalendarEvent]:
        url = self.feed_url(account)
        try:
            response = await self.http.get(url, follow_redirects=True)
        except httpx.HTTPError as e:
            raise FeedError(f"Could not fetch ICS feed: {e}") from e
        if not response.is_success:
            raise FeedError(f"Could not fetch ICS feed ({response.status_code})")

        content = response.text
        if not content.strip():
            raise FeedError("ICS feed is empty")

        events = events_from_ics(
            content,
            account,
            cap=self.config.max_occurrences,
            default_tz=self.settings.timezone,
        )
        self.logger.info(f"Expanded {len(events)} ICS occurrences for account {account.id}")
        return events

    async def delete_remote(self, account: CalendarAccount, external_id: str) -> bool:
        # Feeds are read-only
        return False
