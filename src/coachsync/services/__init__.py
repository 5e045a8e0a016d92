"""Calendar provider adapters."""

from .base import (
    BaseProviderAdapter, OAuthProviderAdapter, CalendarServiceError, AuthenticationError,
    ProviderRequestError, RateLimitError, FeedError
)
from .google import GoogleCalendarAdapter
from .outlook import OutlookCalendarAdapter
from .ics_feed import IcsFeedAdapter

__all__ = [
    'BaseProviderAdapter',
    'OAuthProviderAdapter',
    'CalendarServiceError',
    'AuthenticationError',
    'ProviderRequestError',
    'RateLimitError',
    'FeedError',
    'GoogleCalendarAdapter',
    'OutlookCalendarAdapter',
    'IcsFeedAdapter',
]
