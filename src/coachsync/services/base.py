"""Base provider adapter interface with async support."""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
import logging

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from ..config import Settings
from ..database import AccountRepository, EventStore
from ..models import (
    AccountStatus, CalendarAccount, CalendarEvent, EventProvider, TokenBundle,
    parse_timestamp, to_iso, utc_now
)

logger = logging.getLogger(__name__)


class CalendarServiceError(Exception):
    """Base exception for calendar provider errors."""
    pass


class AuthenticationError(CalendarServiceError):
    """Access token could not be obtained or refreshed."""
    pass


class ProviderRequestError(CalendarServiceError):
    """A provider API request failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(ProviderRequestError):
    """Rate limiting errors."""
    pass


class FeedError(CalendarServiceError):
    """An ICS feed could not be fetched or was empty."""
    pass


ImportCallback = Callable[[], Awaitable[Any]]


def response_json(response: httpx.Response) -> Dict[str, Any]:
    """Decode a JSON object body, tolerating empty or non-JSON bodies."""
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class BaseProviderAdapter(ABC):
    """Imports the events of one external calendar account into the store.

    Subclasses only fetch and map provider items; the status bookkeeping and
    the replace-by-provider pass are shared.
    """

    provider: EventProvider

    def __init__(
        self,
        settings: Settings,
        store: EventStore,
        accounts: AccountRepository,
        http_client: httpx.AsyncClient,
        on_imported: Optional[ImportCallback] = None,
    ):
        """Initialize provider adapter.

        Args:
            settings: Application settings
            store: Local event store receiving imported events
            accounts: Account repository for status and token updates
            http_client: Shared HTTP client
            on_imported: Coroutine run after every successful import
        """
        self.settings = settings
        self.config = settings.sync_config
        self.store = store
        self.accounts = accounts
        self.http = http_client
        self.on_imported = on_imported
        self.logger = logger.getChild(self.provider.value)

    @abstractmethod
    async def fetch_events(self, account: CalendarAccount) -> List[CalendarEvent]:
        """Fetch and map the account's current events.

        Raises:
            CalendarServiceError: If the provider cannot be read
        """
        pass

    @abstractmethod
    async def delete_remote(self, account: CalendarAccount, external_id: str) -> bool:
        """Delete an event at the provider; returns False when it did not happen."""
        pass

    def time_window(self, account: CalendarAccount) -> Tuple[datetime, datetime, bool]:
        """Import window ``(time_min, time_max, is_first_sync)``.

        The first import of an account uses a short look-ahead so that it
        finishes quickly; later imports use the full window.
        """
        now = utc_now()
        time_min = now - timedelta(days=self.config.lookback_days)
        is_first_sync = account.last_sync is None
        days_ahead = self.config.first_sync_lookahead_days if is_first_sync else self.config.lookahead_days
        time_max = max(time_min, now + timedelta(days=days_ahead))
        return time_min, time_max, is_first_sync

    async def pull(self, account: CalendarAccount) -> Dict[str, int]:
        """Import the account, replacing its previously imported events.

        Raises:
            CalendarServiceError: If fetching failed; the account is marked as errored
        """
        self.accounts.update_status(account.id, AccountStatus.SYNCING)
        try:
            events = await self.fetch_events(account)
            stats = await self.store.replace_provider_events(self.provider, account.id, events)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            self.logger.error(f"Import of account {account.id} failed: {message}")
            self.accounts.update_status(account.id, AccountStatus.ERROR, error_message=message)
            raise

        self.accounts.update_status(account.id, AccountStatus.IDLE, last_sync=utc_now())
        account.last_sync = utc_now()
        account.status = AccountStatus.IDLE
        account.error_message = None

        if self.on_imported is not None:
            try:
                await self.on_imported()
            except Exception as e:
                self.logger.warning(f"Event sync after import of {account.id} failed: {e}")
        return stats


class OAuthProviderAdapter(BaseProviderAdapter):
    """Provider adapter authenticated with OAuth bearer tokens.

    Access tokens are refreshed directly against the provider's token
    endpoint and, when that fails, through the backend, which holds the
    client secret.
    """

    @abstractmethod
    def token_endpoint(self, account: CalendarAccount) -> str:
        pass

    @abstractmethod
    def refresh_form(self, account: CalendarAccount) -> Dict[str, str]:
        """Form fields of a refresh-token grant.

        Raises:
            AuthenticationError: If no client id is configured
        """
        pass

    @abstractmethod
    def delete_url(self, account: CalendarAccount, external_id: str) -> str:
        pass

    async def ensure_access_token(self, account: CalendarAccount) -> str:
        """Return a usable access token, refreshing it when close to expiry.

        Raises:
            AuthenticationError: If neither refresh path yields a token
        """
        margin = timedelta(seconds=self.config.token_expiry_margin_seconds)
        expires_at = account.access_token_expires_at
        if account.access_token and expires_at and expires_at > utc_now() + margin:
            return account.access_token

        if not account.refresh_token:
            self.logger.warning(f"No refresh token for account {account.id}, asking the backend")
        else:
            try:
                tokens = await self._refresh_directly(account)
            except AuthenticationError as e:
                self.logger.warning(f"Direct token refresh for {account.id} failed, asking the backend: {e}")
            else:
                self._store_tokens(account, tokens)
                await self._mirror_tokens(account, tokens)
                return tokens.access_token

        tokens = await self._refresh_via_backend(account)
        if not tokens.refresh_token:
            raise AuthenticationError(f"No refresh token available for account {account.id}")
        self._store_tokens(account, tokens)
        if tokens.expires_at is not None:
            await self._mirror_tokens(account, tokens)
        return tokens.access_token

    async def _refresh_directly(self, account: CalendarAccount) -> TokenBundle:
        form = self.refresh_form(account)
        try:
            response = await self.http.post(self.token_endpoint(account), data=form)
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Token endpoint unreachable: {e}") from e

        data = response_json(response)
        if not response.is_success:
            raise AuthenticationError(
                data.get('error_description') or data.get('error') or "Token refresh failed"
            )
        access_token = data.get('access_token')
        if not access_token:
            raise AuthenticationError("Token response carried no access token")

        expires_in = data.get('expires_in')
        if not isinstance(expires_in, (int, float)) or isinstance(expires_in, bool):
            expires_in = 3600
        return TokenBundle(
            access_token=access_token,
            refresh_token=data.get('refresh_token') or account.refresh_token,
            expires_at=utc_now() + timedelta(seconds=expires_in),
            scope=data.get('scope') or account.scope,
            raw_payload=data,
        )

    async def _refresh_via_backend(self, account: CalendarAccount) -> TokenBundle:
        url = self.settings.account_endpoint(account.id, 'refresh')
        try:
            response = await self.http.post(url)
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Backend token refresh unreachable: {e}") from e

        data = response_json(response)
        if not response.is_success:
            details = data.get('details')
            message = details.get('message') if isinstance(details, dict) else None
            raise AuthenticationError(message or data.get('error') or "Backend token refresh failed")
        access_token = data.get('accessToken')
        if not access_token:
            raise AuthenticationError("Backend token refresh carried no access token")

        expires_at = parse_timestamp(data.get('expiresAt'))
        expires_in = data.get('expiresIn')
        if expires_at is None and isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool):
            expires_at = utc_now() + timedelta(seconds=expires_in)
        return TokenBundle(
            access_token=access_token,
            refresh_token=data.get('refreshToken') or account.refresh_token,
            expires_at=expires_at,
            scope=data.get('scope') or account.scope,
            tenant_id=data.get('tenantId') or account.tenant_id,
        )

    def _store_tokens(self, account: CalendarAccount, tokens: TokenBundle) -> None:
        self.accounts.update_tokens(account.id, tokens)
        account.access_token = tokens.access_token
        account.refresh_token = tokens.refresh_token or account.refresh_token
        account.access_token_expires_at = tokens.expires_at
        account.scope = tokens.scope or account.scope
        account.tenant_id = tokens.tenant_id or account.tenant_id

    async def _mirror_tokens(self, account: CalendarAccount, tokens: TokenBundle) -> None:
        """Best-effort copy of refreshed tokens to the backend."""
        body: Dict[str, Any] = {'accessToken': tokens.access_token}
        if tokens.refresh_token:
            body['refreshToken'] = tokens.refresh_token
        if tokens.expires_at is not None:
            body['expiresAt'] = to_iso(tokens.expires_at)
        if tokens.scope:
            body['scope'] = tokens.scope
        if tokens.raw_payload is not None:
            body['rawPayload'] = tokens.raw_payload
        try:
            response = await self.http.patch(self.settings.account_endpoint(account.id, 'tokens'), json=body)
        except httpx.HTTPError as e:
            self.logger.warning(f"Could not store refreshed tokens for {account.id} on the backend: {e}")
            return
        if not response.is_success:
            self.logger.warning(
                f"Backend rejected refreshed tokens for {account.id} ({response.status_code})"
            )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((RateLimitError, httpx.TransportError)),
        reraise=True,
    )
    async def _get_json(
        self,
        url: str,
        access_token: str,
        params: Optional[Dict[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        request_headers = {'Authorization': f"Bearer {access_token}"}
        request_headers.update(headers or {})
        response = await self.http.get(url, params=params, headers=request_headers)
        data = response_json(response)
        if response.status_code == 429:
            self.logger.warning(f"{self.provider.value} API rate limited, retrying...")
            raise RateLimitError("Rate limited", status_code=429)
        if not response.is_success:
            error = data.get('error')
            message = error.get('message') if isinstance(error, dict) else error
            raise ProviderRequestError(
                message or f"{self.provider.value} listing failed ({response.status_code})",
                status_code=response.status_code,
            )
        return data

    async def delete_remote(self, account: CalendarAccount, external_id: str) -> bool:
        if not external_id:
            return False
        try:
            access_token = await self.ensure_access_token(account)
            response = await self.http.delete(
                self.delete_url(account, external_id),
                headers={'Authorization': f"Bearer {access_token}"},
            )
        except (CalendarServiceError, httpx.HTTPError) as e:
            self.logger.warning(f"Could not delete {self.provider.value} event {external_id}: {e}")
            return False
        if response.status_code in (404, 410):
            return True
        if not response.is_success:
            self.logger.warning(
                f"Could not delete {self.provider.value} event {external_id} ({response.status_code})"
            )
            return False
        return True
