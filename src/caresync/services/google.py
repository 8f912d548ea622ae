"""Google Calendar transport with async support and uniform error classification."""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
import httplib2
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .base import (
    AuthenticationError, BaseCalendarService, CalendarNotFoundError, CalendarServiceError,
    DuplicateError, EventNotFoundError, RateLimitError, TokenInvalidError, TransientError,
    logger as base_logger,
)
from ..config import Settings

# Query parameters that must never reach the logs.
REDACTED_PARAMS = frozenset({'access_token', 'token', 'syncToken', 'pageToken'})

RATE_LIMIT_REASONS = frozenset({'rateLimitExceeded', 'userRateLimitExceeded', 'quotaExceeded'})


def redact_params(params: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of request parameters that is safe to log."""
    safe = {}
    for key, value in params.items():
        if key in REDACTED_PARAMS:
            safe[key] = '<redacted>' if value else None
        elif key == 'body':
            continue
        else:
            safe[key] = value
    return safe


def _error_details(error: HttpError) -> Dict[str, Any]:
    try:
        payload = json.loads(error.content.decode('utf-8'))
    except (AttributeError, UnicodeDecodeError, ValueError):
        return {}
    return payload.get('error', {}) if isinstance(payload, dict) else {}


def classify_http_error(
    error: HttpError,
    context: Dict[str, Any],
    *,
    not_found: type = EventNotFoundError,
    gone_means_token_invalid: bool = False,
) -> CalendarServiceError:
    """Translate a googleapiclient ``HttpError`` into the sync error taxonomy.

    Args:
        error: Raised HTTP error
        context: Sanitized request context for logging
        not_found: Exception type used for 404
        gone_means_token_invalid: Treat 410 as an expired sync cursor
            instead of a vanished resource

    Returns:
        Classified exception ready to raise
    """
    status = int(error.resp.status)
    details = _error_details(error)
    message = details.get('message') or str(error)
    reasons = {item.get('reason') for item in details.get('errors', []) if isinstance(item, dict)}
    code = details.get('status') or next(iter(reasons), None)
    context = {**context, 'payload': details}

    if status == 410 and gone_means_token_invalid:
        return TokenInvalidError(message, status, code, context)
    if status in (404, 410):
        return not_found(message, status, code, context)
    if status == 401:
        return AuthenticationError(message, status, code, context)
    if status == 409 and ('duplicate' in reasons or 'duplicate' in message.lower()):
        return DuplicateError(message, status, code or 'duplicate', context)
    if status == 429 or (status == 403 and reasons & RATE_LIMIT_REASONS):
        return RateLimitError(message, status, code, context)
    if status >= 500:
        return TransientError(message, status, code, context)
    return CalendarServiceError(message, status, code, context)


class GoogleCalendarService(BaseCalendarService):
    """Google Calendar v3 client bound to one user's access token."""

    def __init__(self, settings: Settings, access_token: str):
        """Initialize Google Calendar service.

        Args:
            settings: Application settings
            access_token: Valid OAuth access token for the user
        """
        self.settings = settings
        self.logger = base_logger.getChild('google')
        self._credentials = Credentials(token=access_token)
        self.service = build('calendar', 'v3', credentials=self._credentials, cache_discovery=False)
        self._timeout = settings.request_timeout_seconds
        self._semaphore = asyncio.Semaphore(settings.max_concurrent_requests)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(RateLimitError),
        reraise=True,
    )
    async def _execute(
        self,
        operation: str,
        make_request: Callable[[], Any],
        params: Dict[str, Any],
        **classify_kwargs: Any,
    ) -> Any:
        """Run a request in the default executor under a bounded deadline.

        Each call gets its own HTTP transport because httplib2 connections
        are not thread-safe. Rate-limited calls are retried here; other
        transient failures surface to the caller.
        """
        context = {'operation': operation, **redact_params(params)}

        def run():
            http = AuthorizedHttp(self._credentials, http=httplib2.Http(timeout=self._timeout))
            return make_request().execute(http=http)

        async with self._semaphore:
            try:
                result = await asyncio.wait_for(
                    asyncio.get_event_loop().run_in_executor(None, run),
                    timeout=self._timeout,
                )
            except HttpError as e:
                error = classify_http_error(e, context, **classify_kwargs)
                self.logger.warning(f"Google API request failed: {error.to_log()}")
                raise error from e
            except asyncio.TimeoutError as e:
                raise TransientError(
                    f"Google API request timed out after {self._timeout}s", code='timeout', context=context
                ) from e
            except (OSError, httplib2.HttpLib2Error) as e:
                raise TransientError(f"Network error: {e}", code='network', context=context) from e

        if isinstance(result, dict) and 'items' in result:
            summary = {'items': len(result['items']), 'has_next_page': bool(result.get('nextPageToken'))}
        else:
            summary = sorted(result)[:5] if isinstance(result, dict) else None
        self.logger.debug(f"Google API request succeeded: {context} -> {summary}")
        return result

    async def get_event(self, calendar_id: str, event_id: str) -> Dict[str, Any]:
        params = {'calendarId': calendar_id, 'eventId': event_id}
        return await self._execute(
            'events.get', lambda: self.service.events().get(**params), params
        )

    async def insert_event(self, calendar_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        params = {'calendarId': calendar_id, 'body': body}
        return await self._execute(
            'events.insert', lambda: self.service.events().insert(**params), params,
            not_found=CalendarNotFoundError,
        )

    async def patch_event(self, calendar_id: str, event_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        params = {'calendarId': calendar_id, 'eventId': event_id, 'body': body}
        return await self._execute(
            'events.patch', lambda: self.service.events().patch(**params), params
        )

    async def list_events_page(
        self,
        calendar_id: str,
        *,
        sync_token: Optional[str] = None,
        page_token: Optional[str] = None,
        time_min: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            'calendarId': calendar_id,
            'showDeleted': True,
            'singleEvents': True,
            'maxResults': 2500,
        }
        if sync_token:
            params['syncToken'] = sync_token
        if page_token:
            params['pageToken'] = page_token
        # timeMin cannot be combined with syncToken
        if time_min and not sync_token:
            params['timeMin'] = time_min
        return await self._execute(
            'events.list', lambda: self.service.events().list(**params), params,
            not_found=CalendarNotFoundError,
            gone_means_token_invalid=True,
        )

    async def move_event(self, calendar_id: str, event_id: str, destination: str) -> Dict[str, Any]:
        params = {'calendarId': calendar_id, 'eventId': event_id, 'destination': destination}
        return await self._execute(
            'events.move', lambda: self.service.events().move(**params), params
        )

    async def get_calendar(self, calendar_id: str) -> Dict[str, Any]:
        params = {'calendarId': calendar_id}
        return await self._execute(
            'calendars.get', lambda: self.service.calendars().get(**params), params,
            not_found=CalendarNotFoundError,
        )

    async def list_calendars(self) -> List[Dict[str, Any]]:
        calendars: List[Dict[str, Any]] = []
        page_token = None
        while True:
            params: Dict[str, Any] = {'maxResults': 250}
            if page_token:
                params['pageToken'] = page_token
            page = await self._execute(
                'calendarList.list', lambda: self.service.calendarList().list(**params), params
            )
            calendars.extend(page.get('items', []))
            page_token = page.get('nextPageToken')
            if not page_token:
                return calendars

    async def create_calendar(self, summary: str, time_zone: str) -> Dict[str, Any]:
        params = {'body': {'summary': summary, 'timeZone': time_zone}}
        return await self._execute(
            'calendars.insert', lambda: self.service.calendars().insert(**params), params
        )

    async def list_acl(self, calendar_id: str) -> List[Dict[str, Any]]:
        rules: List[Dict[str, Any]] = []
        page_token = None
        while True:
            params: Dict[str, Any] = {'calendarId': calendar_id}
            if page_token:
                params['pageToken'] = page_token
            page = await self._execute(
                'acl.list', lambda: self.service.acl().list(**params), params,
                not_found=CalendarNotFoundError,
            )
            rules.extend(page.get('items', []))
            page_token = page.get('nextPageToken')
            if not page_token:
                return rules

    async def insert_acl(self, calendar_id: str, email: str, role: str) -> Dict[str, Any]:
        params = {
            'calendarId': calendar_id,
            'sendNotifications': False,
            'body': {'role': role, 'scope': {'type': 'user', 'value': email}},
        }
        return await self._execute(
            'acl.insert', lambda: self.service.acl().insert(**params), params,
            not_found=CalendarNotFoundError,
        )

    async def watch_events(
        self,
        calendar_id: str,
        channel_id: str,
        address: str,
        token: str,
        ttl_seconds: int,
    ) -> Dict[str, Any]:
        params = {
            'calendarId': calendar_id,
            'body': {
                'id': channel_id,
                'type': 'web_hook',
                'address': address,
                'token': token,
                'params': {'ttl': str(ttl_seconds)},
            },
        }
        return await self._execute(
            'events.watch', lambda: self.service.events().watch(**params), params,
            not_found=CalendarNotFoundError,
        )

    async def stop_channel(self, channel_id: str, resource_id: str) -> None:
        params = {'body': {'id': channel_id, 'resourceId': resource_id}}
        await self._execute(
            'channels.stop', lambda: self.service.channels().stop(**params), params
        )
