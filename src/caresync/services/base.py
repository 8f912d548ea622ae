"""Base calendar service interface and error taxonomy."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Classification every caller branches on instead of raw status codes."""

    TRANSIENT = "transient"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    TOKEN_INVALID = "token_invalid"
    AUTH_INVALID = "auth_invalid"
    DUPLICATE = "duplicate"
    FATAL = "fatal"


class CalendarServiceError(Exception):
    """Base exception for calendar service errors.

    Carries the HTTP status (when there was one), a machine-readable code and
    free-form context for structured logging.
    """

    kind = ErrorKind.FATAL

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code or self.kind.value
        self.context = context or {}

    def to_log(self) -> Dict[str, Any]:
        return {
            'error': self.message,
            'kind': self.kind.value,
            'status': self.status,
            'code': self.code,
            **self.context,
        }


class TransientError(CalendarServiceError):
    """Network failures, timeouts, rate limiting and 5xx responses."""

    kind = ErrorKind.TRANSIENT


class RateLimitError(TransientError):
    pass


class ConflictError(CalendarServiceError):
    """Remote copy is newer than the last state this side saw."""

    kind = ErrorKind.CONFLICT


class NotFoundError(CalendarServiceError):
    kind = ErrorKind.NOT_FOUND


class CalendarNotFoundError(NotFoundError):
    pass


class EventNotFoundError(NotFoundError):
    pass


class TokenInvalidError(CalendarServiceError):
    """The incremental sync cursor was rejected (HTTP 410)."""

    kind = ErrorKind.TOKEN_INVALID


class AuthenticationError(CalendarServiceError):
    """Credential revoked or expired beyond refresh; user must re-consent."""

    kind = ErrorKind.AUTH_INVALID


class DuplicateError(CalendarServiceError):
    """Provider reports the resource already exists."""

    kind = ErrorKind.DUPLICATE


class BaseCalendarService(ABC):
    """Remote calendar operations used by the sync pipelines.

    Events, calendars and ACL rules are exchanged as the provider's JSON
    resources (plain dicts).
    """

    @abstractmethod
    async def get_event(self, calendar_id: str, event_id: str) -> Dict[str, Any]:
        """Get a specific event by ID.

        Raises:
            EventNotFoundError: If event not found
        """

    @abstractmethod
    async def insert_event(self, calendar_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def patch_event(self, calendar_id: str, event_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Patch an existing event.

        Raises:
            EventNotFoundError: If event not found
        """

    @abstractmethod
    async def list_events_page(
        self,
        calendar_id: str,
        *,
        sync_token: Optional[str] = None,
        page_token: Optional[str] = None,
        time_min: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Fetch one page of events, including deleted ones.

        Raises:
            TokenInvalidError: If the sync token is no longer valid
        """

    @abstractmethod
    async def move_event(self, calendar_id: str, event_id: str, destination: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_calendar(self, calendar_id: str) -> Dict[str, Any]:
        """Get calendar metadata.

        Raises:
            CalendarNotFoundError: If the calendar does not exist
        """

    @abstractmethod
    async def list_calendars(self) -> List[Dict[str, Any]]:
        """List every calendar on the user's calendar list, across all pages."""

    @abstractmethod
    async def create_calendar(self, summary: str, time_zone: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def list_acl(self, calendar_id: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def insert_acl(self, calendar_id: str, email: str, role: str) -> Dict[str, Any]:
        """Grant ``role`` on a calendar to a user without sending a notification.

        Raises:
            DuplicateError: If the grant already exists
        """

    async def close(self) -> None:
        """Release transport resources."""

    @abstractmethod
    async def watch_events(
        self,
        calendar_id: str,
        channel_id: str,
        address: str,
        token: str,
        ttl_seconds: int,
    ) -> Dict[str, Any]:
        """Open a push-notification channel on a calendar's events.

        Returns:
            The channel resource, including ``resourceId`` and ``expiration``
            (milliseconds since the epoch)
        """

    @abstractmethod
    async def stop_channel(self, channel_id: str, resource_id: str) -> None:
        pass
