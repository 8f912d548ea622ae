"""Calendar service interfaces and implementations."""

from .base import (
    AuthenticationError,
    BaseCalendarService,
    CalendarNotFoundError,
    CalendarServiceError,
    ConflictError,
    DuplicateError,
    ErrorKind,
    EventNotFoundError,
    NotFoundError,
    RateLimitError,
    TokenInvalidError,
    TransientError,
)
from .google import GoogleCalendarService

__all__ = [
    'AuthenticationError',
    'BaseCalendarService',
    'CalendarNotFoundError',
    'CalendarServiceError',
    'ConflictError',
    'DuplicateError',
    'ErrorKind',
    'EventNotFoundError',
    'GoogleCalendarService',
    'NotFoundError',
    'RateLimitError',
    'TokenInvalidError',
    'TransientError',
]
