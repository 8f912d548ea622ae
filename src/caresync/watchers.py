"""Google push-notification channels that trigger syncs on remote changes."""

import hmac
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

from dateutil import parser as date_parser
import pytz
import structlog

from .calendar_manager import normalize_calendar_id
from .config import Settings
from .database import DatabaseManager
from .models import WatchChannel
from .services.base import AuthenticationError, BaseCalendarService, CalendarServiceError

log = structlog.get_logger(__name__)


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value.strip() if isinstance(value, str) and value.strip() else None


def _expiration_from_millis(value: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(int(value) / 1000, pytz.UTC)
    except (TypeError, ValueError):
        return None


def _expiration_from_header(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = date_parser.parse(value)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = pytz.UTC.localize(parsed)
    return parsed.astimezone(pytz.UTC)


class CalendarWatchManager:
    """Lifecycle of ``events.watch`` channels and validation of their notifications.

    A channel is opened per user and active calendar. Google echoes the
    secret token handed over when the channel was opened; a notification
    is only trusted when that token matches the stored channel.
    """

    def __init__(self, settings: Settings, db_manager: DatabaseManager):
        self.settings = settings
        self.config = settings.sync_config
        self.db_manager = db_manager

    @property
    def enabled(self) -> bool:
        return self.settings.webhook_address is not None

    async def ensure_calendar_watch(
        self, client: BaseCalendarService, user_id: str, calendar_id: str
    ) -> WatchChannel:
        """Return a channel on ``calendar_id`` with enough life left, opening one if needed.

        Raises:
            CalendarServiceError: If the provider refuses the watch
        """
        calendar_id = normalize_calendar_id(calendar_id)
        now = datetime.now(pytz.UTC)
        threshold = timedelta(seconds=self.config.watch_renewal_threshold_seconds)

        with self.db_manager.get_session() as session:
            existing = self.db_manager.get_watch_channel(session, user_id, calendar_id)
        if existing is not None:
            if existing.expiration is None or existing.expiration - now > threshold:
                return existing
            await self._stop(client, existing)

        channel_id = str(uuid4())
        token = secrets.token_hex(16)
        response = await client.watch_events(
            calendar_id,
            channel_id,
            self.settings.webhook_address,
            token,
            self.config.watch_ttl_seconds,
        )
        resource_id = response.get('resourceId')
        if not resource_id:
            raise CalendarServiceError(
                "Google watch response missing resourceId", status=500, code='missing_resource'
            )

        channel = WatchChannel(
            channel_id=channel_id,
            user_id=user_id,
            calendar_id=calendar_id,
            resource_id=str(resource_id),
            resource_uri=response.get('resourceUri'),
            expiration=_expiration_from_millis(response.get('expiration')),
            channel_token=token,
        )
        with self.db_manager.get_session() as session:
            channel = self.db_manager.upsert_watch_channel(session, channel)
            session.commit()
        log.info(
            "watch.opened",
            user_id=user_id,
            calendar_id=calendar_id,
            channel_id=channel_id,
            expiration=channel.expiration.isoformat() if channel.expiration else None,
        )
        return channel

    async def stop_watches(
        self,
        client: Optional[BaseCalendarService],
        user_id: str,
        keep_calendar_id: Optional[str] = None,
    ) -> int:
        """Stop and forget the user's channels, except the one on ``keep_calendar_id``.

        Without a client the channels are only forgotten locally; Google
        lets them lapse at their expiration.
        """
        keep = normalize_calendar_id(keep_calendar_id) if keep_calendar_id else None
        with self.db_manager.get_session() as session:
            channels = self.db_manager.list_watch_channels_for_user(session, user_id)

        stopped = 0
        for channel in channels:
            if keep is not None and channel.calendar_id == keep:
                continue
            if client is not None:
                await self._stop(client, channel)
            else:
                self._forget(channel.channel_id)
            stopped += 1
        return stopped

    async def _stop(self, client: BaseCalendarService, channel: WatchChannel) -> None:
        if channel.resource_id:
            try:
                await client.stop_channel(channel.channel_id, channel.resource_id)
            except AuthenticationError:
                raise
            except CalendarServiceError as e:
                # Channel may already be gone on Google's side
                log.bind(user_id=channel.user_id, channel_id=channel.channel_id).warning(
                    "watch.stop_failed", **e.to_log()
                )
        self._forget(channel.channel_id)

    def _forget(self, channel_id: str) -> None:
        with self.db_manager.get_session() as session:
            self.db_manager.delete_watch_channel(session, channel_id)
            session.commit()

    def list_expiring(self) -> List[WatchChannel]:
        threshold = datetime.now(pytz.UTC) + timedelta(seconds=self.config.watch_renewal_lookahead_seconds)
        with self.db_manager.get_session() as session:
            return self.db_manager.list_expiring_watch_channels(session, threshold)

    def handle_notification(self, headers: Mapping[str, str]) -> Optional[str]:
        """Validate one webhook delivery.

        Args:
            headers: Request headers (``X-Goog-*``)

        Returns:
            The user id whose calendar changed, or None when the delivery is
            unknown, forged, or a channel stop message
        """
        channel_id = _header(headers, 'X-Goog-Channel-ID')
        resource_id = _header(headers, 'X-Goog-Resource-ID')
        token = _header(headers, 'X-Goog-Channel-Token')
        message_type = (_header(headers, 'X-Goog-Message-Type') or '').upper()
        resource_state = _header(headers, 'X-Goog-Resource-State') or ''

        if not channel_id or not resource_id:
            log.warning("watch.missing_identifiers")
            return None

        with self.db_manager.get_session() as session:
            channel = self.db_manager.find_watch_channel(session, channel_id=channel_id, resource_id=resource_id)
        if channel is None:
            log.warning("watch.unknown_channel", channel_id=channel_id)
            return None
        if channel.channel_token and not (token and hmac.compare_digest(token, channel.channel_token)):
            log.warning("watch.token_mismatch", channel_id=channel_id, user_id=channel.user_id)
            return None

        log.info(
            "watch.notification",
            user_id=channel.user_id,
            channel_id=channel_id,
            resource_state=resource_state,
            message_type=message_type,
            message_number=_header(headers, 'X-Goog-Message-Number'),
        )

        if message_type == 'STOP':
            self._forget(channel.channel_id)
            return None

        updates: Dict[str, Any] = {}
        expiration = _expiration_from_header(_header(headers, 'X-Goog-Channel-Expiration'))
        if expiration is not None:
            updates['expiration'] = expiration
        resource_uri = _header(headers, 'X-Goog-Resource-URI')
        if resource_uri:
            updates['resource_uri'] = resource_uri
        if updates:
            with self.db_manager.get_session() as session:
                self.db_manager.upsert_watch_channel(session, channel.model_copy(update=updates))
                session.commit()

        # 'sync' is the handshake sent when the channel opens; it also triggers a run
        return channel.user_id
