"""Sync engine: one full push/pull cycle for one user."""

from datetime import datetime
from typing import Callable, Optional

import pytz
import structlog

from .auth import AuthManager
from .calendar_manager import ManagedCalendarManager, normalize_calendar_id
from .config import Settings
from .database import DatabaseManager
from .models import GoogleCredential, ManagedCalendarResult, SyncSummary
from .pull import PullPipeline
from .push import PushPipeline
from .services.base import AuthenticationError, BaseCalendarService, CalendarServiceError
from .services.google import GoogleCalendarService
from .sharing import CalendarSharing
from .watchers import CalendarWatchManager

log = structlog.get_logger(__name__)

ClientFactory = Callable[[str], BaseCalendarService]


class SyncEngine:
    """Runs the managed-calendar, push and pull phases for a user.

    The engine assumes the caller holds the user's advisory lock.
    """

    def __init__(
        self,
        settings: Settings,
        db_manager: Optional[DatabaseManager] = None,
        client_factory: Optional[ClientFactory] = None,
        auth_manager: Optional[AuthManager] = None,
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            db_manager: Database manager (created from settings when omitted)
            client_factory: Builds a calendar client from an access token
            auth_manager: Token lifecycle manager
        """
        self.settings = settings
        self.db_manager = db_manager or DatabaseManager(settings)
        self.client_factory = client_factory or (lambda token: GoogleCalendarService(settings, token))
        self.auth = auth_manager or AuthManager(settings, self.db_manager)
        self.calendars = ManagedCalendarManager(settings, self.db_manager)
        self.sharing = CalendarSharing(settings, self.db_manager)
        self.push = PushPipeline(settings, self.db_manager)
        self.pull = PullPipeline(settings, self.db_manager)
        self.watches = CalendarWatchManager(settings, self.db_manager)

    async def initialize(self) -> None:
        self.db_manager.init_db()

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.db_manager.engine.dispose()

    def _reload_credential(self, user_id: str) -> GoogleCredential:
        with self.db_manager.get_session() as session:
            return self.db_manager.get_credential(session, user_id)

    def _flag_reauth(self, user_id: str, error: AuthenticationError) -> None:
        with self.db_manager.get_session() as session:
            self.db_manager.set_credential_reauth(session, user_id, True)
            session.commit()
        log.bind(user_id=user_id).warning("sync.auth_invalid", **error.to_log())

    async def provision_managed_calendar(self, user_id: str) -> ManagedCalendarResult:
        """Resolve or create the user's managed calendar and share it."""
        credential = await self.auth.ensure_valid_access_token(user_id)
        client = self.client_factory(credential.access_token)
        try:
            result = await self.calendars.ensure_managed_calendar(credential, client)
            await self.sharing.ensure_managed_calendar_acl(
                self._reload_credential(user_id), client, result.calendar_id
            )
        except AuthenticationError as e:
            self._flag_reauth(user_id, e)
            raise
        finally:
            await client.close()
        return result

    async def sync_user(
        self,
        user_id: str,
        *,
        pull_remote: bool = True,
        force_full: bool = False,
        calendar_id: Optional[str] = None,
    ) -> SyncSummary:
        """Run one sync cycle for a user.

        Args:
            user_id: User to sync
            pull_remote: Run the pull phase after pushing
            force_full: Queue every item for push before running
            calendar_id: Override the target calendar

        Returns:
            Counts and per-item errors of the run

        Raises:
            AuthenticationError: If the credential is missing or was rejected;
                rejected credentials are flagged for re-consent first
            CalendarServiceError: If calendar resolution or migration failed
        """
        credential = await self.auth.ensure_valid_access_token(user_id)
        client = self.client_factory(credential.access_token)
        try:
            return await self._sync(client, credential, pull_remote, force_full, calendar_id)
        except AuthenticationError as e:
            self._flag_reauth(user_id, e)
            raise
        finally:
            await client.close()

    async def _sync(
        self,
        client: BaseCalendarService,
        credential: GoogleCredential,
        pull_remote: bool,
        force_full: bool,
        calendar_override: Optional[str],
    ) -> SyncSummary:
        user_id = credential.user_id
        bound = log.bind(user_id=user_id)

        if self.calendars.needs_managed_calendar(credential):
            resolved = await self.calendars.ensure_managed_calendar(credential, client)
            target = resolved.calendar_id
            credential = self._reload_credential(user_id)
        else:
            target = credential.managed_calendar_id or credential.calendar_id or 'primary'

        migration = await self.calendars.migrate_events_to_managed_calendar(credential, client, target)
        if migration.failed:
            bound.warning("sync.migration_incomplete", **migration.model_dump())

        await self.sharing.ensure_managed_calendar_acl(credential, client, target)

        calendar_id = normalize_calendar_id(calendar_override or target)
        summary = SyncSummary(user_id=user_id, calendar_id=calendar_id)
        bound = bound.bind(calendar_id=calendar_id)

        if pull_remote and self.watches.enabled:
            await self._refresh_watch(client, user_id, calendar_id)

        credential = self._reload_credential(user_id)
        with self.db_manager.get_session() as session:
            if calendar_id != credential.calendar_id:
                # Switching calendars invalidates the pull cursor
                self.db_manager.upsert_credential(session, user_id, calendar_id=calendar_id)
            if force_full or credential.seeded_at is None:
                queued = self.db_manager.queue_sync_for_user(session, user_id, calendar_id)
                if credential.seeded_at is None:
                    self.db_manager.upsert_credential(session, user_id, seeded_at=datetime.now(pytz.UTC))
                bound.info("sync.queued", items=queued, initial=credential.seeded_at is None)
            session.commit()

        await self.push.push_pending(client, user_id, calendar_id, summary)

        if pull_remote:
            try:
                await self.pull.pull(client, user_id, calendar_id, summary)
            except AuthenticationError:
                raise
            except CalendarServiceError as e:
                summary.add_error(e.message, kind=e.kind.value)
                bound.error("sync.pull_failed", **e.to_log())

        summary.completed_at = datetime.now(pytz.UTC)
        bound.info(
            "sync.complete",
            pushed=summary.pushed,
            pulled=summary.pulled,
            deleted=summary.deleted,
            conflicts=summary.conflicts,
            skipped=summary.skipped,
            errors=len(summary.errors),
        )
        return summary

    async def _refresh_watch(self, client: BaseCalendarService, user_id: str, calendar_id: str) -> None:
        """Keep exactly one push channel, on the calendar being synced."""
        try:
            await self.watches.stop_watches(client, user_id, keep_calendar_id=calendar_id)
            await self.watches.ensure_calendar_watch(client, user_id, calendar_id)
        except AuthenticationError:
            raise
        except CalendarServiceError as e:
            log.bind(user_id=user_id, calendar_id=calendar_id).warning("sync.watch_failed", **e.to_log())

    async def refresh_expiring_watches(self) -> int:
        """Renew channels close to expiry, once per user; returns how many users were renewed."""
        renewed = 0
        seen = set()
        for channel in self.watches.list_expiring():
            if channel.user_id in seen:
                continue
            seen.add(channel.user_id)
            try:
                credential = await self.auth.ensure_valid_access_token(channel.user_id)
                client = self.client_factory(credential.access_token)
                try:
                    await self.watches.ensure_calendar_watch(
                        client, channel.user_id, normalize_calendar_id(credential.calendar_id)
                    )
                finally:
                    await client.close()
            except CalendarServiceError as e:
                log.bind(user_id=channel.user_id).warning("watch.renew_failed", **e.to_log())
                continue
            renewed += 1
        return renewed

    async def stop_calendar_watches(self, user_id: str) -> int:
        """Stop every push channel of a user, e.g. when the integration is disconnected."""
        try:
            credential = await self.auth.ensure_valid_access_token(user_id)
        except AuthenticationError as e:
            # Channels lapse on their own; only the local records go
            log.bind(user_id=user_id).warning("watch.stop_without_credential", **e.to_log())
            return await self.watches.stop_watches(None, user_id)

        client = self.client_factory(credential.access_token)
        try:
            return await self.watches.stop_watches(client, user_id)
        except AuthenticationError as e:
            self._flag_reauth(user_id, e)
            return await self.watches.stop_watches(None, user_id)
        finally:
            await client.close()
