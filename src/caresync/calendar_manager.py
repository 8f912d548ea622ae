"""Managed calendar resolution and event migration."""

import logging
from typing import List, Optional

from .config import Settings
from .database import DatabaseManager
from .models import (
    GoogleCredential, ManagedCalendarResult, ManagedCalendarState, MigrationSummary, SyncStatus,
)
from .services.base import AuthenticationError, BaseCalendarService, CalendarServiceError, NotFoundError
from .timezones import parse_rfc3339

logger = logging.getLogger(__name__)


def normalize_calendar_id(calendar_id: Optional[str]) -> str:
    return calendar_id if calendar_id and calendar_id.strip() else 'primary'


class ManagedCalendarManager:
    """Finds, reuses or creates the per-user calendar that holds synced events."""

    def __init__(self, settings: Settings, db_manager: DatabaseManager):
        """Initialize calendar manager.

        Args:
            settings: Application settings
            db_manager: Database manager
        """
        self.settings = settings
        self.db_manager = db_manager
        self.logger = logger.getChild('managed_calendar')

    @property
    def calendar_name(self) -> str:
        return self.settings.sync_config.managed_calendar_name

    def is_managed_summary(self, summary: Optional[str]) -> bool:
        return isinstance(summary, str) and summary.strip().lower() == self.calendar_name.strip().lower()

    @staticmethod
    def needs_managed_calendar(credential: GoogleCredential) -> bool:
        """Whether the credential lacks an active managed calendar that is also the active one."""
        current = normalize_calendar_id(credential.calendar_id)
        managed = normalize_calendar_id(credential.managed_calendar_id or credential.calendar_id)
        return (
            not credential.managed_calendar_id
            or credential.managed_calendar_state != ManagedCalendarState.ACTIVE
            or current != managed
        )

    async def _try_get_calendar(self, client: BaseCalendarService, calendar_id: str) -> Optional[dict]:
        try:
            return await client.get_calendar(calendar_id)
        except NotFoundError:
            return None

    async def ensure_managed_calendar(
        self, credential: GoogleCredential, client: BaseCalendarService
    ) -> ManagedCalendarResult:
        """Resolve the user's managed calendar, creating it only as a last resort.

        Candidates are tried in order: recorded managed id, recorded legacy
        id, then the active calendar. A candidate is accepted when it is a
        recorded managed/legacy id or its name matches the reserved name.
        Otherwise the first calendar list entry with the reserved name wins.

        Args:
            credential: User credential (current bookkeeping)
            client: Remote calendar transport

        Returns:
            Resolution result

        Raises:
            CalendarServiceError: If the provider calls fail
        """
        candidates: List[str] = []
        for candidate in (credential.managed_calendar_id, credential.legacy_calendar_id):
            if candidate and candidate not in candidates:
                candidates.append(candidate)
        if (
            credential.calendar_id
            and credential.calendar_id != credential.managed_calendar_id
            and credential.calendar_id not in candidates
        ):
            candidates.append(credential.calendar_id)

        known_ids = {credential.managed_calendar_id, credential.legacy_calendar_id} - {None}
        calendar = None
        for candidate in candidates:
            existing = await self._try_get_calendar(client, candidate)
            if existing and (candidate in known_ids or self.is_managed_summary(existing.get('summary'))):
                calendar = existing
                break

        if calendar is None:
            calendar = next(
                (entry for entry in await client.list_calendars() if self.is_managed_summary(entry.get('summary'))),
                None,
            )

        created = False
        if calendar is None:
            calendar = await client.create_calendar(
                self.calendar_name, self.settings.sync_config.default_time_zone
            )
            if not calendar or not calendar.get('id'):
                raise CalendarServiceError(
                    "Google API did not return a calendar ID on creation", status=500, code='missing_calendar'
                )
            created = True
            self.logger.info(f"Created managed calendar {calendar['id']} for user {credential.user_id}")
        else:
            self.logger.info(f"Reusing managed calendar {calendar['id']} for user {credential.user_id}")

        calendar_id = calendar['id']
        legacy_calendar_id = credential.legacy_calendar_id
        if credential.managed_calendar_id and credential.managed_calendar_id != calendar_id:
            legacy_calendar_id = credential.managed_calendar_id
        elif not legacy_calendar_id and credential.calendar_id and credential.calendar_id != calendar_id:
            legacy_calendar_id = credential.calendar_id

        with self.db_manager.get_session() as session:
            self.db_manager.upsert_credential(
                session,
                credential.user_id,
                calendar_id=calendar_id,
                managed_calendar_id=calendar_id,
                managed_calendar_summary=calendar.get('summary') or self.calendar_name,
                managed_calendar_state=ManagedCalendarState.ACTIVE,
                legacy_calendar_id=legacy_calendar_id,
            )
            session.commit()

        return ManagedCalendarResult(calendar_id=calendar_id, created=created, reused=not created)

    async def migrate_events_to_managed_calendar(
        self, credential: GoogleCredential, client: BaseCalendarService, target_calendar_id: str
    ) -> MigrationSummary:
        """Move every linked event living elsewhere into ``target_calendar_id``.

        Links without a remote event are simply re-pointed. A move that finds
        the event gone leaves the item pending for re-creation. Other failures
        are counted and logged without stopping the migration, except a
        rejected credential, which aborts it.
        """
        target = normalize_calendar_id(target_calendar_id)
        with self.db_manager.get_session() as session:
            links = self.db_manager.list_links_for_user(session, credential.user_id)

        summary = MigrationSummary()
        for link in links:
            source = normalize_calendar_id(link.calendar_id)
            if source == target:
                continue
            if source not in summary.previous_calendar_ids:
                summary.previous_calendar_ids.append(source)

            if not link.event_id:
                with self.db_manager.get_session() as session:
                    self.db_manager.upsert_sync_link(session, link.item_id, calendar_id=target)
                    session.commit()
                continue

            try:
                moved = await client.move_event(source, link.event_id, target)
            except NotFoundError:
                with self.db_manager.get_session() as session:
                    self.db_manager.upsert_sync_link(
                        session,
                        link.item_id,
                        calendar_id=target,
                        event_id=None,
                        etag=None,
                        remote_updated_at=None,
                        sync_status=SyncStatus.PENDING,
                        last_error=None,
                    )
                    session.commit()
                summary.pending += 1
                continue
            except AuthenticationError:
                raise
            except CalendarServiceError as e:
                summary.failed += 1
                self.logger.warning(
                    f"Failed to move event {link.event_id} for item {link.item_id} "
                    f"from {source} to managed calendar: {e.to_log()}"
                )
                continue

            with self.db_manager.get_session() as session:
                self.db_manager.upsert_sync_link(
                    session,
                    link.item_id,
                    calendar_id=target,
                    event_id=moved.get('id') or link.event_id,
                    etag=moved.get('etag') or link.etag,
                    remote_updated_at=parse_rfc3339(moved.get('updated')) or link.remote_updated_at,
                )
                session.commit()
            summary.migrated += 1

        if summary.migrated or summary.pending or summary.failed:
            self.logger.info(
                f"Migrated events for user {credential.user_id}: migrated={summary.migrated} "
                f"pending={summary.pending} failed={summary.failed}"
            )
        return summary
