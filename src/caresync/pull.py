"""Pull pipeline: apply remote calendar changes to local entities."""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import pytz
import structlog

from .config import Settings
from .database import DatabaseManager
from .models import Appointment, SyncDirection, SyncStatus, SyncSummary
from .services.base import BaseCalendarService, TokenInvalidError
from .timezones import parse_rfc3339
from .transforms import TransformError, resolve_event_reference, transform_for

log = structlog.get_logger(__name__)


class PullPipeline:
    """Incremental, paginated fetch of remote changes keyed by the stored sync token."""

    def __init__(self, settings: Settings, db_manager: DatabaseManager):
        self.settings = settings
        self.db_manager = db_manager

    async def pull(
        self,
        client: BaseCalendarService,
        user_id: str,
        calendar_id: str,
        summary: SyncSummary,
    ) -> None:
        """Pull remote changes for one user's active calendar.

        An invalidated sync token resets the cursor and triggers exactly one
        full resync; a second invalidation in the same run is recorded as a
        run error.
        """
        bound = log.bind(user_id=user_id, calendar_id=calendar_id)
        try:
            await self._pull_pages(client, user_id, calendar_id, summary)
        except TokenInvalidError as e:
            bound.warning("pull.token_invalid", **e.to_log())
            self._reset_cursor(user_id)
            try:
                await self._pull_pages(client, user_id, calendar_id, summary)
            except TokenInvalidError as retry_error:
                summary.add_error(
                    "Sync token rejected again during full resync", kind=retry_error.kind.value
                )
                bound.error("pull.token_invalid_again", **retry_error.to_log())

    def _reset_cursor(self, user_id: str) -> None:
        with self.db_manager.get_session() as session:
            self.db_manager.upsert_credential(session, user_id, sync_token=None, last_pulled_at=None)
            session.commit()

    def _time_min(self) -> Optional[str]:
        days = self.settings.sync_config.lookback_days
        if days <= 0:
            return None
        return (datetime.now(pytz.UTC) - timedelta(days=days)).isoformat()

    async def _pull_pages(
        self,
        client: BaseCalendarService,
        user_id: str,
        calendar_id: str,
        summary: SyncSummary,
    ) -> None:
        with self.db_manager.get_session() as session:
            credential = self.db_manager.get_credential(session, user_id)
        sync_token = credential.sync_token if credential else None
        time_min = None if sync_token else self._time_min()

        page_token = None
        next_sync_token = None
        first_page = True
        pages = 0
        while True:
            page = await client.list_events_page(
                calendar_id,
                sync_token=sync_token if first_page else None,
                page_token=page_token,
                time_min=time_min,
            )
            first_page = False
            pages += 1

            for event in page.get('items', []):
                self._apply_isolated(user_id, calendar_id, event, summary)

            if page.get('nextSyncToken'):
                next_sync_token = page['nextSyncToken']
            page_token = page.get('nextPageToken')
            if not page_token:
                break

        with self.db_manager.get_session() as session:
            self.db_manager.upsert_credential(
                session,
                user_id,
                sync_token=next_sync_token or sync_token,
                last_pulled_at=datetime.now(pytz.UTC),
            )
            session.commit()
        log.info(
            "pull.complete",
            user_id=user_id,
            calendar_id=calendar_id,
            pages=pages,
            full=sync_token is None,
            pulled=summary.pulled,
            deleted=summary.deleted,
        )

    def _apply_isolated(self, user_id: str, calendar_id: str, event: Dict[str, Any], summary: SyncSummary) -> None:
        try:
            self.apply_event(calendar_id, event, summary)
        except Exception as e:
            summary.add_error(str(e), event_id=event.get('id'), kind='apply_failed')
            log.exception("pull.apply_failed", user_id=user_id, calendar_id=calendar_id, event_id=event.get('id'))

    def apply_event(self, calendar_id: str, event: Dict[str, Any], summary: SyncSummary) -> None:
        """Apply one remote event to its local counterpart, if it has one."""
        event_id = event.get('id')
        item_id, _ = resolve_event_reference(event)

        with self.db_manager.get_session() as session:
            if item_id:
                link = self.db_manager.get_sync_link(session, item_id)
            else:
                link = self.db_manager.find_link_by_event(session, event_id) if event_id else None
                item_id = link.item_id if link else None

            if not item_id:
                return

            # A leftover copy of an item that has since been relinked to another event
            if link is not None and link.event_id and link.event_id != event_id:
                log.debug("pull.stale_duplicate", item_id=item_id, event_id=event_id, linked_event_id=link.event_id)
                return

            item = self.db_manager.get_linked_item(session, item_id)

            if event.get('status') == 'cancelled':
                if item is not None and link is not None and link.sync_status == SyncStatus.PENDING:
                    # Local edits are waiting; recreate the event on the next push
                    self.db_manager.upsert_sync_link(
                        session, item_id, event_id=None, etag=None, remote_updated_at=None
                    )
                else:
                    self.db_manager.delete_sync_link(session, item_id)
                session.commit()
                summary.deleted += 1
                return

            if item is None:
                self.db_manager.delete_sync_link(session, item_id)
                session.commit()
                return

            remote_updated = parse_rfc3339(event.get('updated'))
            if (
                link is not None
                and link.remote_updated_at
                and remote_updated
                and remote_updated <= link.remote_updated_at
            ):
                return

            transform = transform_for(
                item.item_type,
                default_time_zone=self.settings.sync_config.default_time_zone,
                app_base_url=self.settings.app_base_url,
            )
            try:
                changes = transform.remote_changes(item, event)
            except TransformError as e:
                summary.add_error(str(e), item_id=item_id, event_id=event_id, kind='invalid_event')
                if link is not None:
                    self.db_manager.mark_sync_error(session, item_id, str(e))
                    session.commit()
                log.warning("pull.invalid_event", item_id=item_id, event_id=event_id, calendar_id=calendar_id, error=str(e))
                return

            if isinstance(item, Appointment):
                updated = self.db_manager.update_appointment_from_remote(session, item_id, **changes)
            else:
                updated = self.db_manager.update_bill_from_remote(session, item_id, **changes)

            self.db_manager.mark_sync_success(
                session,
                item_id,
                direction=SyncDirection.PULL,
                calendar_id=calendar_id,
                event_id=event_id,
                etag=event.get('etag'),
                local_hash=transform.content_hash(updated),
                remote_updated_at=remote_updated,
            )
            session.commit()
        summary.pulled += 1
