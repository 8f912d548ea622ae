"""Push pipeline: mirror pending local items to Google Calendar."""

import asyncio
from enum import Enum
from typing import Optional

import structlog

from .config import Settings
from .database import DatabaseManager
from .models import Schedulable, SyncDirection, SyncStatus, SyncSummary
from .services.base import (
    AuthenticationError, BaseCalendarService, CalendarServiceError, ConflictError,
    NotFoundError, TransientError,
)
from .timezones import parse_rfc3339
from .transforms import EventTransform, TransformError, transform_for

log = structlog.get_logger(__name__)


class PushOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class PushPipeline:
    """Creates or patches one remote event per pending local item."""

    def __init__(self, settings: Settings, db_manager: DatabaseManager):
        self.settings = settings
        self.db_manager = db_manager

    def transform(self, item: Schedulable) -> EventTransform:
        return transform_for(
            item.item_type,
            default_time_zone=self.settings.sync_config.default_time_zone,
            app_base_url=self.settings.app_base_url,
        )

    async def push_item(
        self,
        client: BaseCalendarService,
        calendar_id: str,
        item: Schedulable,
        *,
        force: bool = False,
        _relinking: bool = False,
    ) -> PushOutcome:
        """Push one item to ``calendar_id``.

        Skips the remote call when the item is already linked in this
        calendar with an unchanged content hash. Before patching, the live
        event is fetched; a remote edit newer than the last one this side saw
        aborts the push.

        Args:
            client: Remote calendar transport
            calendar_id: Destination calendar
            item: Local entity
            force: Push even when the content hash is unchanged

        Returns:
            What happened remotely

        Raises:
            ConflictError: If the remote event changed since the last sync
            CalendarServiceError: For transport failures
        """
        transform = self.transform(item)
        local_hash = transform.content_hash(item)

        with self.db_manager.get_session() as session:
            link = self.db_manager.get_sync_link(session, item.item_id)

        if (
            not force
            and link is not None
            and link.event_id
            and link.calendar_id == calendar_id
            and link.local_hash == local_hash
        ):
            with self.db_manager.get_session() as session:
                self.db_manager.upsert_sync_link(
                    session, item.item_id, sync_status=SyncStatus.IDLE, last_error=None
                )
                session.commit()
            return PushOutcome.UNCHANGED

        payload = transform.build_payload(item)
        event_id = link.event_id if link else None

        if event_id:
            try:
                remote = await client.get_event(calendar_id, event_id)
            except NotFoundError:
                log.info("push.remote_missing", item_id=item.item_id, event_id=event_id, calendar_id=calendar_id)
                self._clear_event(item.item_id)
                event_id = None
            else:
                remote_updated = parse_rfc3339(remote.get('updated'))
                if link.remote_updated_at and remote_updated and remote_updated > link.remote_updated_at:
                    raise ConflictError(
                        "Remote event is newer than the last synced version",
                        status=409,
                        code='remote_newer',
                        context={
                            'item_id': item.item_id,
                            'event_id': event_id,
                            'remote_updated_at': remote_updated.isoformat(),
                            'link_remote_updated_at': link.remote_updated_at.isoformat(),
                        },
                    )

        if event_id:
            try:
                result = await client.patch_event(calendar_id, event_id, payload)
            except NotFoundError:
                if _relinking:
                    raise
                log.info("push.relink", item_id=item.item_id, event_id=event_id, calendar_id=calendar_id)
                self._clear_event(item.item_id)
                return await self.push_item(client, calendar_id, item, force=True, _relinking=True)
            outcome = PushOutcome.UPDATED
        else:
            result = await client.insert_event(calendar_id, payload)
            outcome = PushOutcome.CREATED

        with self.db_manager.get_session() as session:
            self.db_manager.mark_sync_success(
                session,
                item.item_id,
                direction=SyncDirection.PUSH,
                calendar_id=calendar_id,
                event_id=result['id'],
                etag=result.get('etag'),
                local_hash=local_hash,
                remote_updated_at=parse_rfc3339(result.get('updated')),
            )
            session.commit()
        log.debug("push.done", item_id=item.item_id, event_id=result['id'], outcome=outcome.value)
        return outcome

    def _clear_event(self, item_id: str) -> None:
        with self.db_manager.get_session() as session:
            self.db_manager.upsert_sync_link(
                session, item_id,
                event_id=None, etag=None, remote_updated_at=None, sync_status=SyncStatus.PENDING,
            )
            session.commit()

    async def push_pending(
        self,
        client: BaseCalendarService,
        user_id: str,
        calendar_id: str,
        summary: SyncSummary,
        *,
        force: bool = False,
    ) -> None:
        """Push every pending item of a user with bounded concurrency.

        Failures are isolated per item. An authentication failure cancels the
        items that have not started yet and is re-raised once in-flight pushes
        settle.

        Raises:
            AuthenticationError: If the credential was rejected mid-run
        """
        with self.db_manager.get_session() as session:
            pending = self.db_manager.list_pending_items(session, user_id)
        if not pending:
            return

        semaphore = asyncio.Semaphore(self.settings.sync_config.push_concurrency)
        auth_failures = []

        async def push_one(item_id: str) -> None:
            async with semaphore:
                if auth_failures:
                    return
                try:
                    await self._push_isolated(client, user_id, calendar_id, item_id, summary, force, auth_failures)
                except Exception as e:
                    summary.add_error(str(e), item_id=item_id, kind='push_failed')
                    log.exception("push.item_failed", user_id=user_id, calendar_id=calendar_id, item_id=item_id)

        await asyncio.gather(*(push_one(item_id) for item_id, _ in pending))

        if auth_failures:
            raise auth_failures[0]

    async def _push_isolated(
        self,
        client: BaseCalendarService,
        user_id: str,
        calendar_id: str,
        item_id: str,
        summary: SyncSummary,
        force: bool,
        auth_failures: list,
    ) -> None:
        bound = log.bind(user_id=user_id, calendar_id=calendar_id, item_id=item_id)

        with self.db_manager.get_session() as session:
            item = self.db_manager.get_linked_item(session, item_id)
            if item is None:
                self.db_manager.delete_sync_link(session, item_id)
                session.commit()
                bound.info("push.item_missing")
                return

        try:
            outcome = await self.push_item(client, calendar_id, item, force=force)
        except ConflictError as e:
            summary.conflicts += 1
            self._record_pending_error(item_id, e.message)
            bound.info("push.conflict", **e.to_log())
            return
        except AuthenticationError as e:
            auth_failures.append(e)
            summary.add_error(e.message, item_id=item_id, kind=e.kind.value)
            self._record_pending_error(item_id, e.message)
            bound.warning("push.auth_invalid", **e.to_log())
            return
        except TransientError as e:
            summary.add_error(e.message, item_id=item_id, kind=e.kind.value)
            self._record_pending_error(item_id, e.message)
            bound.warning("push.transient", **e.to_log())
            return
        except CalendarServiceError as e:
            summary.add_error(e.message, item_id=item_id, kind=e.kind.value)
            self._record_error(item_id, e.message)
            bound.error("push.failed", **e.to_log())
            return
        except (TransformError, ValueError) as e:
            summary.add_error(str(e), item_id=item_id, kind='invalid')
            self._record_error(item_id, str(e))
            bound.error("push.invalid_item", error=str(e))
            return

        if outcome == PushOutcome.UNCHANGED:
            summary.skipped += 1
        else:
            summary.pushed += 1

    def _record_pending_error(self, item_id: str, message: Optional[str]) -> None:
        """Keep the item queued for the next cycle while exposing the last failure."""
        with self.db_manager.get_session() as session:
            self.db_manager.upsert_sync_link(
                session, item_id, sync_status=SyncStatus.PENDING, last_error=message
            )
            session.commit()

    def _record_error(self, item_id: str, message: str) -> None:
        with self.db_manager.get_session() as session:
            self.db_manager.mark_sync_error(session, item_id, message)
            session.commit()
