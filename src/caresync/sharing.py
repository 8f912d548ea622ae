"""Sharing the managed calendar with accepted collaborators."""

import hashlib
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytz

from .config import Settings
from .database import DatabaseManager
from .models import AclResult, GoogleCredential
from .services.base import AuthenticationError, BaseCalendarService, CalendarServiceError, DuplicateError

logger = logging.getLogger(__name__)


def email_digest(emails: List[str]) -> str:
    return hashlib.sha256('\n'.join(sorted(emails)).encode('utf-8')).hexdigest()


class CalendarSharing:
    """Grants calendar ACL entries to collaborators, at most once per revalidation window."""

    def __init__(self, settings: Settings, db_manager: DatabaseManager):
        self.settings = settings
        self.db_manager = db_manager
        self.logger = logger.getChild('acl')

    @property
    def refresh_interval(self) -> timedelta:
        return timedelta(hours=self.settings.sync_config.acl_refresh_hours)

    def recently_verified(self, credential: GoogleCredential, now: Optional[datetime] = None) -> bool:
        verified_at = credential.managed_calendar_verified_at
        if verified_at is None:
            return False
        now = now or datetime.now(pytz.UTC)
        return now - verified_at < self.refresh_interval

    async def ensure_managed_calendar_acl(
        self,
        credential: GoogleCredential,
        client: BaseCalendarService,
        calendar_id: str,
        role: Optional[str] = None,
    ) -> AclResult:
        """Grant ``role`` on ``calendar_id`` to every accepted collaborator.

        Skips entirely when the last pass ran within the revalidation window
        with the same role and the same collaborator set. Otherwise lists the
        ACL once and issues one grant per missing or differently-roled email.
        A duplicate-grant response counts as already granted.

        Args:
            credential: Owner credential
            client: Remote calendar transport
            calendar_id: Managed calendar
            role: ACL role to grant (defaults to the configured role)

        Returns:
            Per-email outcome of the pass
        """
        role = role or self.settings.sync_config.managed_calendar_role
        with self.db_manager.get_session() as session:
            emails = self.db_manager.list_accepted_collaborator_emails(session, credential.user_id)
        digest = email_digest(emails)

        if (
            self.recently_verified(credential)
            and credential.managed_calendar_acl_role == role
            and credential.managed_calendar_acl_digest == digest
        ):
            return AclResult(verified=False)

        result = AclResult(verified=True)

        existing: Optional[Dict[str, str]] = None
        if emails:
            try:
                existing = {}
                for entry in await client.list_acl(calendar_id):
                    value = ((entry.get('scope') or {}).get('value') or '').strip().lower()
                    if value and entry.get('role'):
                        existing[value] = entry['role']
            except AuthenticationError:
                raise
            except CalendarServiceError as e:
                existing = None
                self.logger.warning(
                    f"Failed to list ACL entries for calendar {calendar_id} (user {credential.user_id}): {e.to_log()}"
                )

        for email in emails:
            if existing is not None and existing.get(email) == role:
                result.skipped.append(email)
                continue
            try:
                await client.insert_acl(calendar_id, email, role)
            except DuplicateError:
                result.skipped.append(email)
                continue
            except AuthenticationError:
                raise
            except CalendarServiceError as e:
                result.errors.append({'email': email, **e.to_log()})
                self.logger.warning(
                    f"Failed to share calendar {calendar_id} with {email} (user {credential.user_id}): {e.message}"
                )
                continue
            result.granted.append(email)

        with self.db_manager.get_session() as session:
            self.db_manager.upsert_credential(
                session,
                credential.user_id,
                managed_calendar_verified_at=datetime.now(pytz.UTC),
                managed_calendar_acl_role=role,
                # A failed grant must be retried on the next pass
                managed_calendar_acl_digest=None if result.errors else digest,
            )
            session.commit()

        if result.granted or result.errors:
            self.logger.info(
                f"ACL pass for user {credential.user_id}: granted={len(result.granted)} "
                f"skipped={len(result.skipped)} errors={len(result.errors)}"
            )
        return result
