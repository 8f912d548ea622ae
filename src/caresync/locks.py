"""Cross-process advisory lock keyed by user id, backed by the shared datastore."""

import asyncio
import logging
import os
import socket
import zlib
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, Optional
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError
import pytz

from .database import DatabaseManager, SyncLockDB
from .timezones import ensure_timezone_aware

logger = logging.getLogger(__name__)

# First key of the two-int advisory lock; keeps these locks apart from other users of pg locks.
LOCK_NAMESPACE = 0x4753


def lock_key_for(user_id: str) -> int:
    """Stable 31-bit key for a user id."""
    return zlib.crc32(str(user_id).encode('utf-8')) & 0x7FFFFFFF


class AdvisoryLock:
    """Per-user mutual exclusion that survives across processes.

    PostgreSQL uses session-level ``pg_try_advisory_lock`` on a dedicated
    connection. Other datastores fall back to lease rows in ``sync_locks``;
    an expired lease (crashed holder) can be taken over.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        lease_seconds: int = 600,
        owner: Optional[str] = None,
        heartbeat_seconds: Optional[float] = None,
    ):
        self.db_manager = db_manager
        self.lease = timedelta(seconds=lease_seconds)
        self.heartbeat_seconds = heartbeat_seconds or lease_seconds / 3
        self.owner = owner or f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"
        self.logger = logger.getChild('advisory')
        self._connections: Dict[str, Connection] = {}

    @property
    def native(self) -> bool:
        return self.db_manager.dialect == 'postgresql'

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[bool]:
        """Try to take the lock; yields whether it was obtained and always releases it.

        Lease rows are renewed in the background for as long as the lock is
        held, so a run that outlives ``lock_lease_seconds`` keeps its lease.
        """
        acquired = self.try_acquire(user_id)
        heartbeat = None
        if acquired and not self.native:
            heartbeat = asyncio.get_event_loop().create_task(self._heartbeat(user_id))
        try:
            yield acquired
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass
            if acquired:
                self.release(user_id)

    async def _heartbeat(self, user_id: str) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            try:
                if not self.renew(user_id):
                    self.logger.error(f"Lost sync lease for user {user_id}")
                    return
            except Exception:
                self.logger.exception(f"Failed to renew sync lease for user {user_id}")

    def try_acquire(self, user_id: str) -> bool:
        if self.native:
            return self._pg_try_acquire(user_id)
        return self._lease_try_acquire(user_id)

    def release(self, user_id: str) -> None:
        if self.native:
            self._pg_release(user_id)
        else:
            self._lease_release(user_id)

    def _pg_try_acquire(self, user_id: str) -> bool:
        if user_id in self._connections:
            return False
        conn = self.db_manager.engine.connect()
        try:
            acquired = bool(conn.execute(
                text("SELECT pg_try_advisory_lock(:ns, :key)"),
                {'ns': LOCK_NAMESPACE, 'key': lock_key_for(user_id)},
            ).scalar())
            conn.commit()
        except Exception:
            conn.close()
            raise
        if not acquired:
            conn.close()
            return False
        self._connections[user_id] = conn
        return True

    def _pg_release(self, user_id: str) -> None:
        conn = self._connections.pop(user_id, None)
        if conn is None:
            return
        try:
            conn.execute(
                text("SELECT pg_advisory_unlock(:ns, :key)"),
                {'ns': LOCK_NAMESPACE, 'key': lock_key_for(user_id)},
            )
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _lease_key(user_id: str) -> str:
        return f"google-sync:{user_id}"

    def _lease_try_acquire(self, user_id: str) -> bool:
        key = self._lease_key(user_id)
        now = datetime.now(pytz.UTC)
        with self.db_manager.get_session() as session:
            row = session.get(SyncLockDB, key)
            if row is None:
                session.add(SyncLockDB(lock_key=key, owner=self.owner, acquired_at=now, expires_at=now + self.lease))
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    return False
                return True

            if ensure_timezone_aware(row.expires_at) > now:
                return False

            # Conditional update so only one contender steals an expired lease
            taken = session.query(SyncLockDB).filter(
                SyncLockDB.lock_key == key,
                SyncLockDB.owner == row.owner,
                SyncLockDB.expires_at == row.expires_at,
            ).update(
                {'owner': self.owner, 'acquired_at': now, 'expires_at': now + self.lease},
                synchronize_session=False,
            )
            session.commit()
            if taken:
                self.logger.warning(f"Took over expired sync lease for user {user_id} from {row.owner}")
            return bool(taken)

    def _lease_release(self, user_id: str) -> None:
        with self.db_manager.get_session() as session:
            session.query(SyncLockDB).filter(
                SyncLockDB.lock_key == self._lease_key(user_id),
                SyncLockDB.owner == self.owner,
            ).delete(synchronize_session=False)
            session.commit()

    def renew(self, user_id: str) -> bool:
        """Push the lease expiry forward; returns False if this owner no longer holds it."""
        if self.native:
            return user_id in self._connections
        now = datetime.now(pytz.UTC)
        with self.db_manager.get_session() as session:
            renewed = session.query(SyncLockDB).filter(
                SyncLockDB.lock_key == self._lease_key(user_id),
                SyncLockDB.owner == self.owner,
            ).update({'expires_at': now + self.lease}, synchronize_session=False)
            session.commit()
        return bool(renewed)
