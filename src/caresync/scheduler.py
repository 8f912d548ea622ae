"""Per-user sync coordination: debounce, lock-guarded runs, backoff retries and polling."""

import asyncio
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Set

import structlog

from .config import Settings
from .locks import AdvisoryLock
from .models import SyncLink, SyncSummary
from .notifier import LoggingNotifier, PlanUpdateNotifier
from .services.base import AuthenticationError, ErrorKind
from .sync_engine import SyncEngine

log = structlog.get_logger(__name__)


@dataclass
class PendingRun:
    """Scheduling state for one user."""

    debounce: Optional[asyncio.TimerHandle] = None
    retry: Optional[asyncio.TimerHandle] = None
    retry_attempt: int = 0
    running: bool = False
    follow_up: bool = False

    @property
    def idle(self) -> bool:
        return self.debounce is None and self.retry is None and not self.running and not self.follow_up

    def cancel_timers(self) -> None:
        for handle in (self.debounce, self.retry):
            if handle is not None:
                handle.cancel()
        self.debounce = None
        self.retry = None


class PendingRunRegistry:
    """Map from user id to that user's pending-run state."""

    def __init__(self):
        self._runs: Dict[str, PendingRun] = {}

    def get(self, user_id: str) -> PendingRun:
        if user_id not in self._runs:
            self._runs[user_id] = PendingRun()
        return self._runs[user_id]

    def discard_if_idle(self, user_id: str) -> None:
        state = self._runs.get(user_id)
        if state is not None and state.idle:
            del self._runs[user_id]

    def discard(self, user_id: str) -> None:
        state = self._runs.pop(user_id, None)
        if state is not None:
            state.cancel_timers()

    def clear(self) -> None:
        for state in self._runs.values():
            state.cancel_timers()
        self._runs.clear()

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._runs

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._runs))

    def __len__(self) -> int:
        return len(self._runs)


def retry_delay_ms(attempt: int, base_ms: int, max_ms: int) -> int:
    """Exponential backoff ``base * 2^(attempt-1)`` capped at ``max_ms``."""
    return min(base_ms * 2 ** max(attempt - 1, 0), max_ms)


class SyncScheduler:
    """Fire-and-forget sync scheduling for many users in one event loop.

    Requests are debounced per user. Each run holds the user's advisory
    lock; contention and failures are retried with capped exponential
    backoff. Requests arriving during a run are collapsed into one
    follow-up run. Users whose credential was rejected are suppressed until
    re-authorized.
    """

    def __init__(
        self,
        settings: Settings,
        engine: SyncEngine,
        lock: Optional[AdvisoryLock] = None,
        notifier: Optional[PlanUpdateNotifier] = None,
    ):
        self.settings = settings
        self.config = settings.sync_config
        self.engine = engine
        self.db_manager = engine.db_manager
        self.lock = lock or AdvisoryLock(engine.db_manager, lease_seconds=self.config.lock_lease_seconds)
        self.notifier = notifier or LoggingNotifier()
        self.registry = PendingRunRegistry()
        self.suppressed: Set[str] = set()
        self.runs_started = 0
        self._tasks: Set[asyncio.Task] = set()
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def _loop(self) -> asyncio.AbstractEventLoop:
        return asyncio.get_event_loop()

    def schedule_sync(self, user_id: str, debounce_ms: Optional[int] = None) -> None:
        """Request a sync for ``user_id``; returns immediately."""
        if user_id in self.suppressed and self._still_suppressed(user_id):
            log.debug("schedule.suppressed", user_id=user_id)
            return

        state = self.registry.get(user_id)
        if state.running:
            state.follow_up = True
            return
        if state.retry is not None:
            # The pending retry will pick this request up
            return

        if state.debounce is not None:
            state.debounce.cancel()
        delay_ms = self.config.debounce_ms if debounce_ms is None else debounce_ms
        state.debounce = self._loop.call_later(delay_ms / 1000, self._start, user_id)

    def mark_item_changed(self, item_id: str) -> Optional[SyncLink]:
        """Queue a locally changed item for push and schedule its owner."""
        with self.db_manager.get_session() as session:
            link = self.db_manager.mark_item_pending(session, item_id)
            owner = self.db_manager.get_item_owner_user_id(session, item_id)
            session.commit()
        if link is not None and owner is not None:
            self.schedule_sync(owner)
        return link

    def _still_suppressed(self, user_id: str) -> bool:
        """Re-read the stored credential; a re-consent from any process lifts suppression."""
        with self.db_manager.get_session() as session:
            credential = self.db_manager.get_credential(session, user_id)
        if credential is not None and not credential.needs_reauth:
            self.suppressed.discard(user_id)
            log.info("schedule.unsuppressed", user_id=user_id)
            return False
        return True

    def reauthorized(self, user_id: str) -> None:
        """Lift suppression after the user re-consented."""
        self.suppressed.discard(user_id)
        with self.db_manager.get_session() as session:
            self.db_manager.set_credential_reauth(session, user_id, False)
            session.commit()

    def _start(self, user_id: str) -> None:
        state = self.registry.get(user_id)
        state.debounce = None
        state.retry = None
        task = self._loop.create_task(self._run(user_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _schedule_retry(self, user_id: str, reason: str) -> None:
        state = self.registry.get(user_id)
        state.retry_attempt += 1
        state.follow_up = False
        if state.retry_attempt > self.config.max_retry_attempts:
            log.error("schedule.retry_exhausted", user_id=user_id, reason=reason, attempts=state.retry_attempt - 1)
            self.registry.discard(user_id)
            return
        delay_ms = retry_delay_ms(state.retry_attempt, self.config.retry_base_ms, self.config.retry_max_ms)
        if state.debounce is not None:
            state.debounce.cancel()
            state.debounce = None
        state.retry = self._loop.call_later(delay_ms / 1000, self._start, user_id)
        log.info("schedule.retry", user_id=user_id, reason=reason, attempt=state.retry_attempt, delay_ms=delay_ms)

    async def _run(self, user_id: str) -> None:
        state = self.registry.get(user_id)
        if state.running:
            state.follow_up = True
            return

        state.running = True
        outcome = 'ok'
        summary: Optional[SyncSummary] = None
        try:
            async with self.lock.hold(user_id) as acquired:
                if not acquired:
                    outcome = 'lock_busy'
                else:
                    self.runs_started += 1
                    summary = await self.engine.sync_user(user_id)
        except AuthenticationError as e:
            outcome = 'auth_invalid'
            log.bind(user_id=user_id).warning("sync.suppressed", **e.to_log())
        except Exception:
            outcome = 'failed'
            log.exception("sync.failed", user_id=user_id)
        finally:
            state.running = False

        if outcome == 'auth_invalid':
            with self.db_manager.get_session() as session:
                self.db_manager.set_credential_reauth(session, user_id, True)
                session.commit()
            self.suppressed.add(user_id)
            self.registry.discard(user_id)
            return
        if outcome in ('lock_busy', 'failed'):
            self._schedule_retry(user_id, outcome)
            return

        if summary is not None and summary.local_changes > 0:
            await self.notifier.emit_plan_update(user_id, summary)

        if summary is not None and any(e.kind == ErrorKind.TRANSIENT.value for e in summary.errors):
            self._schedule_retry(user_id, 'transient_errors')
            return

        state.retry_attempt = 0
        if state.follow_up:
            state.follow_up = False
            self.schedule_sync(user_id)
        else:
            self.registry.discard_if_idle(user_id)

    @property
    def _watching(self) -> bool:
        return self.settings.webhook_address is not None

    def start(self) -> None:
        """Start the periodic loop that renews watch channels and, if enabled, polls."""
        if (self.config.enable_polling_fallback or self._watching) and self._poll_task is None:
            self._poll_task = self._loop.create_task(self._poll())

    async def _poll(self) -> None:
        interval = self.config.poll_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            if self._watching:
                try:
                    await self.engine.refresh_expiring_watches()
                except Exception:
                    log.exception("poll.watch_renewal_failed")
            if not self.config.enable_polling_fallback:
                continue
            try:
                with self.db_manager.get_session() as session:
                    user_ids = self.db_manager.list_connected_user_ids(session)
            except Exception:
                log.exception("poll.failed")
                continue
            for user_id in user_ids:
                self.schedule_sync(user_id, debounce_ms=0)

    async def wait_idle(self, timeout: float = 5.0) -> None:
        """Wait until no timers are armed and no run is in flight."""
        async def settle():
            while self._tasks or any(not self.registry.get(uid).idle for uid in self.registry):
                await asyncio.sleep(0.005)
        await asyncio.wait_for(settle(), timeout)

    async def stop(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        self.registry.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.notifier.close()
