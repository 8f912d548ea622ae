"""Realtime "plan updated" signal emitted after a sync run changes local data."""

from abc import ABC, abstractmethod
from typing import Optional

import httpx
import structlog

from .config import Settings
from .models import SyncSummary

log = structlog.get_logger(__name__)


class PlanUpdateNotifier(ABC):
    @abstractmethod
    async def emit_plan_update(self, user_id: str, summary: Optional[SyncSummary] = None) -> None:
        """Tell connected clients that the user's plan changed."""

    async def close(self) -> None:
        pass


class LoggingNotifier(PlanUpdateNotifier):
    """Default notifier when no realtime endpoint is configured."""

    async def emit_plan_update(self, user_id: str, summary: Optional[SyncSummary] = None) -> None:
        log.info(
            "plan.updated",
            user_id=user_id,
            pulled=summary.pulled if summary else None,
            deleted=summary.deleted if summary else None,
        )


class HttpNotifier(PlanUpdateNotifier):
    """Posts plan-updated events to the realtime fan-out service."""

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def emit_plan_update(self, user_id: str, summary: Optional[SyncSummary] = None) -> None:
        payload = {'userId': user_id, 'type': 'plan_updated'}
        if summary is not None:
            payload['changes'] = {'pulled': summary.pulled, 'deleted': summary.deleted}
        try:
            response = await self._client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            # Delivery is best effort; clients refresh on their next poll
            log.warning("plan.update_failed", user_id=user_id, url=self.url, error=str(e))

    async def close(self) -> None:
        await self._client.aclose()


def create_notifier(settings: Settings) -> PlanUpdateNotifier:
    if settings.plan_update_url:
        return HttpNotifier(settings.plan_update_url, timeout=settings.request_timeout_seconds)
    return LoggingNotifier()
