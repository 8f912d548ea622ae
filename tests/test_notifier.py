import json

import httpx
import pytest

from caresync.models import SyncSummary
from caresync.notifier import HttpNotifier, LoggingNotifier, create_notifier

from conftest import TestSettings


def make_notifier(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpNotifier("https://realtime.example.org/plan-updated", client=client)


@pytest.mark.asyncio
async def test_posts_plan_update_with_changes():
    received = []

    def handler(request):
        received.append(json.loads(request.content))
        return httpx.Response(204)

    notifier = make_notifier(handler)
    await notifier.emit_plan_update('user-1', SyncSummary(pulled=2, deleted=1))
    await notifier.close()

    assert received == [{'userId': 'user-1', 'type': 'plan_updated', 'changes': {'pulled': 2, 'deleted': 1}}]


@pytest.mark.asyncio
async def test_delivery_failure_is_logged_not_raised():
    notifier = make_notifier(lambda request: httpx.Response(503))

    await notifier.emit_plan_update('user-1')
    await notifier.close()


def test_create_notifier_follows_settings(tmp_path):
    base = dict(google_client_id='id', google_client_secret='secret', data_dir=str(tmp_path))

    assert isinstance(create_notifier(TestSettings(**base)), LoggingNotifier)
    assert isinstance(
        create_notifier(TestSettings(plan_update_url='https://realtime.example.org/plan-updated', **base)),
        HttpNotifier,
    )
