from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from caresync.database import AppointmentDB
from caresync.models import Bill, SyncDirection, SyncStatus, SyncSummary
from caresync.push import PushOutcome, PushPipeline
from caresync.services.base import AuthenticationError, ConflictError, EventNotFoundError, TransientError

from conftest import connect_user, get_appointment, get_link, seed_appointment


@pytest.fixture
def pipeline(settings, db):
    return PushPipeline(settings, db)


def edit_summary(db, item_id, summary):
    with db.get_session() as session:
        db.update_appointment_from_remote(session, item_id, summary=summary)
        db.mark_item_pending(session, item_id)
        session.commit()


@pytest.mark.asyncio
async def test_first_push_creates_event_and_records_link(pipeline, db, fake_client):
    connect_user(db)
    _, item_id = seed_appointment(db)

    outcome = await pipeline.push_item(fake_client, 'primary', get_appointment(db, item_id))

    assert outcome == PushOutcome.CREATED
    assert fake_client.calls['insert_event'] == 1
    link = get_link(db, item_id)
    event = fake_client.events['primary'][link.event_id]
    assert event['extendedProperties']['private']['caresyncItemId'] == item_id
    assert link.sync_status == SyncStatus.IDLE
    assert link.last_sync_direction == SyncDirection.PUSH
    assert link.calendar_id == 'primary'
    assert link.local_hash
    assert link.remote_updated_at == datetime.fromisoformat(event['updated'].replace('Z', '+00:00'))


@pytest.mark.asyncio
async def test_unchanged_item_skips_remote_calls(pipeline, db, fake_client):
    connect_user(db)
    _, item_id = seed_appointment(db)
    await pipeline.push_item(fake_client, 'primary', get_appointment(db, item_id))
    fake_client.calls.clear()

    with db.get_session() as session:
        db.mark_item_pending(session, item_id)
        session.commit()
    outcome = await pipeline.push_item(fake_client, 'primary', get_appointment(db, item_id))

    assert outcome == PushOutcome.UNCHANGED
    assert sum(fake_client.calls.values()) == 0
    assert get_link(db, item_id).sync_status == SyncStatus.IDLE


@pytest.mark.asyncio
async def test_changed_item_patches_existing_event(pipeline, db, fake_client):
    connect_user(db)
    _, item_id = seed_appointment(db)
    await pipeline.push_item(fake_client, 'primary', get_appointment(db, item_id))
    event_id = get_link(db, item_id).event_id

    edit_summary(db, item_id, 'Cardiology (rescheduled)')
    outcome = await pipeline.push_item(fake_client, 'primary', get_appointment(db, item_id))

    assert outcome == PushOutcome.UPDATED
    assert fake_client.calls['insert_event'] == 1
    assert fake_client.calls['patch_event'] == 1
    assert get_link(db, item_id).event_id == event_id
    assert fake_client.events['primary'][event_id]['summary'] == 'Cardiology (rescheduled)'


@pytest.mark.asyncio
async def test_deleted_remote_event_is_recreated(pipeline, db, fake_client):
    connect_user(db)
    _, item_id = seed_appointment(db)
    await pipeline.push_item(fake_client, 'primary', get_appointment(db, item_id))
    old_event_id = get_link(db, item_id).event_id
    del fake_client.events['primary'][old_event_id]

    edit_summary(db, item_id, 'Cardiology (new room)')
    outcome = await pipeline.push_item(fake_client, 'primary', get_appointment(db, item_id))

    assert outcome == PushOutcome.CREATED
    link = get_link(db, item_id)
    assert link.event_id != old_event_id
    assert link.event_id in fake_client.events['primary']
    assert fake_client.calls['insert_event'] == 2


@pytest.mark.asyncio
async def test_patch_not_found_relinks_exactly_once(pipeline, db, fake_client):
    connect_user(db)
    _, item_id = seed_appointment(db)
    await pipeline.push_item(fake_client, 'primary', get_appointment(db, item_id))
    old_event_id = get_link(db, item_id).event_id

    fake_client.fail_next('patch_event', EventNotFoundError("gone", 404))
    edit_summary(db, item_id, 'Cardiology (moved)')
    outcome = await pipeline.push_item(fake_client, 'primary', get_appointment(db, item_id))

    assert outcome == PushOutcome.CREATED
    assert fake_client.calls['patch_event'] == 1
    assert fake_client.calls['insert_event'] == 2
    link = get_link(db, item_id)
    assert link.event_id != old_event_id
    assert link.sync_status == SyncStatus.IDLE


@pytest.mark.asyncio
async def test_remote_newer_than_link_is_a_conflict(pipeline, db, fake_client):
    connect_user(db)
    _, item_id = seed_appointment(db)
    await pipeline.push_item(fake_client, 'primary', get_appointment(db, item_id))
    link = get_link(db, item_id)
    t0 = link.remote_updated_at

    fake_client.events['primary'][link.event_id]['updated'] = (t0 + timedelta(seconds=1)).isoformat()
    edit_summary(db, item_id, 'Local edit')

    with pytest.raises(ConflictError) as excinfo:
        await pipeline.push_item(fake_client, 'primary', get_appointment(db, item_id))
    assert excinfo.value.code == 'remote_newer'
    assert fake_client.calls['patch_event'] == 0


@pytest.mark.asyncio
async def test_remote_not_newer_than_link_is_accepted(pipeline, db, fake_client):
    connect_user(db)
    _, item_id = seed_appointment(db)
    await pipeline.push_item(fake_client, 'primary', get_appointment(db, item_id))
    link = get_link(db, item_id)

    # Equal timestamps are not a conflict
    fake_client.events['primary'][link.event_id]['updated'] = link.remote_updated_at.isoformat()
    edit_summary(db, item_id, 'Local edit')

    outcome = await pipeline.push_item(fake_client, 'primary', get_appointment(db, item_id))
    assert outcome == PushOutcome.UPDATED


@pytest.mark.asyncio
async def test_push_pending_isolates_failures(pipeline, db, fake_client):
    connect_user(db)
    recipient_id, first = seed_appointment(db, summary='First')
    _, second = seed_appointment(db, recipient_id=recipient_id, summary='Second')
    fake_client.fail_next('insert_event', TransientError("backend error", 503))

    summary = SyncSummary(user_id='user-1', calendar_id='primary')
    await pipeline.push_pending(fake_client, 'user-1', 'primary', summary)

    assert summary.pushed == 1
    assert len(summary.errors) == 1
    assert summary.errors[0].kind == 'transient'
    failed = summary.errors[0].item_id
    assert failed in (first, second)
    # The failed item stays queued for the next cycle
    assert get_link(db, failed).sync_status == SyncStatus.PENDING
    assert get_link(db, failed).last_error == 'backend error'


@pytest.mark.asyncio
async def test_push_pending_contains_unexpected_errors(pipeline, db, fake_client):
    connect_user(db)
    recipient_id, first = seed_appointment(db, summary='First')
    _, second = seed_appointment(db, recipient_id=recipient_id, summary='Second')
    fake_client.fail_next('insert_event', RuntimeError("response missing id"))

    summary = SyncSummary(user_id='user-1', calendar_id='primary')
    await pipeline.push_pending(fake_client, 'user-1', 'primary', summary)

    assert summary.pushed == 1
    assert [error.kind for error in summary.errors] == ['push_failed']
    failed = summary.errors[0].item_id
    assert failed in (first, second)
    assert get_link(db, failed).sync_status == SyncStatus.PENDING


@pytest.mark.asyncio
async def test_push_pending_counts_conflicts_and_keeps_item_pending(pipeline, db, fake_client):
    connect_user(db)
    _, item_id = seed_appointment(db)
    summary = SyncSummary()
    await pipeline.push_pending(fake_client, 'user-1', 'primary', summary)
    link = get_link(db, item_id)
    fake_client.events['primary'][link.event_id]['updated'] = (
        link.remote_updated_at + timedelta(minutes=5)
    ).isoformat()

    edit_summary(db, item_id, 'Local edit')
    summary = SyncSummary()
    await pipeline.push_pending(fake_client, 'user-1', 'primary', summary)

    assert summary.conflicts == 1
    assert summary.pushed == 0
    assert get_link(db, item_id).sync_status == SyncStatus.PENDING


@pytest.mark.asyncio
async def test_push_pending_reraises_auth_failure(pipeline, db, fake_client):
    connect_user(db)
    seed_appointment(db)
    fake_client.fail_next('insert_event', AuthenticationError("Invalid Credentials", 401))

    with pytest.raises(AuthenticationError):
        await pipeline.push_pending(fake_client, 'user-1', 'primary', SyncSummary())


@pytest.mark.asyncio
async def test_push_pending_drops_links_of_deleted_items(pipeline, db, fake_client):
    connect_user(db)
    _, item_id = seed_appointment(db)

    with db.get_session() as session:
        session.query(AppointmentDB).filter(AppointmentDB.item_id == item_id).delete()
        session.commit()

    summary = SyncSummary()
    await pipeline.push_pending(fake_client, 'user-1', 'primary', summary)

    assert get_link(db, item_id) is None
    assert fake_client.calls['insert_event'] == 0
    assert summary.errors == []


def test_bill_transform_uses_configured_source(settings):
    bill = Bill(item_id='b', amount=Decimal('10'), due_date=date(2024, 3, 1))
    payload = PushPipeline(settings, None).transform(bill).build_payload(bill)

    assert payload['start'] == {'date': '2024-03-01'}
    assert payload['source']['url'] == settings.app_base_url
