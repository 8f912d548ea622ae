from datetime import datetime, timedelta

import pytest
import pytz

from caresync.services.base import AuthenticationError, TransientError
from caresync.sharing import CalendarSharing, email_digest

from conftest import connect_user


@pytest.fixture
def sharing(settings, db):
    return CalendarSharing(settings, db)


def add_collaborators(db, *entries, user_id='user-1'):
    with db.get_session() as session:
        recipient_id = db.add_recipient(session, user_id)
        for email, status in entries:
            db.add_collaborator(session, recipient_id, email, status=status)
        session.commit()
    return recipient_id


def stored_credential(db, user_id='user-1'):
    with db.get_session() as session:
        return db.get_credential(session, user_id)


@pytest.mark.asyncio
async def test_grants_only_accepted_distinct_emails(sharing, db, fake_client):
    credential = connect_user(db)
    add_collaborators(
        db,
        ('Sister@Example.com ', 'accepted'),
        ('sister@example.com', 'accepted'),
        ('brother@example.com', 'pending'),
        (None, 'accepted'),
        ('aide@example.com', 'accepted'),
    )

    result = await sharing.ensure_managed_calendar_acl(credential, fake_client, 'managed')

    assert sorted(result.granted) == ['aide@example.com', 'sister@example.com']
    assert fake_client.acl['managed'] == {'sister@example.com': 'writer', 'aide@example.com': 'writer'}
    assert fake_client.calls['list_acl'] == 1
    stored = stored_credential(db)
    assert stored.managed_calendar_acl_role == 'writer'
    assert stored.managed_calendar_verified_at is not None
    assert stored.managed_calendar_acl_digest == email_digest(['aide@example.com', 'sister@example.com'])


@pytest.mark.asyncio
async def test_second_pass_within_window_makes_no_calls(sharing, db, fake_client):
    connect_user(db)
    add_collaborators(db, ('sister@example.com', 'accepted'))
    await sharing.ensure_managed_calendar_acl(stored_credential(db), fake_client, 'managed')
    fake_client.calls.clear()

    result = await sharing.ensure_managed_calendar_acl(stored_credential(db), fake_client, 'managed')

    assert not result.verified
    assert sum(fake_client.calls.values()) == 0


@pytest.mark.asyncio
async def test_new_collaborator_forces_a_pass(sharing, db, fake_client):
    connect_user(db)
    recipient_id = add_collaborators(db, ('sister@example.com', 'accepted'))
    await sharing.ensure_managed_calendar_acl(stored_credential(db), fake_client, 'managed')
    fake_client.calls.clear()

    with db.get_session() as session:
        db.add_collaborator(session, recipient_id, 'aide@example.com')
        session.commit()
    result = await sharing.ensure_managed_calendar_acl(stored_credential(db), fake_client, 'managed')

    assert result.granted == ['aide@example.com']
    assert result.skipped == ['sister@example.com']
    assert fake_client.calls['insert_acl'] == 1


@pytest.mark.asyncio
async def test_expired_window_revalidates(sharing, db, fake_client):
    connect_user(db)
    add_collaborators(db, ('sister@example.com', 'accepted'))
    await sharing.ensure_managed_calendar_acl(stored_credential(db), fake_client, 'managed')
    with db.get_session() as session:
        db.upsert_credential(
            session, 'user-1', managed_calendar_verified_at=datetime.now(pytz.UTC) - timedelta(hours=13)
        )
        session.commit()
    fake_client.calls.clear()

    result = await sharing.ensure_managed_calendar_acl(stored_credential(db), fake_client, 'managed')

    assert result.verified
    assert fake_client.calls['list_acl'] == 1
    assert fake_client.calls['insert_acl'] == 0


@pytest.mark.asyncio
async def test_duplicate_grant_counts_as_granted(sharing, db, fake_client):
    connect_user(db)
    add_collaborators(db, ('sister@example.com', 'accepted'))
    fake_client.duplicate_grants.add('sister@example.com')

    result = await sharing.ensure_managed_calendar_acl(stored_credential(db), fake_client, 'managed')

    assert result.skipped == ['sister@example.com']
    assert result.errors == []
    assert stored_credential(db).managed_calendar_acl_digest is not None


@pytest.mark.asyncio
async def test_failed_grant_is_retried_next_pass(sharing, db, fake_client):
    connect_user(db)
    add_collaborators(db, ('sister@example.com', 'accepted'))
    fake_client.fail_next('insert_acl', TransientError("backend error", 503))

    result = await sharing.ensure_managed_calendar_acl(stored_credential(db), fake_client, 'managed')
    assert len(result.errors) == 1
    assert stored_credential(db).managed_calendar_acl_digest is None

    result = await sharing.ensure_managed_calendar_acl(stored_credential(db), fake_client, 'managed')
    assert result.granted == ['sister@example.com']


@pytest.mark.asyncio
async def test_list_failure_still_grants(sharing, db, fake_client):
    connect_user(db)
    add_collaborators(db, ('sister@example.com', 'accepted'))
    fake_client.fail_next('list_acl', TransientError("backend error", 503))

    result = await sharing.ensure_managed_calendar_acl(stored_credential(db), fake_client, 'managed')

    assert result.granted == ['sister@example.com']


@pytest.mark.asyncio
async def test_auth_failure_propagates(sharing, db, fake_client):
    connect_user(db)
    add_collaborators(db, ('sister@example.com', 'accepted'))
    fake_client.fail_next('insert_acl', AuthenticationError("Invalid Credentials", 401))

    with pytest.raises(AuthenticationError):
        await sharing.ensure_managed_calendar_acl(stored_credential(db), fake_client, 'managed')


@pytest.mark.asyncio
async def test_no_collaborators_skips_listing(sharing, db, fake_client):
    credential = connect_user(db)

    result = await sharing.ensure_managed_calendar_acl(credential, fake_client, 'managed')

    assert result.verified
    assert sum(fake_client.calls.values()) == 0
