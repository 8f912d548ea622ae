"""Database models and operations for Google sync state."""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import (
    create_engine, Boolean, Column, Date, DateTime, ForeignKey, Index, Numeric, String, Text, func
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker, Session
import pytz

from .config import Settings
from .models import (
    Appointment, Bill, BillStatus, GoogleCredential, IntegrationStatus, ItemType,
    ManagedCalendarState, Schedulable, SyncLink, SyncStatus, WatchChannel,
)

logger = logging.getLogger(__name__)

Base = declarative_base()


def _now() -> datetime:
    return datetime.now(pytz.UTC)


def _new_id() -> str:
    return uuid4().hex


class RecipientDB(Base):
    """Care recipient owned by one user."""

    __tablename__ = 'recipients'

    id = Column(String(64), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False, index=True)
    display_name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    collaborators = relationship("CollaboratorDB", back_populates="recipient")
    items = relationship("ItemDB", back_populates="recipient")


class CollaboratorDB(Base):
    """Invited collaborator; only accepted ones receive calendar access."""

    __tablename__ = 'collaborators'

    id = Column(String(64), primary_key=True, default=_new_id)
    recipient_id = Column(String(64), ForeignKey('recipients.id'), nullable=False, index=True)
    email = Column(String(320), nullable=True)
    status = Column(String(20), nullable=False, default='pending')  # 'pending', 'accepted'
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    recipient = relationship("RecipientDB", back_populates="collaborators")


class ItemDB(Base):
    __tablename__ = 'items'

    id = Column(String(64), primary_key=True, default=_new_id)
    recipient_id = Column(String(64), ForeignKey('recipients.id'), nullable=False, index=True)
    item_type = Column(String(20), nullable=False)  # 'appointment', 'bill'
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    recipient = relationship("RecipientDB", back_populates="items")


class AppointmentDB(Base):
    __tablename__ = 'appointments'

    id = Column(String(64), primary_key=True, default=_new_id)
    item_id = Column(String(64), ForeignKey('items.id'), nullable=False, unique=True)
    summary = Column(String(500), nullable=False, default='')
    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=False)
    start_time_zone = Column(String(64), nullable=True)
    end_time_zone = Column(String(64), nullable=True)
    start_offset = Column(String(6), nullable=True)
    end_offset = Column(String(6), nullable=True)
    location = Column(String(500), nullable=True)
    prep_note = Column(Text, nullable=True)
    assigned_collaborator_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


class BillDB(Base):
    __tablename__ = 'bills'

    id = Column(String(64), primary_key=True, default=_new_id)
    item_id = Column(String(64), ForeignKey('items.id'), nullable=False, unique=True)
    amount = Column(Numeric(12, 2), nullable=True)
    due_date = Column(Date, nullable=True)
    statement_date = Column(Date, nullable=True)
    status = Column(String(20), nullable=False, default=BillStatus.TODO.value)
    pay_url = Column(String(1000), nullable=True)
    task_key = Column(String(255), nullable=True)
    assigned_collaborator_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


class GoogleCredentialDB(Base):
    """Per-user OAuth credential and managed calendar bookkeeping."""

    __tablename__ = 'google_credentials'

    user_id = Column(String(64), primary_key=True)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    scope = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    token_type = Column(String(40), nullable=True)
    id_token = Column(Text, nullable=True)

    # Active calendar and incremental pull cursor
    calendar_id = Column(String(255), nullable=True)
    sync_token = Column(String(1000), nullable=True)
    last_pulled_at = Column(DateTime(timezone=True), nullable=True)
    seeded_at = Column(DateTime(timezone=True), nullable=True)

    managed_calendar_id = Column(String(255), nullable=True)
    managed_calendar_summary = Column(String(255), nullable=True)
    managed_calendar_state = Column(String(20), nullable=False, default=ManagedCalendarState.NONE.value)
    managed_calendar_verified_at = Column(DateTime(timezone=True), nullable=True)
    managed_calendar_acl_role = Column(String(20), nullable=True)
    managed_calendar_acl_digest = Column(String(64), nullable=True)
    legacy_calendar_id = Column(String(255), nullable=True)

    needs_reauth = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


class GoogleSyncLinkDB(Base):
    """One row per local item mirrored to Google."""

    __tablename__ = 'google_sync_links'

    item_id = Column(String(64), ForeignKey('items.id'), primary_key=True)
    calendar_id = Column(String(255), nullable=True)
    event_id = Column(String(1024), nullable=True)
    etag = Column(String(255), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_direction = Column(String(10), nullable=True)  # 'push', 'pull'
    local_hash = Column(String(64), nullable=True)
    remote_updated_at = Column(DateTime(timezone=True), nullable=True)
    sync_status = Column(String(10), nullable=False, default=SyncStatus.IDLE.value)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        Index('idx_google_sync_link_event', 'event_id'),
        Index('idx_google_sync_link_status', 'sync_status', 'updated_at'),
    )


class SyncLockDB(Base):
    """Lease rows used as the advisory lock on datastores without native locks."""

    __tablename__ = 'sync_locks'

    lock_key = Column(String(128), primary_key=True)
    owner = Column(String(64), nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    expires_at = Column(DateTime(timezone=True), nullable=False)


class GoogleWatchChannelDB(Base):
    """Open push-notification channel; at most one per user and calendar."""

    __tablename__ = 'google_watch_channels'

    channel_id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    calendar_id = Column(String(255), nullable=False)
    resource_id = Column(String(255), nullable=True, index=True)
    resource_uri = Column(Text, nullable=True)
    expiration = Column(DateTime(timezone=True), nullable=True)
    channel_token = Column(String(64), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    __table_args__ = (
        Index('idx_google_watch_user_calendar', 'user_id', 'calendar_id'),
    )


_LINK_FIELDS = {
    'calendar_id', 'event_id', 'etag', 'last_synced_at', 'last_sync_direction',
    'local_hash', 'remote_updated_at', 'sync_status', 'last_error',
}

_CREDENTIAL_FIELDS = {
    column.name for column in GoogleCredentialDB.__table__.columns
} - {'user_id', 'created_at', 'updated_at'}


def _enum_value(value):
    return getattr(value, 'value', value)


class DatabaseManager:
    """Database manager for sync state."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True
        )
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def get_credential(self, session: Session, user_id: str) -> Optional[GoogleCredential]:
        row = session.get(GoogleCredentialDB, user_id)
        return GoogleCredential.model_validate(row) if row else None

    def upsert_credential(self, session: Session, user_id: str, **fields: Any) -> GoogleCredential:
        """Create or update a user's credential row.

        Only the supplied fields change. Switching ``calendar_id`` to a
        different value resets the pull cursor and last pull time unless the
        caller sets them explicitly.

        Args:
            session: Database session
            user_id: Owning user
            **fields: Column values to write

        Returns:
            The stored credential
        """
        unknown = set(fields) - _CREDENTIAL_FIELDS
        if unknown:
            raise ValueError(f"Unknown credential fields: {sorted(unknown)}")

        row = session.get(GoogleCredentialDB, user_id)
        if row is None:
            if 'access_token' not in fields:
                raise ValueError("access_token is required for a new credential")
            row = GoogleCredentialDB(user_id=user_id)
            session.add(row)
        elif 'calendar_id' in fields and fields['calendar_id'] != row.calendar_id:
            fields.setdefault('sync_token', None)
            fields.setdefault('last_pulled_at', None)

        for key, value in fields.items():
            setattr(row, key, _enum_value(value))
        row.updated_at = _now()
        session.flush()
        return GoogleCredential.model_validate(row)

    def set_credential_reauth(self, session: Session, user_id: str, needs_reauth: bool) -> None:
        row = session.get(GoogleCredentialDB, user_id)
        if row is not None:
            row.needs_reauth = needs_reauth
            row.updated_at = _now()

    def list_connected_user_ids(self, session: Session) -> List[str]:
        """Users with a credential that does not need re-authorization."""
        rows = session.query(GoogleCredentialDB.user_id).filter(
            GoogleCredentialDB.needs_reauth.is_(False)
        ).order_by(GoogleCredentialDB.user_id).all()
        return [row.user_id for row in rows]

    # ------------------------------------------------------------------
    # Sync links
    # ------------------------------------------------------------------

    def get_sync_link(self, session: Session, item_id: str) -> Optional[SyncLink]:
        row = session.get(GoogleSyncLinkDB, item_id)
        return SyncLink.model_validate(row) if row else None

    def upsert_sync_link(self, session: Session, item_id: str, **changes: Any) -> SyncLink:
        """Merge ``changes`` into the item's link, creating it if absent.

        Fields not named in ``changes`` keep their stored value; an explicit
        ``None`` clears a field.
        """
        unknown = set(changes) - _LINK_FIELDS
        if unknown:
            raise ValueError(f"Unknown sync link fields: {sorted(unknown)}")

        row = session.get(GoogleSyncLinkDB, item_id)
        if row is None:
            row = GoogleSyncLinkDB(item_id=item_id, sync_status=SyncStatus.IDLE.value)
            session.add(row)
        for key, value in changes.items():
            setattr(row, key, _enum_value(value))
        row.updated_at = _now()
        session.flush()
        return SyncLink.model_validate(row)

    def mark_item_pending(self, session: Session, item_id: str) -> Optional[SyncLink]:
        """Flag an item for push after a local change.

        The stored hash is left alone so the push decides whether anything
        actually changed. Items whose owner has no credential lose their link.

        Returns:
            The pending link, or None when the owner is not connected
        """
        owner = self.get_item_owner_user_id(session, item_id)
        if owner is None:
            return None
        if session.get(GoogleCredentialDB, owner) is None:
            self.delete_sync_link(session, item_id)
            return None
        return self.upsert_sync_link(
            session, item_id, sync_status=SyncStatus.PENDING, last_error=None
        )

    def mark_sync_success(
        self,
        session: Session,
        item_id: str,
        *,
        direction,
        last_synced_at: Optional[datetime] = None,
        **changes: Any,
    ) -> SyncLink:
        return self.upsert_sync_link(
            session,
            item_id,
            last_sync_direction=direction,
            last_synced_at=last_synced_at or _now(),
            sync_status=SyncStatus.IDLE,
            last_error=None,
            **changes,
        )

    def mark_sync_error(self, session: Session, item_id: str, message: str) -> SyncLink:
        return self.upsert_sync_link(
            session, item_id, sync_status=SyncStatus.ERROR, last_error=message
        )

    def delete_sync_link(self, session: Session, item_id: str) -> None:
        session.query(GoogleSyncLinkDB).filter(GoogleSyncLinkDB.item_id == item_id).delete()

    def find_link_by_event(self, session: Session, event_id: str) -> Optional[SyncLink]:
        row = session.query(GoogleSyncLinkDB).filter(
            GoogleSyncLinkDB.event_id == event_id
        ).first()
        return SyncLink.model_validate(row) if row else None

    def _user_links(self, session: Session, user_id: str):
        return session.query(GoogleSyncLinkDB, ItemDB).join(
            ItemDB, GoogleSyncLinkDB.item_id == ItemDB.id
        ).join(
            RecipientDB, ItemDB.recipient_id == RecipientDB.id
        ).filter(RecipientDB.user_id == user_id)

    def list_pending_items(self, session: Session, user_id: str) -> List[Tuple[str, ItemType]]:
        """Pending items for a user, oldest change first."""
        rows = self._user_links(session, user_id).filter(
            GoogleSyncLinkDB.sync_status == SyncStatus.PENDING.value
        ).order_by(GoogleSyncLinkDB.updated_at.asc()).all()
        return [(link.item_id, ItemType(item.item_type)) for link, item in rows]

    def list_links_for_user(self, session: Session, user_id: str) -> List[SyncLink]:
        rows = self._user_links(session, user_id).order_by(GoogleSyncLinkDB.item_id).all()
        return [SyncLink.model_validate(link) for link, _ in rows]

    def queue_sync_for_user(
        self, session: Session, user_id: str, calendar_id: Optional[str] = None
    ) -> int:
        """Mark every item with schedule details pending for push.

        Returns:
            Number of items queued
        """
        items = session.query(ItemDB).join(
            RecipientDB, ItemDB.recipient_id == RecipientDB.id
        ).filter(RecipientDB.user_id == user_id).all()

        queued = 0
        for item in items:
            if self._detail_row(session, item) is None:
                continue
            changes: Dict[str, Any] = {'sync_status': SyncStatus.PENDING, 'last_error': None}
            if calendar_id is not None:
                changes['calendar_id'] = calendar_id
            self.upsert_sync_link(session, item.id, **changes)
            queued += 1
        return queued

    # ------------------------------------------------------------------
    # Schedulable entities
    # ------------------------------------------------------------------

    def _detail_row(self, session: Session, item: ItemDB):
        model = AppointmentDB if item.item_type == ItemType.APPOINTMENT.value else BillDB
        return session.query(model).filter(model.item_id == item.id).first()

    def get_item_owner_user_id(self, session: Session, item_id: str) -> Optional[str]:
        row = session.query(RecipientDB.user_id).join(
            ItemDB, ItemDB.recipient_id == RecipientDB.id
        ).filter(ItemDB.id == item_id).first()
        return row.user_id if row else None

    def get_appointment(self, session: Session, item_id: str) -> Optional[Appointment]:
        row = session.query(AppointmentDB, ItemDB).join(
            ItemDB, AppointmentDB.item_id == ItemDB.id
        ).filter(AppointmentDB.item_id == item_id).first()
        if row is None:
            return None
        appt, item = row
        return Appointment(
            item_id=appt.item_id,
            recipient_id=item.recipient_id,
            summary=appt.summary or '',
            start_at=appt.start_at,
            end_at=appt.end_at,
            start_time_zone=appt.start_time_zone,
            end_time_zone=appt.end_time_zone,
            start_offset=appt.start_offset,
            end_offset=appt.end_offset,
            location=appt.location,
            prep_note=appt.prep_note,
            assigned_collaborator_id=appt.assigned_collaborator_id,
            created_at=appt.created_at,
        )

    def get_bill(self, session: Session, item_id: str) -> Optional[Bill]:
        row = session.query(BillDB, ItemDB).join(
            ItemDB, BillDB.item_id == ItemDB.id
        ).filter(BillDB.item_id == item_id).first()
        if row is None:
            return None
        bill, item = row
        return Bill(
            item_id=bill.item_id,
            recipient_id=item.recipient_id,
            amount=bill.amount,
            due_date=bill.due_date,
            statement_date=bill.statement_date,
            status=BillStatus(bill.status),
            pay_url=bill.pay_url,
            task_key=bill.task_key,
            assigned_collaborator_id=bill.assigned_collaborator_id,
            created_at=bill.created_at,
        )

    def get_linked_item(self, session: Session, item_id: str) -> Optional[Schedulable]:
        """Load the appointment or bill behind an item id."""
        item = session.get(ItemDB, item_id)
        if item is None:
            return None
        if item.item_type == ItemType.APPOINTMENT.value:
            return self.get_appointment(session, item_id)
        if item.item_type == ItemType.BILL.value:
            return self.get_bill(session, item_id)
        logger.warning(f"Item {item_id} has unsupported type {item.item_type!r}")
        return None

    def update_appointment_from_remote(
        self, session: Session, item_id: str, **fields: Any
    ) -> Optional[Appointment]:
        """Apply remote edits to an appointment without re-queuing a push."""
        row = session.query(AppointmentDB).filter(AppointmentDB.item_id == item_id).first()
        if row is None:
            return None
        for key, value in fields.items():
            setattr(row, key, value)
        session.flush()
        return self.get_appointment(session, item_id)

    def update_bill_from_remote(self, session: Session, item_id: str, **fields: Any) -> Optional[Bill]:
        row = session.query(BillDB).filter(BillDB.item_id == item_id).first()
        if row is None:
            return None
        for key, value in fields.items():
            setattr(row, key, _enum_value(value))
        session.flush()
        return self.get_bill(session, item_id)

    def add_recipient(self, session: Session, user_id: str, display_name: Optional[str] = None) -> str:
        row = RecipientDB(user_id=user_id, display_name=display_name)
        session.add(row)
        session.flush()
        return row.id

    def add_collaborator(
        self, session: Session, recipient_id: str, email: Optional[str], status: str = 'accepted'
    ) -> str:
        row = CollaboratorDB(recipient_id=recipient_id, email=email, status=status)
        session.add(row)
        session.flush()
        return row.id

    def add_appointment(
        self,
        session: Session,
        recipient_id: str,
        *,
        start_at: datetime,
        end_at: datetime,
        summary: str = '',
        item_id: Optional[str] = None,
        **fields: Any,
    ) -> str:
        """Insert an item with appointment details.

        Returns:
            The new item id
        """
        item = ItemDB(id=item_id or _new_id(), recipient_id=recipient_id, item_type=ItemType.APPOINTMENT.value)
        session.add(item)
        session.flush()
        session.add(AppointmentDB(item_id=item.id, summary=summary, start_at=start_at, end_at=end_at, **fields))
        session.flush()
        return item.id

    def add_bill(
        self,
        session: Session,
        recipient_id: str,
        *,
        amount: Optional[Decimal] = None,
        due_date: Optional[date] = None,
        item_id: Optional[str] = None,
        **fields: Any,
    ) -> str:
        item = ItemDB(id=item_id or _new_id(), recipient_id=recipient_id, item_type=ItemType.BILL.value)
        session.add(item)
        session.flush()
        if 'status' in fields:
            fields['status'] = _enum_value(fields['status'])
        session.add(BillDB(item_id=item.id, amount=amount, due_date=due_date, **fields))
        session.flush()
        return item.id

    def list_accepted_collaborator_emails(self, session: Session, user_id: str) -> List[str]:
        """Distinct, trimmed, lower-cased emails of accepted collaborators."""
        rows = session.query(CollaboratorDB.email).join(
            RecipientDB, CollaboratorDB.recipient_id == RecipientDB.id
        ).filter(
            RecipientDB.user_id == user_id,
            CollaboratorDB.status == 'accepted',
            CollaboratorDB.email.isnot(None),
        ).all()

        emails = []
        for row in rows:
            email = row.email.strip().lower()
            if email and email not in emails:
                emails.append(email)
        return emails

    def get_integration_status(self, session: Session, user_id: str) -> IntegrationStatus:
        credential = self.get_credential(session, user_id)
        if credential is None:
            return IntegrationStatus(user_id=user_id)

        links = self._user_links(session, user_id).with_entities(
            func.max(GoogleSyncLinkDB.last_synced_at),
        ).one()
        pending = self._user_links(session, user_id).filter(
            GoogleSyncLinkDB.sync_status == SyncStatus.PENDING.value
        ).count()
        errored = self._user_links(session, user_id).filter(
            GoogleSyncLinkDB.sync_status == SyncStatus.ERROR.value
        ).count()

        return IntegrationStatus(
            user_id=user_id,
            connected=True,
            needs_reauth=credential.needs_reauth,
            calendar_id=credential.calendar_id,
            managed_calendar_id=credential.managed_calendar_id,
            managed_calendar_state=credential.managed_calendar_state,
            last_pulled_at=credential.last_pulled_at,
            last_synced_at=links[0],
            pending_items=pending,
            error_items=errored,
        )

    # ------------------------------------------------------------------
    # Watch channels
    # ------------------------------------------------------------------

    def get_watch_channel(self, session: Session, user_id: str, calendar_id: str) -> Optional[WatchChannel]:
        row = session.query(GoogleWatchChannelDB).filter(
            GoogleWatchChannelDB.user_id == user_id,
            GoogleWatchChannelDB.calendar_id == calendar_id,
        ).order_by(GoogleWatchChannelDB.created_at.desc()).first()
        return WatchChannel.model_validate(row) if row else None

    def find_watch_channel(
        self,
        session: Session,
        channel_id: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> Optional[WatchChannel]:
        """Look a channel up by id, falling back to the watched resource id."""
        row = session.get(GoogleWatchChannelDB, channel_id) if channel_id else None
        if row is None and resource_id:
            row = session.query(GoogleWatchChannelDB).filter(
                GoogleWatchChannelDB.resource_id == resource_id
            ).first()
        return WatchChannel.model_validate(row) if row else None

    def list_watch_channels_for_user(self, session: Session, user_id: str) -> List[WatchChannel]:
        rows = session.query(GoogleWatchChannelDB).filter(GoogleWatchChannelDB.user_id == user_id).all()
        return [WatchChannel.model_validate(row) for row in rows]

    def list_expiring_watch_channels(self, session: Session, threshold: datetime) -> List[WatchChannel]:
        """Channels that expire before ``threshold``, soonest first."""
        rows = session.query(GoogleWatchChannelDB).filter(
            GoogleWatchChannelDB.expiration.isnot(None),
            GoogleWatchChannelDB.expiration <= threshold,
        ).order_by(GoogleWatchChannelDB.expiration).all()
        return [WatchChannel.model_validate(row) for row in rows]

    def upsert_watch_channel(self, session: Session, channel: WatchChannel) -> WatchChannel:
        row = session.get(GoogleWatchChannelDB, channel.channel_id)
        if row is None:
            row = GoogleWatchChannelDB(channel_id=channel.channel_id)
            session.add(row)
        for key, value in channel.model_dump(exclude={'channel_id'}).items():
            setattr(row, key, value)
        row.updated_at = _now()
        session.flush()
        return WatchChannel.model_validate(row)

    def delete_watch_channel(self, session: Session, channel_id: str) -> bool:
        deleted = session.query(GoogleWatchChannelDB).filter(
            GoogleWatchChannelDB.channel_id == channel_id
        ).delete(synchronize_session=False)
        return bool(deleted)
