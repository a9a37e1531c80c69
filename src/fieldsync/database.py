"""Database models and operations for sync state management."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    create_engine, Column, String, DateTime, Boolean, Integer, BigInteger, JSON,
    Index, UniqueConstraint, or_
)
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID, insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.types import TypeDecorator, CHAR
import pytz

from .config import Settings
from .errors import MissingIdentifier
from .models import (
    AppointmentSyncRecord, ConflictPolicy, FieldMapping, IntegrationConfig, SyncDirection, SyncState,
    ensure_timezone_aware
)

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(pytz.UTC)


class GUID(TypeDecorator):
    """Platform-independent GUID type."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PostgresUUID())
        else:
            return dialect.type_descriptor(CHAR(32))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == 'postgresql':
            return str(value)
        else:
            if not isinstance(value, UUID):
                return "%.32x" % UUID(value).int
            else:
                return "%.32x" % value.int

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        else:
            if not isinstance(value, UUID):
                return UUID(value)
            return value


class AppointmentSyncDB(Base):
    """Correlation of one logical appointment across the FSS and the CRM."""

    __tablename__ = 'appointment_syncs'

    id = Column(GUID(), primary_key=True, default=uuid4)
    location_id = Column(String(255), nullable=False, index=True)

    # Either side may be empty while propagation is in flight, never both
    fss_appointment_id = Column(String(255), nullable=True)
    crm_appointment_id = Column(String(255), nullable=True)
    crm_calendar_id = Column(String(255), nullable=True)
    fss_team_id = Column(String(255), nullable=True)

    # Last-known modification state per side (staleness gate)
    fss_last_modified = Column(DateTime(timezone=True), nullable=True)
    crm_last_modified = Column(DateTime(timezone=True), nullable=True)
    fss_content_hash = Column(String(64), nullable=True)
    crm_content_hash = Column(String(64), nullable=True)

    sync_direction = Column(String(20), nullable=False, default=SyncDirection.BIDIRECTIONAL.value)
    conflict_resolution = Column(String(20), nullable=False, default=ConflictPolicy.TIMESTAMP.value)
    sync_state = Column(String(20), nullable=False, default=SyncState.UNSYNCED.value)
    status = Column(String(50), nullable=True)  # Cancellation is a status, rows are never deleted

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint('fss_appointment_id', name='uq_appointment_sync_fss'),
        UniqueConstraint('crm_appointment_id', name='uq_appointment_sync_crm'),
        Index('idx_appointment_sync_location_state', 'location_id', 'sync_state'),
        Index('idx_appointment_sync_calendar', 'crm_calendar_id'),
    )

    def to_model(self) -> AppointmentSyncRecord:
        """Detached snapshot of the row."""
        return AppointmentSyncRecord(
            location_id=self.location_id,
            fss_appointment_id=self.fss_appointment_id,
            crm_appointment_id=self.crm_appointment_id,
            crm_calendar_id=self.crm_calendar_id,
            fss_team_id=self.fss_team_id,
            fss_last_modified=self.fss_last_modified,
            crm_last_modified=self.crm_last_modified,
            fss_content_hash=self.fss_content_hash,
            crm_content_hash=self.crm_content_hash,
            sync_direction=SyncDirection(self.sync_direction),
            conflict_resolution=ConflictPolicy(self.conflict_resolution),
            sync_state=SyncState(self.sync_state),
            status=self.status,
            created_at=self.created_at,
            updated_at=self.updated_at,
            last_sync_at=self.last_sync_at,
        )


class TeamCalendarMappingDB(Base):
    """Per-location correspondence between an FSS team and a CRM calendar."""

    __tablename__ = 'team_calendar_mappings'

    id = Column(GUID(), primary_key=True, default=uuid4)
    location_id = Column(String(255), nullable=False)
    fss_team_id = Column(String(255), nullable=False)
    fss_team_name = Column(String(255), nullable=True)  # Advisory only
    crm_calendar_id = Column(String(255), nullable=False)
    crm_calendar_name = Column(String(255), nullable=True)  # Advisory only
    enabled = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint('location_id', 'fss_team_id', name='uq_team_calendar_mapping'),
        Index('idx_team_calendar_mapping_calendar', 'location_id', 'crm_calendar_id'),
        Index('idx_team_calendar_mapping_enabled', 'location_id', 'enabled'),
    )


class QuoteSyncDB(Base):
    """Idempotency guard for quote propagation."""

    __tablename__ = 'quote_syncs'

    id = Column(GUID(), primary_key=True, default=uuid4)
    location_id = Column(String(255), nullable=False)
    fss_quote_id = Column(String(255), nullable=False)
    fss_lead_id = Column(String(255), nullable=True)
    crm_contact_id = Column(String(255), nullable=True)
    crm_opportunity_id = Column(String(255), nullable=True)
    content_hash = Column(String(64), nullable=True)
    quote_last_modified = Column(DateTime(timezone=True), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint('location_id', 'fss_quote_id', name='uq_quote_sync'),
        Index('idx_quote_sync_contact', 'crm_contact_id'),
    )


class IntegrationConfigDB(Base):
    """Per-location integration settings."""

    __tablename__ = 'integration_configs'

    location_id = Column(String(255), primary_key=True)
    enabled = Column(Boolean, nullable=False, default=False)

    sync_appointments = Column(Boolean, nullable=False, default=False)
    appointment_sync_interval = Column(Integer, nullable=False, default=15)
    appointment_conflict_resolution = Column(String(20), nullable=False, default=ConflictPolicy.TIMESTAMP.value)
    last_appointment_sync_at = Column(BigInteger, nullable=True)  # Epoch ms, compare-and-set only
    crm_calendar_id = Column(String(255), nullable=True)

    sync_quotes = Column(Boolean, nullable=False, default=True)
    quote_polling_enabled = Column(Boolean, nullable=False, default=False)
    quote_polling_interval = Column(Integer, nullable=False, default=15)
    last_quote_poll_at = Column(BigInteger, nullable=True)  # Epoch ms, compare-and-set only
    quote_discovery_cursor = Column(String(255), nullable=True)

    create_opportunities = Column(Boolean, nullable=False, default=True)
    crm_tags = Column(JSON, nullable=True)
    custom_field_prefix = Column(String(100), nullable=False, default='fss_quote_')
    crm_pipeline_id = Column(String(255), nullable=True)
    crm_pipeline_stage_id = Column(String(255), nullable=True)
    field_mappings = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_model(self) -> IntegrationConfig:
        """Convert the row into the engine-facing config model."""
        return IntegrationConfig(
            location_id=self.location_id,
            enabled=self.enabled,
            sync_appointments=self.sync_appointments,
            appointment_sync_interval=self.appointment_sync_interval,
            appointment_conflict_resolution=ConflictPolicy(self.appointment_conflict_resolution),
            last_appointment_sync_at=self.last_appointment_sync_at,
            sync_quotes=self.sync_quotes,
            quote_polling_enabled=self.quote_polling_enabled,
            quote_polling_interval=self.quote_polling_interval,
            last_quote_poll_at=self.last_quote_poll_at,
            crm_calendar_id=self.crm_calendar_id,
            create_opportunities=self.create_opportunities,
            crm_tags=self.crm_tags or [],
            custom_field_prefix=self.custom_field_prefix,
            crm_pipeline_id=self.crm_pipeline_id,
            crm_pipeline_stage_id=self.crm_pipeline_stage_id,
            quote_discovery_cursor=self.quote_discovery_cursor,
            field_mappings=[FieldMapping(**m) for m in (self.field_mappings or [])],
        )


class DatabaseManager:
    """Database manager for sync state, mappings and integration config."""

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
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def close(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    def _insert(self, model):
        """Dialect-specific INSERT supporting ON CONFLICT."""
        if self.engine.dialect.name == 'postgresql':
            return pg_insert(model)
        return sqlite_insert(model)

    def _upsert(
        self,
        session: Session,
        model,
        index_elements: List[str],
        insert_values: Dict[str, Any],
        update_values: Dict[str, Any]
    ) -> None:
        """Single constrained INSERT ... ON CONFLICT DO UPDATE."""
        stmt = self._insert(model).values(**insert_values)
        if update_values:
            stmt = stmt.on_conflict_do_update(index_elements=index_elements, set_=update_values)
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
        session.execute(stmt)

    # Sync State Store

    def get_appointment_sync(
        self,
        session: Session,
        fss_appointment_id: Optional[str] = None,
        crm_appointment_id: Optional[str] = None
    ) -> Optional[AppointmentSyncDB]:
        """Get the sync record matching either appointment ID.

        Args:
            session: Database session
            fss_appointment_id: FSS appointment ID
            crm_appointment_id: CRM appointment ID

        Returns:
            Sync record or None if not found
        """
        conditions = []
        if fss_appointment_id:
            conditions.append(AppointmentSyncDB.fss_appointment_id == fss_appointment_id)
        if crm_appointment_id:
            conditions.append(AppointmentSyncDB.crm_appointment_id == crm_appointment_id)
        if not conditions:
            return None

        return session.query(AppointmentSyncDB).filter(or_(*conditions)).first()

    def upsert_appointment_sync(
        self,
        session: Session,
        location_id: str,
        fss_appointment_id: Optional[str] = None,
        crm_appointment_id: Optional[str] = None,
        **fields
    ) -> AppointmentSyncDB:
        """Atomically insert or update a sync record keyed by whichever ID is known.

        The write is a single INSERT ... ON CONFLICT DO UPDATE on the FSS ID when
        present, otherwise on the CRM ID, so concurrent passes for the same
        appointment collapse onto one row. If the insert instead collides with the
        other unique key (a concurrent pass created the row from the opposite
        side) it is retried once as an update of that row.

        Args:
            session: Database session
            location_id: Location the appointment belongs to
            fss_appointment_id: FSS appointment ID
            crm_appointment_id: CRM appointment ID
            **fields: Column values to write

        Returns:
            The stored sync record

        Raises:
            MissingIdentifier: If neither ID is given
        """
        if not fss_appointment_id and not crm_appointment_id:
            raise MissingIdentifier("A sync record needs an FSS or a CRM appointment ID")

        for key in ('sync_direction', 'conflict_resolution', 'sync_state'):
            if hasattr(fields.get(key), 'value'):
                fields[key] = fields[key].value

        now = _utcnow()
        values = dict(fields, location_id=location_id, updated_at=now)
        if fss_appointment_id:
            values['fss_appointment_id'] = fss_appointment_id
        if crm_appointment_id:
            values['crm_appointment_id'] = crm_appointment_id
        key = 'fss_appointment_id' if fss_appointment_id else 'crm_appointment_id'

        insert_values = dict(values, id=uuid4(), created_at=now)
        try:
            self._upsert(session, AppointmentSyncDB, [key], insert_values, values)
            session.commit()
        except IntegrityError:
            session.rollback()
            existing = self.get_appointment_sync(session, fss_appointment_id, crm_appointment_id)
            if existing is None:
                raise
            for name, value in values.items():
                setattr(existing, name, value)
            session.commit()

        return self.get_appointment_sync(session, fss_appointment_id, crm_appointment_id)

    def list_appointment_syncs(
        self,
        session: Session,
        location_id: str,
        state: Optional[SyncState] = None
    ) -> List[AppointmentSyncDB]:
        """List sync records for a location, optionally filtered by state."""
        query = session.query(AppointmentSyncDB).filter(AppointmentSyncDB.location_id == location_id)
        if state is not None:
            query = query.filter(AppointmentSyncDB.sync_state == state.value)
        return query.order_by(AppointmentSyncDB.created_at).all()

    def get_sync_status(self, session: Session, location_id: str) -> Dict[str, Any]:
        """Aggregate sync record counts per state for a location."""
        records = self.list_appointment_syncs(session, location_id)
        by_state = {state.value: 0 for state in SyncState}
        for record in records:
            by_state[record.sync_state] = by_state.get(record.sync_state, 0) + 1

        last_sync = max(
            (ensure_timezone_aware(r.last_sync_at) for r in records if r.last_sync_at),
            default=None
        )
        quotes = session.query(QuoteSyncDB).filter(QuoteSyncDB.location_id == location_id).count()
        mappings = self.get_team_mappings(session, location_id)

        return {
            'location_id': location_id,
            'total_appointments': len(records),
            'by_state': by_state,
            'last_sync_at': last_sync,
            'quotes_synced': quotes,
            'team_mappings': len(mappings),
            'enabled_team_mappings': len([m for m in mappings if m.enabled]),
        }

    # Team-calendar mappings

    def get_team_mappings(
        self,
        session: Session,
        location_id: str,
        enabled_only: bool = False
    ) -> List[TeamCalendarMappingDB]:
        """Get team mappings for a location in stable creation order.

        Args:
            session: Database session
            location_id: Location ID
            enabled_only: Exclude disabled mappings

        Returns:
            List of team mappings
        """
        query = session.query(TeamCalendarMappingDB).filter(
            TeamCalendarMappingDB.location_id == location_id
        )
        if enabled_only:
            query = query.filter(TeamCalendarMappingDB.enabled == True)
        return query.order_by(TeamCalendarMappingDB.created_at, TeamCalendarMappingDB.fss_team_id).all()

    def get_team_mapping(
        self,
        session: Session,
        location_id: str,
        fss_team_id: str
    ) -> Optional[TeamCalendarMappingDB]:
        """Get the mapping for one team, enabled or not."""
        return session.query(TeamCalendarMappingDB).filter(
            TeamCalendarMappingDB.location_id == location_id,
            TeamCalendarMappingDB.fss_team_id == fss_team_id
        ).first()

    def get_team_mapping_by_calendar(
        self,
        session: Session,
        location_id: str,
        crm_calendar_id: str,
        enabled_only: bool = True
    ) -> Optional[TeamCalendarMappingDB]:
        """Reverse lookup from a CRM calendar to its team mapping."""
        query = session.query(TeamCalendarMappingDB).filter(
            TeamCalendarMappingDB.location_id == location_id,
            TeamCalendarMappingDB.crm_calendar_id == crm_calendar_id
        )
        if enabled_only:
            query = query.filter(TeamCalendarMappingDB.enabled == True)
        return query.order_by(TeamCalendarMappingDB.created_at).first()

    def upsert_team_mapping(
        self,
        session: Session,
        location_id: str,
        fss_team_id: str,
        crm_calendar_id: str,
        fss_team_name: Optional[str] = None,
        crm_calendar_name: Optional[str] = None,
        enabled: bool = True
    ) -> TeamCalendarMappingDB:
        """Create or replace the mapping for (location, team).

        Args:
            session: Database session
            location_id: Location ID
            fss_team_id: FSS team ID
            crm_calendar_id: CRM calendar ID
            fss_team_name: Team name (advisory)
            crm_calendar_name: Calendar name (advisory)
            enabled: Whether the mapping is enabled

        Returns:
            Stored team mapping
        """
        now = _utcnow()
        values = {
            'location_id': location_id,
            'fss_team_id': fss_team_id,
            'crm_calendar_id': crm_calendar_id,
            'fss_team_name': fss_team_name,
            'crm_calendar_name': crm_calendar_name,
            'enabled': enabled,
            'updated_at': now,
        }
        self._upsert(
            session,
            TeamCalendarMappingDB,
            ['location_id', 'fss_team_id'],
            dict(values, id=uuid4(), created_at=now),
            values
        )
        session.commit()
        return self.get_team_mapping(session, location_id, fss_team_id)

    def set_team_mapping_enabled(
        self,
        session: Session,
        location_id: str,
        fss_team_id: str,
        enabled: bool
    ) -> Optional[TeamCalendarMappingDB]:
        """Enable or disable a mapping without deleting it."""
        mapping = self.get_team_mapping(session, location_id, fss_team_id)
        if mapping is None:
            return None
        mapping.enabled = enabled
        mapping.updated_at = _utcnow()
        session.commit()
        return mapping

    def delete_team_mapping(self, session: Session, location_id: str, fss_team_id: str) -> bool:
        """Delete a mapping. Returns False when it did not exist."""
        mapping = self.get_team_mapping(session, location_id, fss_team_id)
        if mapping is None:
            return False
        session.delete(mapping)
        session.commit()
        return True

    # Quote sync records

    def get_quote_sync(
        self,
        session: Session,
        location_id: str,
        fss_quote_id: str
    ) -> Optional[QuoteSyncDB]:
        """Get the sync record for a quote."""
        return session.query(QuoteSyncDB).filter(
            QuoteSyncDB.location_id == location_id,
            QuoteSyncDB.fss_quote_id == fss_quote_id
        ).first()

    def upsert_quote_sync(
        self,
        session: Session,
        location_id: str,
        fss_quote_id: str,
        **fields
    ) -> QuoteSyncDB:
        """Insert or update the sync record for (location, quote)."""
        values = dict(fields, location_id=location_id, fss_quote_id=fss_quote_id)
        self._upsert(
            session,
            QuoteSyncDB,
            ['location_id', 'fss_quote_id'],
            dict(values, id=uuid4(), created_at=_utcnow()),
            values
        )
        session.commit()
        return self.get_quote_sync(session, location_id, fss_quote_id)

    # Integration config

    def get_integration_config(self, session: Session, location_id: str) -> Optional[IntegrationConfigDB]:
        return session.query(IntegrationConfigDB).filter(
            IntegrationConfigDB.location_id == location_id
        ).first()

    def list_integration_configs(self, session: Session) -> List[IntegrationConfigDB]:
        return session.query(IntegrationConfigDB).order_by(IntegrationConfigDB.location_id).all()

    def upsert_integration_config(self, session: Session, location_id: str, **fields) -> IntegrationConfigDB:
        """Create or update a location's integration config.

        ``last_quote_poll_at`` and ``last_appointment_sync_at`` are not accepted
        here; they only move through :meth:`claim_quote_poll` and
        :meth:`claim_appointment_sync`.
        """
        for claimed in ('last_quote_poll_at', 'last_appointment_sync_at'):
            if claimed in fields:
                raise ValueError(f"{claimed} can only be changed through its claim")

        if isinstance(fields.get('appointment_conflict_resolution'), ConflictPolicy):
            fields['appointment_conflict_resolution'] = fields['appointment_conflict_resolution'].value
        if 'field_mappings' in fields and fields['field_mappings'] is not None:
            fields['field_mappings'] = [
                m.model_dump() if isinstance(m, FieldMapping) else dict(m) for m in fields['field_mappings']
            ]

        config = self.get_integration_config(session, location_id)
        if config is None:
            config = IntegrationConfigDB(location_id=location_id)
            session.add(config)
        for key, value in fields.items():
            if hasattr(config, key):
                setattr(config, key, value)
        config.updated_at = _utcnow()
        session.commit()
        return config

    def _claim(self, session: Session, location_id: str, column, previous: Optional[int], new: int) -> bool:
        if previous is None:
            current = column.is_(None)
        else:
            current = column == previous

        updated = session.query(IntegrationConfigDB).filter(
            IntegrationConfigDB.location_id == location_id,
            current
        ).update(
            {column.key: new, 'updated_at': _utcnow()},
            synchronize_session=False
        )
        session.commit()
        return updated == 1

    def claim_quote_poll(
        self,
        session: Session,
        location_id: str,
        previous_poll_at: Optional[int],
        poll_at: int
    ) -> bool:
        """Advance ``last_quote_poll_at`` with a compare-and-set on its previous value.

        Args:
            session: Database session
            location_id: Location ID
            previous_poll_at: Value read before deciding the poll was due
            poll_at: New poll timestamp (epoch ms)

        Returns:
            True if this caller won the claim, False if another invocation moved it first
        """
        return self._claim(session, location_id, IntegrationConfigDB.last_quote_poll_at, previous_poll_at, poll_at)

    def claim_appointment_sync(
        self,
        session: Session,
        location_id: str,
        previous_sync_at: Optional[int],
        sync_at: int
    ) -> bool:
        """Compare-and-set ``last_appointment_sync_at``, as :meth:`claim_quote_poll` does for polls."""
        return self._claim(
            session, location_id, IntegrationConfigDB.last_appointment_sync_at, previous_sync_at, sync_at
        )

    def set_quote_discovery_cursor(self, session: Session, location_id: str, cursor: Optional[str]) -> None:
        session.query(IntegrationConfigDB).filter(
            IntegrationConfigDB.location_id == location_id
        ).update({'quote_discovery_cursor': cursor}, synchronize_session=False)
        session.commit()
