from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    event,
    false,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import INET
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
IdType = BigInteger().with_variant(Integer(), 'sqlite')
IpType = Text().with_variant(INET(), 'postgresql')

OPEN_LOAD_STATUS_SQL = "status IN ('NEW', 'APPROVED', 'IN_TRANSIT')"


class Base(DeclarativeBase):
    pass


class RequestStatus(str, Enum):
    DRAFT = 'DRAFT'
    PENDING = 'PENDING'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'


class LoadStatus(str, Enum):
    NEW = 'NEW'
    APPROVED = 'APPROVED'
    IN_TRANSIT = 'IN_TRANSIT'
    COMPLETED = 'COMPLETED'
    REJECTED = 'REJECTED'


class LoadDirection(str, Enum):
    INBOUND = 'INBOUND'
    OUTBOUND = 'OUTBOUND'


class InventoryStatus(str, Enum):
    IN_STORAGE = 'IN_STORAGE'
    PICKED_UP = 'PICKED_UP'


class ReservationStatus(str, Enum):
    ACTIVE = 'ACTIVE'
    COMPLETED = 'COMPLETED'
    RELEASED = 'RELEASED'


class Company(Base):
    __tablename__ = 'companies'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email_domain: Mapped[str | None] = mapped_column(Text, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class StorageRequest(Base):
    __tablename__ = 'storage_requests'
    __table_args__ = (
        CheckConstraint('required_quantity > 0', name='storage_requests_required_positive_ck'),
        CheckConstraint("rejection_reason IS NULL OR status = 'REJECTED'", name='storage_requests_rejection_reason_ck'),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    reference_code: Mapped[str | None] = mapped_column(Text, unique=True)
    company_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('companies.id'), nullable=False)
    requester_email: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[RequestStatus] = mapped_column(
        SQLEnum(RequestStatus, name='request_status'),
        nullable=False,
        default=RequestStatus.PENDING,
        server_default='PENDING',
    )
    required_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    delivered_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    assigned_location_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    admin_notes: Mapped[str | None] = mapped_column(Text)
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approved_by: Mapped[str | None] = mapped_column(Text)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rejected_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class StorageLocation(Base):
    __tablename__ = 'storage_locations'
    __table_args__ = (
        CheckConstraint('occupied >= 0 AND occupied <= capacity', name='storage_locations_occupied_ck'),
        CheckConstraint(
            'occupied_meters >= 0 AND occupied_meters <= capacity_meters',
            name='storage_locations_occupied_meters_ck',
        ),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    area: Mapped[str | None] = mapped_column(Text)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    capacity_meters: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    occupied: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    occupied_meters: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal('0'), server_default='0'
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class LocationReservation(Base):
    __tablename__ = 'location_reservations'
    __table_args__ = (
        UniqueConstraint('storage_request_id', 'storage_location_id', name='location_reservations_request_location_uniq'),
        CheckConstraint(
            'consumed_quantity >= 0 AND consumed_quantity <= reserved_quantity',
            name='location_reservations_consumed_ck',
        ),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    storage_request_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('storage_requests.id'), nullable=False)
    storage_location_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('storage_locations.id'), nullable=False)
    reserved_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    consumed_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    status: Mapped[ReservationStatus] = mapped_column(
        SQLEnum(ReservationStatus, name='reservation_status'),
        nullable=False,
        default=ReservationStatus.ACTIVE,
        server_default='ACTIVE',
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Load(Base):
    __tablename__ = 'loads'
    __table_args__ = (
        UniqueConstraint(
            'storage_request_id', 'direction', 'sequence_number', name='loads_request_direction_sequence_uniq'
        ),
        CheckConstraint('sequence_number > 0', name='loads_sequence_positive_ck'),
        Index(
            'loads_one_open_per_direction_uniq',
            'storage_request_id',
            'direction',
            unique=True,
            postgresql_where=text(OPEN_LOAD_STATUS_SQL),
            sqlite_where=text(OPEN_LOAD_STATUS_SQL),
        ),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    storage_request_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('storage_requests.id'), nullable=False)
    direction: Mapped[LoadDirection] = mapped_column(SQLEnum(LoadDirection, name='load_direction'), nullable=False)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[LoadStatus] = mapped_column(
        SQLEnum(LoadStatus, name='load_status'),
        nullable=False,
        default=LoadStatus.NEW,
        server_default='NEW',
    )
    scheduled_slot_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    scheduled_slot_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    trucking_company: Mapped[str | None] = mapped_column(Text)
    driver_name: Mapped[str | None] = mapped_column(Text)
    driver_phone: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    planned_quantity: Mapped[int | None] = mapped_column(Integer)
    planned_length_ft: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    planned_weight_lbs: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    completed_quantity: Mapped[int | None] = mapped_column(Integer)
    completed_length_meters: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    completed_weight_lbs: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    manifest_items: Mapped[list | None] = mapped_column(JSON)
    damage_notes: Mapped[str | None] = mapped_column(Text)
    storage_location_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('storage_locations.id'))
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    in_transit_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_by: Mapped[str | None] = mapped_column(Text)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class InventoryItem(Base):
    __tablename__ = 'inventory_items'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    company_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('companies.id'), nullable=False)
    storage_request_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('storage_requests.id'), nullable=False)
    load_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('loads.id'), nullable=False)
    storage_location_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('storage_locations.id'), nullable=False)
    reference_code: Mapped[str] = mapped_column(Text, nullable=False)
    manifest_line: Mapped[int] = mapped_column(Integer, nullable=False)
    grade: Mapped[str | None] = mapped_column(Text)
    outer_diameter: Mapped[Decimal | None] = mapped_column(Numeric(10, 3))
    weight_lbs_ft: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    length_ft: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    heat_number: Mapped[str | None] = mapped_column(Text)
    serial_number: Mapped[str | None] = mapped_column(Text)
    manufacturer: Mapped[str | None] = mapped_column(Text)
    damaged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    damage_notes: Mapped[str | None] = mapped_column(Text)
    status: Mapped[InventoryStatus] = mapped_column(
        SQLEnum(InventoryStatus, name='inventory_status'),
        nullable=False,
        default=InventoryStatus.IN_STORAGE,
        server_default='IN_STORAGE',
    )
    stored_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    picked_up_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    pickup_load_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('loads.id'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class NotificationQueueEntry(Base):
    __tablename__ = 'notification_queue'
    __table_args__ = (
        Index(
            'notification_queue_dedup_uniq',
            'type',
            'load_id',
            'target_status',
            unique=True,
            postgresql_where=text('processed = false'),
            sqlite_where=text('processed = 0'),
        ),
        Index(
            'notification_queue_request_dedup_uniq',
            'type',
            'storage_request_id',
            'target_status',
            unique=True,
            postgresql_where=text('load_id IS NULL AND processed = false'),
            sqlite_where=text('load_id IS NULL AND processed = 0'),
        ),
        Index(
            'notification_queue_pending_idx',
            'processed',
            'attempts',
            'created_at',
            postgresql_where=text('processed = false'),
            sqlite_where=text('processed = 0'),
        ),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    load_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('loads.id'))
    storage_request_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('storage_requests.id'))
    target_status: Mapped[str | None] = mapped_column(Text)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    actor_email: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[int | None] = mapped_column(BigInteger)
    ip: Mapped[str | None] = mapped_column(IpType)
    meta: Mapped[dict] = mapped_column('details', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AppendOnlyViolation(RuntimeError):
    pass


@event.listens_for(AuditLog, 'before_update')
def _reject_audit_update(mapper, connection, target) -> None:
    raise AppendOnlyViolation(f'audit_log row {target.id} is append-only')


@event.listens_for(AuditLog, 'before_delete')
def _reject_audit_delete(mapper, connection, target) -> None:
    raise AppendOnlyViolation(f'audit_log row {target.id} cannot be deleted')


@event.listens_for(InventoryItem, 'before_delete')
def _reject_inventory_delete(mapper, connection, target) -> None:
    raise AppendOnlyViolation(f'inventory_items row {target.id} is retained for audit')


@event.listens_for(NotificationQueueEntry, 'before_delete')
def _reject_queue_delete(mapper, connection, target) -> None:
    raise AppendOnlyViolation(f'notification_queue row {target.id} cannot be deleted')
