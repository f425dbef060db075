from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pipeyard.auth import Principal, assert_company_scope, require_privileged
from pipeyard.config import settings
from pipeyard.errors import BookingConflict, NotFound, ValidationFailed, WrongState
from pipeyard.models import Company, InventoryItem, Load, LoadDirection, LoadStatus, RequestStatus, StorageRequest
from pipeyard.services.audit_service import log_audit
from pipeyard.services.notification_queue_service import (
    LOAD_APPROVED,
    LOAD_BOOKED,
    LOAD_IN_TRANSIT,
    LOAD_REJECTED,
    enqueue,
    load_payload,
)
from pipeyard.services.request_service import get_request_for_update
from pipeyard.services.state_machine import OPEN_LOAD_STATUSES, assert_load_transition

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _company_name(db: Session, company_id: int) -> str | None:
    return db.execute(select(Company.name).where(Company.id == company_id)).scalar_one_or_none()


def get_load_for_update(db: Session, load_id: int) -> Load:
    load = db.execute(select(Load).where(Load.id == load_id).with_for_update()).scalar_one_or_none()
    if not load:
        raise NotFound('Load not found', details={'load_id': load_id})
    return load


def find_open_load(db: Session, *, request_id: int, direction: LoadDirection) -> Load | None:
    return db.execute(
        select(Load)
        .where(
            Load.storage_request_id == request_id,
            Load.direction == direction,
            Load.status.in_(sorted(OPEN_LOAD_STATUSES)),
        )
        .order_by(Load.sequence_number.desc())
        .limit(1)
    ).scalar_one_or_none()


def _next_sequence_number(db: Session, *, request_id: int, direction: LoadDirection) -> int:
    current = db.execute(
        select(func.max(Load.sequence_number)).where(
            Load.storage_request_id == request_id,
            Load.direction == direction,
        )
    ).scalar_one()
    return (current or 0) + 1


def book_load(
    db: Session,
    *,
    actor: Principal,
    request_id: int,
    direction: LoadDirection,
    scheduled_slot_start: datetime | None = None,
    scheduled_slot_end: datetime | None = None,
    trucking_company: str | None = None,
    driver_name: str | None = None,
    driver_phone: str | None = None,
    planned_quantity: int | None = None,
    planned_length_ft: Decimal | None = None,
    planned_weight_lbs: Decimal | None = None,
    notes: str | None = None,
    ip: str | None = None,
) -> Load:
    """Book the next load for a request in one direction.

    Only one load per (request, direction) may be open at a time. The guard
    query runs after the request row is locked, so concurrent bookings for
    the same request queue up behind each other; the partial unique index on
    open loads catches anything that still slips through.
    """
    if scheduled_slot_start and scheduled_slot_end and scheduled_slot_end <= scheduled_slot_start:
        raise ValidationFailed('Scheduled slot must end after it starts')
    if planned_quantity is not None and planned_quantity <= 0:
        raise ValidationFailed('Planned quantity must be greater than zero')

    request = get_request_for_update(db, request_id)
    assert_company_scope(actor, request.company_id)
    if request.status != RequestStatus.APPROVED:
        raise WrongState(
            f'Loads can only be booked for approved requests (current status: {request.status.value})',
            details={'request_id': request.id, 'current_status': request.status.value, 'expected_status': ['APPROVED']},
        )

    open_load = find_open_load(db, request_id=request.id, direction=direction)
    if open_load:
        raise BookingConflict(
            f'{direction.value.title()} load #{open_load.sequence_number} for {request.reference_code} '
            f'is still {open_load.status.value}; finish it before booking the next one',
            details={
                'open_load_id': open_load.id,
                'open_load_sequence': open_load.sequence_number,
                'open_load_status': open_load.status.value,
            },
        )

    now = _now()
    load = Load(
        storage_request_id=request.id,
        direction=direction,
        sequence_number=_next_sequence_number(db, request_id=request.id, direction=direction),
        status=LoadStatus.NEW,
        scheduled_slot_start=scheduled_slot_start,
        scheduled_slot_end=scheduled_slot_end,
        trucking_company=trucking_company,
        driver_name=driver_name,
        driver_phone=driver_phone,
        planned_quantity=planned_quantity,
        planned_length_ft=planned_length_ft,
        planned_weight_lbs=planned_weight_lbs,
        notes=notes,
        created_at=now,
        updated_at=now,
    )
    db.add(load)
    try:
        db.flush()
    except IntegrityError as exc:
        raise BookingConflict(
            f'Another {direction.value.lower()} load was booked for {request.reference_code} at the same time',
            details={'request_id': request.id, 'direction': direction.value},
        ) from exc

    company_name = _company_name(db, request.company_id)
    log_audit(
        db,
        actor_email=actor.email,
        action='BOOK_LOAD',
        entity_type='load',
        entity_id=load.id,
        ip=ip,
        metadata={
            'reference_code': request.reference_code,
            'direction': direction.value,
            'sequence_number': load.sequence_number,
            'scheduled_slot_start': scheduled_slot_start,
            'planned_quantity': planned_quantity,
        },
    )
    enqueue(
        db,
        notification_type=LOAD_BOOKED,
        load_id=load.id,
        storage_request_id=request.id,
        target_status=LoadStatus.NEW.value,
        payload=load_payload(
            load,
            request,
            company_name=company_name,
            status_from=None,
            status_to=LoadStatus.NEW.value,
            plannedQuantity=planned_quantity,
        ),
    )
    logger.info('Load %s #%s booked for %s', direction.value, load.sequence_number, request.reference_code)
    return load


def _transition_load(
    db: Session,
    *,
    actor: Principal,
    load_id: int,
    target: LoadStatus,
    action: str,
    notification_type: str,
    ip: str | None,
    reason: str | None = None,
) -> Load:
    load = get_load_for_update(db, load_id)
    assert_load_transition(load, target)
    request = db.execute(select(StorageRequest).where(StorageRequest.id == load.storage_request_id)).scalar_one()

    now = _now()
    previous = load.status
    load.status = target
    if target == LoadStatus.APPROVED:
        load.approved_at = now
    elif target == LoadStatus.IN_TRANSIT:
        load.in_transit_at = now
    elif target == LoadStatus.REJECTED:
        load.rejected_at = now
        load.rejection_reason = reason
    load.updated_at = now
    db.flush()

    extra = {'rejectionReason': reason} if reason else {}
    log_audit(
        db,
        actor_email=actor.email,
        action=action,
        entity_type='load',
        entity_id=load.id,
        ip=ip,
        metadata={
            'reference_code': request.reference_code,
            'sequence_number': load.sequence_number,
            'before': previous.value,
            'after': target.value,
            **extra,
        },
    )
    enqueue(
        db,
        notification_type=notification_type,
        load_id=load.id,
        storage_request_id=request.id,
        target_status=target.value,
        payload=load_payload(
            load,
            request,
            company_name=_company_name(db, request.company_id),
            status_from=previous.value,
            status_to=target.value,
            **extra,
        ),
    )
    logger.info('Load #%s for %s moved to %s', load.sequence_number, request.reference_code, target.value)
    return load


def mark_load_approved(db: Session, *, actor: Principal, load_id: int, ip: str | None = None) -> Load:
    require_privileged(actor)
    return _transition_load(
        db,
        actor=actor,
        load_id=load_id,
        target=LoadStatus.APPROVED,
        action='APPROVE_LOAD',
        notification_type=LOAD_APPROVED,
        ip=ip,
    )


def mark_load_in_transit(db: Session, *, actor: Principal, load_id: int, ip: str | None = None) -> Load:
    require_privileged(actor)
    return _transition_load(
        db,
        actor=actor,
        load_id=load_id,
        target=LoadStatus.IN_TRANSIT,
        action='MARK_IN_TRANSIT',
        notification_type=LOAD_IN_TRANSIT,
        ip=ip,
    )


def reject_load(db: Session, *, actor: Principal, load_id: int, reason: str, ip: str | None = None) -> Load:
    require_privileged(actor)
    clean_reason = (reason or '').strip()
    if not clean_reason:
        raise ValidationFailed('A rejection reason is required')
    return _transition_load(
        db,
        actor=actor,
        load_id=load_id,
        target=LoadStatus.REJECTED,
        action='REJECT_LOAD',
        notification_type=LOAD_REJECTED,
        ip=ip,
        reason=clean_reason,
    )


def _planned_length_ft(load: Load) -> Decimal | None:
    if load.planned_length_ft is not None:
        return load.planned_length_ft
    if load.planned_quantity:
        return load.planned_quantity * Decimal(str(settings.default_joint_length_ft))
    return None


def load_summary(load: Load) -> dict:
    return {
        'id': load.id,
        'storage_request_id': load.storage_request_id,
        'direction': load.direction.value,
        'sequence_number': load.sequence_number,
        'status': load.status.value,
        'scheduled_slot_start': load.scheduled_slot_start,
        'scheduled_slot_end': load.scheduled_slot_end,
        'trucking_company': load.trucking_company,
        'driver_name': load.driver_name,
        'planned_quantity': load.planned_quantity,
        'planned_length_ft': _planned_length_ft(load),
        'completed_quantity': load.completed_quantity,
        'completed_length_meters': load.completed_length_meters,
        'completed_weight_lbs': load.completed_weight_lbs,
        'storage_location_id': load.storage_location_id,
        'rejection_reason': load.rejection_reason,
        'completed_at': load.completed_at,
    }


def list_loads_for_request(db: Session, *, actor: Principal, request_id: int) -> list[dict]:
    request = db.execute(select(StorageRequest).where(StorageRequest.id == request_id)).scalar_one_or_none()
    if not request:
        raise NotFound('Storage request not found', details={'request_id': request_id})
    assert_company_scope(actor, request.company_id)
    loads = db.execute(
        select(Load)
        .where(Load.storage_request_id == request.id)
        .order_by(Load.direction.asc(), Load.sequence_number.asc())
    ).scalars().all()
    return [load_summary(load) for load in loads]


def list_inventory_for_load(db: Session, *, actor: Principal, load_id: int) -> list[dict]:
    require_privileged(actor)
    if not db.execute(select(Load.id).where(Load.id == load_id)).scalar_one_or_none():
        raise NotFound('Load not found', details={'load_id': load_id})
    items = db.execute(
        select(InventoryItem)
        .where(or_(InventoryItem.load_id == load_id, InventoryItem.pickup_load_id == load_id))
        .order_by(InventoryItem.id.asc())
    ).scalars().all()
    return [
        {
            'id': item.id,
            'reference_code': item.reference_code,
            'manifest_line': item.manifest_line,
            'storage_location_id': item.storage_location_id,
            'grade': item.grade,
            'outer_diameter': item.outer_diameter,
            'weight_lbs_ft': item.weight_lbs_ft,
            'length_ft': item.length_ft,
            'heat_number': item.heat_number,
            'serial_number': item.serial_number,
            'manufacturer': item.manufacturer,
            'damaged': item.damaged,
            'damage_notes': item.damage_notes,
            'status': item.status.value,
            'stored_at': item.stored_at,
            'picked_up_at': item.picked_up_at,
        }
        for item in items
    ]
