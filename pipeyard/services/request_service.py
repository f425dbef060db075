from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from pipeyard.auth import Principal, assert_company_scope, require_privileged
from pipeyard.errors import InvalidLocation, NotFound, ValidationFailed
from pipeyard.models import Company, Load, LocationReservation, RequestStatus, StorageLocation, StorageRequest
from pipeyard.services.audit_service import log_audit
from pipeyard.services.capacity_service import available_count, distribute_sequentially
from pipeyard.services.location_service import get_locations_for_update
from pipeyard.services.notification_queue_service import (
    REQUEST_APPROVED,
    REQUEST_REJECTED,
    REQUEST_SUBMITTED,
    enqueue,
    request_payload,
)
from pipeyard.services.state_machine import assert_request_transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApprovalResult:
    request_id: int
    reference_code: str
    status: str
    assigned_locations: list[str]
    required_quantity: int
    available_before: int
    available_after: int
    message: str


@dataclass(frozen=True)
class RejectionResult:
    request_id: int
    reference_code: str
    status: str
    reason: str
    message: str


def _now() -> datetime:
    return datetime.now(timezone.utc)


def reference_code_for(request_id: int, created_at: datetime) -> str:
    return f'REQ-{created_at.year}-{request_id:06d}'


def _company_name(db: Session, company_id: int) -> str | None:
    return db.execute(select(Company.name).where(Company.id == company_id)).scalar_one_or_none()


def get_request_for_update(db: Session, request_id: int) -> StorageRequest:
    request = db.execute(
        select(StorageRequest).where(StorageRequest.id == request_id).with_for_update()
    ).scalar_one_or_none()
    if not request:
        raise NotFound('Storage request not found', details={'request_id': request_id})
    return request


def create_storage_request(
    db: Session,
    *,
    actor: Principal,
    company_id: int,
    required_quantity: int,
    requester_email: str | None = None,
    details: dict | None = None,
    submit: bool = True,
    ip: str | None = None,
) -> StorageRequest:
    assert_company_scope(actor, company_id)
    if required_quantity is None or required_quantity <= 0:
        raise ValidationFailed('Required quantity must be greater than zero')
    company_name = _company_name(db, company_id)
    if company_name is None:
        raise NotFound('Company not found', details={'company_id': company_id})

    now = _now()
    request = StorageRequest(
        company_id=company_id,
        requester_email=(requester_email or actor.email).strip().lower(),
        status=RequestStatus.PENDING if submit else RequestStatus.DRAFT,
        required_quantity=required_quantity,
        details=details or {},
        assigned_location_ids=[],
        created_at=now,
        updated_at=now,
    )
    db.add(request)
    db.flush()
    request.reference_code = reference_code_for(request.id, now)
    db.flush()

    log_audit(
        db,
        actor_email=actor.email,
        action='CREATE_REQUEST',
        entity_type='storage_request',
        entity_id=request.id,
        ip=ip,
        metadata={
            'reference_code': request.reference_code,
            'company_id': company_id,
            'status': request.status.value,
            'required_quantity': required_quantity,
        },
    )
    if request.status == RequestStatus.PENDING:
        _enqueue_submitted(db, request, company_name=company_name, status_from=None)
    logger.info('Storage request %s created as %s', request.reference_code, request.status.value)
    return request


def submit_request(db: Session, *, actor: Principal, request_id: int, ip: str | None = None) -> StorageRequest:
    request = get_request_for_update(db, request_id)
    assert_company_scope(actor, request.company_id)
    assert_request_transition(request, RequestStatus.PENDING)

    request.status = RequestStatus.PENDING
    request.updated_at = _now()
    db.flush()
    log_audit(
        db,
        actor_email=actor.email,
        action='SUBMIT_REQUEST',
        entity_type='storage_request',
        entity_id=request.id,
        ip=ip,
        metadata={'reference_code': request.reference_code, 'before': 'DRAFT', 'after': 'PENDING'},
    )
    _enqueue_submitted(db, request, company_name=_company_name(db, request.company_id), status_from='DRAFT')
    logger.info('Storage request %s submitted', request.reference_code)
    return request


def _enqueue_submitted(db: Session, request: StorageRequest, *, company_name: str | None, status_from: str | None) -> None:
    enqueue(
        db,
        notification_type=REQUEST_SUBMITTED,
        storage_request_id=request.id,
        target_status=RequestStatus.PENDING.value,
        payload=request_payload(
            request,
            company_name=company_name,
            status_from=status_from,
            status_to=RequestStatus.PENDING.value,
            requiredQuantity=request.required_quantity,
        ),
    )


def approve_request(
    db: Session,
    *,
    actor: Principal,
    request_id: int,
    location_ids: list[int],
    required_quantity: int,
    notes: str | None = None,
    ip: str | None = None,
) -> ApprovalResult:
    """Approve a pending request and reserve capacity for it.

    Runs inside the caller's transaction. The request row is locked before
    the location rows, and the location rows are locked before capacity is
    read, so two concurrent approvals cannot both see PENDING or both pass
    the capacity check. Any raised error leaves the session with nothing
    worth committing.
    """
    require_privileged(actor)
    if required_quantity is None or required_quantity <= 0:
        raise ValidationFailed(
            'Required quantity must be greater than zero', details={'required_quantity': required_quantity}
        )
    ordered_ids = list(location_ids or [])
    if not ordered_ids:
        raise InvalidLocation('At least one storage location must be assigned')
    if len(set(ordered_ids)) != len(ordered_ids):
        raise InvalidLocation('Storage locations must not be repeated', details={'location_ids': ordered_ids})

    request = get_request_for_update(db, request_id)
    assert_request_transition(request, RequestStatus.APPROVED)

    locations = get_locations_for_update(db, ordered_ids)
    available_before = sum(available_count(location) for location in locations)
    shares = distribute_sequentially(required_quantity, locations)

    now = _now()
    for share in shares:
        if not share.quantity:
            continue
        share.location.occupied += share.quantity
        share.location.updated_at = now
        db.add(
            LocationReservation(
                storage_request_id=request.id,
                storage_location_id=share.location.id,
                reserved_quantity=share.quantity,
                consumed_quantity=0,
                created_at=now,
                updated_at=now,
            )
        )

    clean_notes = notes.strip() if notes and notes.strip() else None
    request.status = RequestStatus.APPROVED
    request.assigned_location_ids = ordered_ids
    request.required_quantity = required_quantity
    request.admin_notes = clean_notes or request.admin_notes
    request.approved_at = now
    request.approved_by = actor.email
    request.updated_at = now
    db.flush()

    location_names = [location.name for location in locations]
    available_after = available_before - required_quantity
    company_name = _company_name(db, request.company_id)
    log_audit(
        db,
        actor_email=actor.email,
        action='APPROVE_REQUEST',
        entity_type='storage_request',
        entity_id=request.id,
        ip=ip,
        metadata={
            'reference_code': request.reference_code,
            'company_name': company_name,
            'location_ids': ordered_ids,
            'assigned_locations': location_names,
            'required_quantity': required_quantity,
            'available_before': available_before,
            'available_after': available_after,
            'shares': [
                {'location': share.location.name, 'quantity': share.quantity, 'occupied_after': share.location.occupied}
                for share in shares
            ],
            'notes': clean_notes,
        },
    )
    enqueue(
        db,
        notification_type=REQUEST_APPROVED,
        storage_request_id=request.id,
        target_status=RequestStatus.APPROVED.value,
        payload=request_payload(
            request,
            company_name=company_name,
            status_from=RequestStatus.PENDING.value,
            status_to=RequestStatus.APPROVED.value,
            assignedLocations=location_names,
            requiredQuantity=required_quantity,
            notes=clean_notes,
        ),
    )

    message = (
        f"Request {request.reference_code} approved: {required_quantity} joints reserved across "
        f"{', '.join(location_names)}. {available_after} joints remain available in those locations."
    )
    logger.info('Storage request %s approved by %s', request.reference_code, actor.email)
    return ApprovalResult(
        request_id=request.id,
        reference_code=request.reference_code,
        status=request.status.value,
        assigned_locations=location_names,
        required_quantity=required_quantity,
        available_before=available_before,
        available_after=available_after,
        message=message,
    )


def reject_request(
    db: Session,
    *,
    actor: Principal,
    request_id: int,
    reason: str,
    ip: str | None = None,
) -> RejectionResult:
    require_privileged(actor)
    clean_reason = (reason or '').strip()
    if not clean_reason:
        raise ValidationFailed('A rejection reason is required')

    request = get_request_for_update(db, request_id)
    assert_request_transition(request, RequestStatus.REJECTED)

    now = _now()
    request.status = RequestStatus.REJECTED
    request.rejection_reason = clean_reason
    request.rejected_at = now
    request.rejected_by = actor.email
    request.updated_at = now
    db.flush()

    company_name = _company_name(db, request.company_id)
    log_audit(
        db,
        actor_email=actor.email,
        action='REJECT_REQUEST',
        entity_type='storage_request',
        entity_id=request.id,
        ip=ip,
        metadata={'reference_code': request.reference_code, 'company_name': company_name, 'reason': clean_reason},
    )
    enqueue(
        db,
        notification_type=REQUEST_REJECTED,
        storage_request_id=request.id,
        target_status=RequestStatus.REJECTED.value,
        payload=request_payload(
            request,
            company_name=company_name,
            status_from=RequestStatus.PENDING.value,
            status_to=RequestStatus.REJECTED.value,
            rejectionReason=clean_reason,
        ),
    )
    logger.info('Storage request %s rejected by %s', request.reference_code, actor.email)
    return RejectionResult(
        request_id=request.id,
        reference_code=request.reference_code,
        status=request.status.value,
        reason=clean_reason,
        message=f'Request {request.reference_code} rejected: {clean_reason}',
    )


def append_request_note(
    db: Session,
    *,
    actor: Principal,
    request_id: int,
    note: str,
    ip: str | None = None,
) -> StorageRequest:
    require_privileged(actor)
    clean_note = (note or '').strip()
    if not clean_note:
        raise ValidationFailed('Note cannot be empty')

    request = get_request_for_update(db, request_id)
    now = _now()
    line = f"[{now.strftime('%Y-%m-%d %H:%M')} UTC] {actor.email}: {clean_note}"
    request.admin_notes = f'{request.admin_notes}\n{line}' if request.admin_notes else line
    request.updated_at = now
    db.flush()
    log_audit(
        db,
        actor_email=actor.email,
        action='APPEND_NOTE',
        entity_type='storage_request',
        entity_id=request.id,
        ip=ip,
        metadata={'reference_code': request.reference_code, 'note': clean_note},
    )
    logger.info('Note appended to storage request %s', request.reference_code)
    return request


def get_request_detail(db: Session, *, actor: Principal, request_id: int) -> dict:
    request = db.execute(select(StorageRequest).where(StorageRequest.id == request_id)).scalar_one_or_none()
    if not request:
        raise NotFound('Storage request not found', details={'request_id': request_id})
    assert_company_scope(actor, request.company_id)

    reservations = db.execute(
        select(LocationReservation, StorageLocation.name)
        .join(StorageLocation, StorageLocation.id == LocationReservation.storage_location_id)
        .where(LocationReservation.storage_request_id == request.id)
        .order_by(LocationReservation.id.asc())
    ).all()
    loads = db.execute(
        select(Load)
        .where(Load.storage_request_id == request.id)
        .order_by(Load.direction.asc(), Load.sequence_number.asc())
    ).scalars().all()

    return {
        'id': request.id,
        'reference_code': request.reference_code,
        'company_id': request.company_id,
        'company_name': _company_name(db, request.company_id),
        'requester_email': request.requester_email,
        'status': request.status.value,
        'required_quantity': request.required_quantity,
        'delivered_quantity': request.delivered_quantity,
        'details': request.details,
        'assigned_location_ids': request.assigned_location_ids,
        'admin_notes': request.admin_notes,
        'rejection_reason': request.rejection_reason,
        'approved_at': request.approved_at,
        'approved_by': request.approved_by,
        'rejected_at': request.rejected_at,
        'created_at': request.created_at,
        'reservations': [
            {
                'location_id': reservation.storage_location_id,
                'location_name': location_name,
                'reserved_quantity': reservation.reserved_quantity,
                'consumed_quantity': reservation.consumed_quantity,
                'status': reservation.status.value,
            }
            for reservation, location_name in reservations
        ],
        'loads': [
            {
                'id': load.id,
                'direction': load.direction.value,
                'sequence_number': load.sequence_number,
                'status': load.status.value,
                'completed_quantity': load.completed_quantity,
            }
            for load in loads
        ],
    }
