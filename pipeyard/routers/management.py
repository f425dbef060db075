from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session

from pipeyard.auth import Principal, Role, require_privileged, require_role
from pipeyard.config import settings
from pipeyard.db import get_db
from pipeyard.dependencies import get_client_ip
from pipeyard.schemas import (
    AdjustOccupancyBody,
    ApproveRequestBody,
    CompleteLoadBody,
    CreateLocationBody,
    NoteBody,
    PickupBody,
    ReasonBody,
)
from pipeyard.services.audit_service import list_audit_entries
from pipeyard.services.completion_service import complete_load
from pipeyard.services.load_service import (
    list_inventory_for_load,
    load_summary,
    mark_load_approved,
    mark_load_in_transit,
    reject_load,
)
from pipeyard.services.location_service import (
    adjust_location_occupancy,
    create_storage_location,
    list_locations,
    location_snapshot,
)
from pipeyard.services.notification_queue_service import list_stuck_notifications
from pipeyard.services.pickup_service import complete_outbound_load
from pipeyard.services.notification_worker import drain_notification_queue
from pipeyard.services.provider_factory import get_notification_channel
from pipeyard.services.request_service import append_request_note, approve_request, get_request_detail, reject_request

router = APIRouter(prefix='/management', tags=['management'])
admin_access = require_role(Role.ADMIN)


@router.post('/requests/{request_id}/approve')
def approve(
    request_id: int,
    body: ApproveRequestBody,
    request: Request,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    result = approve_request(
        db,
        actor=principal,
        request_id=request_id,
        location_ids=body.location_ids,
        required_quantity=body.required_quantity,
        notes=body.notes,
        ip=get_client_ip(request),
    )
    db.commit()
    return jsonable_encoder(result)


@router.post('/requests/{request_id}/reject')
def reject(
    request_id: int,
    body: ReasonBody,
    request: Request,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    result = reject_request(db, actor=principal, request_id=request_id, reason=body.reason, ip=get_client_ip(request))
    db.commit()
    return jsonable_encoder(result)


@router.post('/requests/{request_id}/notes')
def add_note(
    request_id: int,
    body: NoteBody,
    request: Request,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    append_request_note(db, actor=principal, request_id=request_id, note=body.note, ip=get_client_ip(request))
    db.commit()
    return jsonable_encoder(get_request_detail(db, actor=principal, request_id=request_id))


@router.post('/loads/{load_id}/approve')
def approve_load(
    load_id: int,
    request: Request,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    load = mark_load_approved(db, actor=principal, load_id=load_id, ip=get_client_ip(request))
    db.commit()
    return jsonable_encoder(load_summary(load))


@router.post('/loads/{load_id}/in-transit')
def load_in_transit(
    load_id: int,
    request: Request,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    load = mark_load_in_transit(db, actor=principal, load_id=load_id, ip=get_client_ip(request))
    db.commit()
    return jsonable_encoder(load_summary(load))


@router.post('/loads/{load_id}/reject')
def reject_load_route(
    load_id: int,
    body: ReasonBody,
    request: Request,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    load = reject_load(db, actor=principal, load_id=load_id, reason=body.reason, ip=get_client_ip(request))
    db.commit()
    return jsonable_encoder(load_summary(load))


@router.post('/loads/{load_id}/complete')
def complete(
    load_id: int,
    body: CompleteLoadBody,
    request: Request,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    result = complete_load(
        db,
        actor=principal,
        load_id=load_id,
        location_id=body.location_id,
        reported_quantity=body.reported_quantity,
        manifest_items=body.manifest_items,
        damage_notes=body.damage_notes,
        ip=get_client_ip(request),
    )
    db.commit()
    return jsonable_encoder(result)


@router.post('/loads/{load_id}/pickup')
def pickup(
    load_id: int,
    body: PickupBody,
    request: Request,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    result = complete_outbound_load(
        db,
        actor=principal,
        load_id=load_id,
        inventory_item_ids=body.inventory_item_ids,
        reported_quantity=body.reported_quantity,
        notes=body.notes,
        ip=get_client_ip(request),
    )
    db.commit()
    return jsonable_encoder(result)


@router.get('/loads/{load_id}/inventory')
def load_inventory(
    load_id: int,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    return jsonable_encoder(list_inventory_for_load(db, actor=principal, load_id=load_id))


@router.get('/locations')
def locations(
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    require_privileged(principal)
    return jsonable_encoder(list_locations(db))


@router.post('/locations', status_code=status.HTTP_201_CREATED)
def create_location(
    body: CreateLocationBody,
    request: Request,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    location = create_storage_location(
        db,
        actor=principal,
        name=body.name,
        capacity=body.capacity,
        capacity_meters=body.capacity_meters,
        area=body.area,
        ip=get_client_ip(request),
    )
    db.commit()
    return jsonable_encoder(location_snapshot(location))


@router.post('/locations/{location_id}/adjust')
def adjust_location(
    location_id: int,
    body: AdjustOccupancyBody,
    request: Request,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    location = adjust_location_occupancy(
        db,
        actor=principal,
        location_id=location_id,
        new_occupied=body.occupied,
        new_occupied_meters=body.occupied_meters,
        reason=body.reason,
        ip=get_client_ip(request),
    )
    db.commit()
    return jsonable_encoder(location_snapshot(location))


@router.get('/audit')
def audit_log(
    entity_type: str | None = None,
    entity_id: int | None = None,
    action: str | None = None,
    limit: int = 100,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    require_privileged(principal)
    entries = list_audit_entries(db, entity_type=entity_type, entity_id=entity_id, action=action, limit=min(limit, 500))
    return jsonable_encoder(
        [
            {
                'id': entry.id,
                'actor_email': entry.actor_email,
                'action': entry.action,
                'entity_type': entry.entity_type,
                'entity_id': entry.entity_id,
                'details': entry.meta,
                'created_at': entry.created_at,
            }
            for entry in entries
        ]
    )


@router.post('/notifications/drain')
def drain_notifications(
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    require_privileged(principal)
    result = drain_notification_queue(
        db,
        channel=get_notification_channel(),
        batch_size=settings.queue_batch_size,
        max_attempts=settings.queue_max_attempts,
    )
    db.commit()
    return jsonable_encoder(result.as_dict())


@router.get('/notifications/stuck')
def stuck_notifications(
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    require_privileged(principal)
    entries = list_stuck_notifications(
        db,
        max_attempts=settings.queue_max_attempts,
        max_age_minutes=settings.queue_stuck_age_minutes,
    )
    return jsonable_encoder(
        [
            {
                'id': entry.id,
                'type': entry.type,
                'load_id': entry.load_id,
                'storage_request_id': entry.storage_request_id,
                'target_status': entry.target_status,
                'attempts': entry.attempts,
                'last_attempt_at': entry.last_attempt_at,
                'last_error': entry.last_error,
                'created_at': entry.created_at,
            }
            for entry in entries
        ]
    )
