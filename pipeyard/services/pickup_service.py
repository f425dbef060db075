"""Completion of an outbound load by picking up stored inventory.

The yard selects the joints that left on the truck. Every selected joint
must belong to the request's company and still be in storage, and the
selection must match the quantity the yard reported. The joints move to
PICKED_UP and the locations holding them give back the joints and length
they occupied, all in the caller's transaction.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from pipeyard.auth import Principal, require_privileged
from pipeyard.errors import AccessDenied, NotFound, QuantityMismatch, ValidationFailed, WrongState
from pipeyard.models import Company, InventoryItem, InventoryStatus, LoadDirection, LoadStatus, StorageRequest
from pipeyard.services.audit_service import log_audit
from pipeyard.services.capacity_service import feet_to_meters, quantize_meters
from pipeyard.services.load_service import get_load_for_update
from pipeyard.services.location_service import get_locations_for_update
from pipeyard.services.notification_queue_service import LOAD_COMPLETED, enqueue, load_payload
from pipeyard.services.state_machine import assert_load_transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PickupResult:
    load_id: int
    load_number: int
    reference_code: str
    status: str
    picked_up_quantity: int
    picked_up_length_meters: Decimal
    locations: list[dict]
    message: str


def _now() -> datetime:
    return datetime.now(timezone.utc)


def complete_outbound_load(
    db: Session,
    *,
    actor: Principal,
    load_id: int,
    inventory_item_ids: list[int],
    reported_quantity: int,
    notes: str | None = None,
    ip: str | None = None,
) -> PickupResult:
    require_privileged(actor)

    load = get_load_for_update(db, load_id)
    assert_load_transition(load, LoadStatus.COMPLETED)
    if load.direction != LoadDirection.OUTBOUND:
        raise WrongState(
            'Only outbound loads are completed by pickup',
            details={'load_id': load.id, 'direction': load.direction.value},
        )

    selected = list(inventory_item_ids or [])
    if not selected:
        raise ValidationFailed('Select at least one inventory item to pick up')
    if len(set(selected)) != len(selected):
        raise ValidationFailed('Inventory items must not be repeated', details={'inventory_item_ids': selected})

    request = db.execute(
        select(StorageRequest).where(StorageRequest.id == load.storage_request_id).with_for_update()
    ).scalar_one()
    items = db.execute(
        select(InventoryItem).where(InventoryItem.id.in_(selected)).order_by(InventoryItem.id.asc()).with_for_update()
    ).scalars().all()
    found = {item.id for item in items}
    missing = [item_id for item_id in selected if item_id not in found]
    if missing:
        raise NotFound(
            f'Inventory items not found: {", ".join(str(item_id) for item_id in missing)}',
            details={'missing_inventory_item_ids': missing},
        )
    for item in items:
        if item.company_id != request.company_id:
            raise AccessDenied(
                f'Inventory item {item.reference_code} does not belong to this company',
                details={'inventory_item_id': item.id},
            )
        if item.status != InventoryStatus.IN_STORAGE:
            raise WrongState(
                f'Inventory item {item.reference_code} is not in storage (current status: {item.status.value})',
                details={'inventory_item_id': item.id, 'current_status': item.status.value},
            )

    if len(items) != reported_quantity:
        raise QuantityMismatch(
            f'Quantity mismatch: Selected inventory has {len(items)} joints but admin entered {reported_quantity}',
            details={'selected_quantity': len(items), 'reported_quantity': reported_quantity},
        )

    removed_joints: dict[int, int] = defaultdict(int)
    removed_meters: dict[int, Decimal] = defaultdict(Decimal)
    for item in items:
        removed_joints[item.storage_location_id] += 1
        removed_meters[item.storage_location_id] += feet_to_meters(item.length_ft)

    locations = get_locations_for_update(db, sorted(removed_joints))
    for location in locations:
        if location.occupied < removed_joints[location.id]:
            raise WrongState(
                f'{location.name} records {location.occupied} joints but {removed_joints[location.id]} are being removed',
                details={
                    'location': location.name,
                    'occupied': location.occupied,
                    'removing': removed_joints[location.id],
                },
            )

    # Validation is over; every write below belongs to the pickup.
    now = _now()
    for item in items:
        item.status = InventoryStatus.PICKED_UP
        item.picked_up_at = now
        item.pickup_load_id = load.id

    location_changes = []
    for location in locations:
        meters = quantize_meters(removed_meters[location.id])
        location.occupied -= removed_joints[location.id]
        location.occupied_meters = max(Decimal(location.occupied_meters) - meters, Decimal('0'))
        location.updated_at = now
        location_changes.append(
            {
                'location': location.name,
                'joints_removed': removed_joints[location.id],
                'meters_removed': meters,
                'occupied_after': location.occupied,
            }
        )

    total_meters = quantize_meters(sum(removed_meters.values(), Decimal('0')))
    clean_notes = notes.strip() if notes and notes.strip() else None
    load.status = LoadStatus.COMPLETED
    load.completed_quantity = len(items)
    load.completed_length_meters = total_meters
    load.notes = clean_notes or load.notes
    load.completed_at = now
    load.completed_by = actor.email
    load.updated_at = now
    db.flush()

    summary = (
        f'{len(items)} joints ({total_meters} m) picked up on load #{load.sequence_number} '
        f'of {request.reference_code}'
    )
    log_audit(
        db,
        actor_email=actor.email,
        action='COMPLETE_OUTBOUND_LOAD',
        entity_type='load',
        entity_id=load.id,
        ip=ip,
        metadata={
            'reference_code': request.reference_code,
            'summary': summary,
            'reported_quantity': reported_quantity,
            'inventory_item_ids': sorted(found),
            'locations': location_changes,
            'notes': clean_notes,
        },
    )
    enqueue(
        db,
        notification_type=LOAD_COMPLETED,
        load_id=load.id,
        storage_request_id=request.id,
        target_status=LoadStatus.COMPLETED.value,
        payload=load_payload(
            load,
            request,
            company_name=db.execute(select(Company.name).where(Company.id == request.company_id)).scalar_one_or_none(),
            status_from=LoadStatus.IN_TRANSIT.value,
            status_to=LoadStatus.COMPLETED.value,
            pickedUpQuantity=len(items),
            pickedUpLengthMeters=total_meters,
            locationNames=[change['location'] for change in location_changes],
        ),
    )
    logger.info('Outbound load #%s for %s completed: %s', load.sequence_number, request.reference_code, summary)
    return PickupResult(
        load_id=load.id,
        load_number=load.sequence_number,
        reference_code=request.reference_code,
        status=load.status.value,
        picked_up_quantity=len(items),
        picked_up_length_meters=total_meters,
        locations=location_changes,
        message=f'Load #{load.sequence_number} completed: {summary}.',
    )
