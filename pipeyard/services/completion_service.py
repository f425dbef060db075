"""Completion of an inbound load against its manifest.

The manifest is the source of truth for what gets stored. Completion fails
unless the manifest joint count equals the quantity the yard reported, and
every check runs before the first write, so a rejected completion leaves no
inventory rows, no occupancy change and no status change behind.

Approval already reserved joint capacity for the request as a whole.
Completion draws arriving joints from that reservation, starting with the
receiving location's own share; joints drawn from a share held elsewhere
are moved, so the holding location gives them back. Only joints beyond the
reservation add to total occupancy. Length is added in full because
approval never reserves length. Once the request is fully delivered any
share still unconsumed is released.

Damage is tracked per manifest line when any line reports it; otherwise
the load-level damage notes apply to every joint in the load.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from pipeyard.auth import Principal, require_privileged
from pipeyard.errors import QuantityMismatch, WrongState
from pipeyard.models import (
    Company,
    InventoryItem,
    Load,
    LoadDirection,
    LoadStatus,
    LocationReservation,
    ReservationStatus,
    StorageLocation,
    StorageRequest,
)
from pipeyard.services.audit_service import log_audit
from pipeyard.services.capacity_service import draw_reservations, settle_completion, unconsumed_quantity
from pipeyard.services.load_service import get_load_for_update
from pipeyard.services.location_service import get_locations_for_update
from pipeyard.services.manifest_service import ManifestItem, parse_manifest, summarize_manifest
from pipeyard.services.notification_queue_service import LOAD_COMPLETED, enqueue, load_payload
from pipeyard.services.state_machine import assert_load_transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionResult:
    load_id: int
    load_number: int
    reference_code: str
    status: str
    location_name: str
    completed_quantity: int
    completed_length_meters: Decimal
    completed_weight_lbs: Decimal | None
    inventory_created: int
    location_occupied: int
    location_occupied_meters: Decimal
    delivered_quantity: int
    message: str


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _item_reference(item: ManifestItem, *, request: StorageRequest, load: Load, line: int, unit: int) -> str:
    if item.serial_number and item.quantity == 1:
        return item.serial_number
    if item.heat_number and item.quantity == 1:
        return item.heat_number
    base = item.serial_number or item.heat_number or f'{request.reference_code}-L{load.sequence_number}-{line}'
    return f'{base}-{unit}' if item.quantity > 1 else base


def _build_inventory_rows(
    items: list[ManifestItem],
    *,
    request: StorageRequest,
    load: Load,
    location: StorageLocation,
    damage_notes: str | None,
    stored_at: datetime,
) -> list[InventoryItem]:
    line_damage = any(item.reports_damage for item in items)
    rows: list[InventoryItem] = []
    for line, item in enumerate(items, start=1):
        if not line_damage:
            damaged, notes = bool(damage_notes), damage_notes
        elif item.reports_damage:
            damaged, notes = True, item.damage_notes or damage_notes
        else:
            damaged, notes = False, None
        for unit in range(1, item.quantity + 1):
            rows.append(
                InventoryItem(
                    company_id=request.company_id,
                    storage_request_id=request.id,
                    load_id=load.id,
                    storage_location_id=location.id,
                    reference_code=_item_reference(item, request=request, load=load, line=line, unit=unit),
                    manifest_line=line,
                    grade=item.grade,
                    outer_diameter=item.outer_diameter,
                    weight_lbs_ft=item.weight_lbs_ft,
                    length_ft=item.tally_length_ft,
                    heat_number=item.heat_number,
                    serial_number=item.serial_number,
                    manufacturer=item.manufacturer,
                    damaged=damaged,
                    damage_notes=notes,
                    stored_at=stored_at,
                    created_at=stored_at,
                )
            )
    return rows


def _give_back(location: StorageLocation, quantity: int, now: datetime) -> None:
    location.occupied = max(location.occupied - quantity, 0)
    location.updated_at = now


def complete_load(
    db: Session,
    *,
    actor: Principal,
    load_id: int,
    location_id: int,
    reported_quantity: int,
    manifest_items,
    damage_notes: str | None = None,
    ip: str | None = None,
) -> CompletionResult:
    require_privileged(actor)

    load = get_load_for_update(db, load_id)
    assert_load_transition(load, LoadStatus.COMPLETED)
    if load.direction != LoadDirection.INBOUND:
        raise WrongState(
            'Only inbound loads are completed into storage; outbound loads are completed by pickup',
            details={'load_id': load.id, 'direction': load.direction.value},
        )

    items = parse_manifest(manifest_items)
    totals = summarize_manifest(items)
    if totals.quantity != reported_quantity:
        raise QuantityMismatch(
            f'Quantity mismatch: Manifest shows {totals.quantity} joints but admin entered {reported_quantity}',
            details={'manifest_quantity': totals.quantity, 'reported_quantity': reported_quantity},
        )

    request = db.execute(
        select(StorageRequest).where(StorageRequest.id == load.storage_request_id).with_for_update()
    ).scalar_one()
    reservations = db.execute(
        select(LocationReservation)
        .where(
            LocationReservation.storage_request_id == request.id,
            LocationReservation.status == ReservationStatus.ACTIVE,
        )
        .order_by(LocationReservation.storage_location_id.asc())
    ).scalars().all()
    location_ids = sorted({location_id, *(reservation.storage_location_id for reservation in reservations)})
    locations = {row.id: row for row in get_locations_for_update(db, location_ids)}
    location = locations[location_id]

    own_share = [reservation for reservation in reservations if reservation.storage_location_id == location.id]
    elsewhere = [reservation for reservation in reservations if reservation.storage_location_id != location.id]
    draws = draw_reservations(own_share + elsewhere, totals.quantity)
    own_credit = sum(draw.quantity for draw in draws if draw.reservation.storage_location_id == location.id)
    settlement = settle_completion(
        location,
        quantity=totals.quantity,
        meters=totals.length_meters,
        unconsumed_reservation=own_credit,
    )

    # Validation is over; every write below belongs to the completion.
    now = _now()
    clean_damage = damage_notes.strip() if damage_notes and damage_notes.strip() else None
    inventory_rows = _build_inventory_rows(
        items,
        request=request,
        load=load,
        location=location,
        damage_notes=clean_damage,
        stored_at=now,
    )
    db.add_all(inventory_rows)

    occupied_before = location.occupied
    occupied_meters_before = location.occupied_meters
    location.occupied += settlement.added_quantity
    location.occupied_meters = Decimal(location.occupied_meters) + settlement.added_meters
    location.updated_at = now
    moved = []
    for draw in draws:
        reservation = draw.reservation
        reservation.consumed_quantity += draw.quantity
        if reservation.consumed_quantity >= reservation.reserved_quantity:
            reservation.status = ReservationStatus.COMPLETED
        reservation.updated_at = now
        if reservation.storage_location_id != location.id:
            source = locations[reservation.storage_location_id]
            _give_back(source, draw.quantity, now)
            moved.append({'location': source.name, 'quantity': draw.quantity})

    load.status = LoadStatus.COMPLETED
    load.completed_quantity = totals.quantity
    load.completed_length_meters = totals.length_meters
    load.completed_weight_lbs = totals.weight_lbs
    load.manifest_items = [item.as_payload() for item in items]
    load.damage_notes = clean_damage
    load.storage_location_id = location.id
    load.completed_at = now
    load.completed_by = actor.email
    load.updated_at = now
    db.flush()

    request.delivered_quantity = db.execute(
        select(func.coalesce(func.sum(Load.completed_quantity), 0)).where(
            Load.storage_request_id == request.id,
            Load.direction == LoadDirection.INBOUND,
            Load.status == LoadStatus.COMPLETED,
        )
    ).scalar_one()
    request.updated_at = now

    released = []
    if request.delivered_quantity >= request.required_quantity:
        for reservation in reservations:
            if reservation.status != ReservationStatus.ACTIVE:
                continue
            leftover = unconsumed_quantity(reservation)
            holder = locations[reservation.storage_location_id]
            _give_back(holder, leftover, now)
            reservation.status = ReservationStatus.RELEASED
            reservation.updated_at = now
            released.append({'location': holder.name, 'quantity': leftover})
    db.flush()

    company_name = db.execute(select(Company.name).where(Company.id == request.company_id)).scalar_one_or_none()
    summary = (
        f'{totals.quantity} joints ({totals.length_meters} m) stored at {location.name} '
        f'from load #{load.sequence_number} of {request.reference_code}'
    )
    log_audit(
        db,
        actor_email=actor.email,
        action='COMPLETE_LOAD',
        entity_type='load',
        entity_id=load.id,
        ip=ip,
        metadata={
            'reference_code': request.reference_code,
            'summary': summary,
            'location': location.name,
            'reported_quantity': reported_quantity,
            'manifest_quantity': totals.quantity,
            'manifest_length_meters': totals.length_meters,
            'manifest_weight_lbs': totals.weight_lbs,
            'manifest_lines': len(items),
            'inventory_created': len(inventory_rows),
            'reservation_credit': sum(draw.quantity for draw in draws),
            'reservation_moved': moved,
            'reservation_released': released,
            'occupied_before': occupied_before,
            'occupied_after': location.occupied,
            'occupied_meters_before': occupied_meters_before,
            'occupied_meters_after': location.occupied_meters,
            'delivered_quantity': request.delivered_quantity,
            'damage_notes': clean_damage,
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
            company_name=company_name,
            status_from=LoadStatus.IN_TRANSIT.value,
            status_to=LoadStatus.COMPLETED.value,
            completedQuantity=totals.quantity,
            completedLengthMeters=totals.length_meters,
            locationName=location.name,
            deliveredQuantity=request.delivered_quantity,
            requiredQuantity=request.required_quantity,
            damageNotes=clean_damage,
        ),
    )
    logger.info('Load #%s for %s completed: %s', load.sequence_number, request.reference_code, summary)
    return CompletionResult(
        load_id=load.id,
        load_number=load.sequence_number,
        reference_code=request.reference_code,
        status=load.status.value,
        location_name=location.name,
        completed_quantity=totals.quantity,
        completed_length_meters=totals.length_meters,
        completed_weight_lbs=totals.weight_lbs,
        inventory_created=len(inventory_rows),
        location_occupied=location.occupied,
        location_occupied_meters=location.occupied_meters,
        delivered_quantity=request.delivered_quantity,
        message=f'Load #{load.sequence_number} completed: {summary}.',
    )
