from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.orm import Session

from pipeyard.auth import Principal, require_privileged
from pipeyard.errors import InvalidLocation, NotFound, ValidationFailed
from pipeyard.models import StorageLocation
from pipeyard.services.audit_service import log_audit
from pipeyard.services.capacity_service import available_count, available_length, quantize_meters

logger = logging.getLogger(__name__)

MIN_ADJUSTMENT_REASON_LENGTH = 10


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_decimal(value, *, field: str) -> Decimal:
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, TypeError) as exc:
        raise ValidationFailed(f'{field} must be a number') from exc
    if not parsed.is_finite():
        raise ValidationFailed(f'{field} must be a number')
    return quantize_meters(parsed)


def location_snapshot(location: StorageLocation) -> dict:
    return {
        'id': location.id,
        'name': location.name,
        'area': location.area,
        'capacity': location.capacity,
        'capacity_meters': location.capacity_meters,
        'occupied': location.occupied,
        'occupied_meters': location.occupied_meters,
        'available': available_count(location),
        'available_meters': available_length(location),
    }


def get_locations_for_update(db: Session, location_ids: list[int]) -> list[StorageLocation]:
    """Lock the named locations in id order and return them in the caller's order."""
    rows = db.execute(
        select(StorageLocation)
        .where(StorageLocation.id.in_(location_ids))
        .order_by(StorageLocation.id.asc())
        .with_for_update()
    ).scalars().all()
    by_id = {row.id: row for row in rows}
    missing = [location_id for location_id in location_ids if location_id not in by_id]
    if missing:
        raise InvalidLocation(
            f"Storage location not found: {', '.join(str(location_id) for location_id in missing)}",
            details={'missing_location_ids': missing},
        )
    return [by_id[location_id] for location_id in location_ids]


def list_locations(db: Session) -> list[dict]:
    rows = db.execute(select(StorageLocation).order_by(StorageLocation.area.asc(), StorageLocation.name.asc())).scalars().all()
    return [location_snapshot(row) for row in rows]


def create_storage_location(
    db: Session,
    *,
    actor: Principal,
    name: str,
    capacity: int,
    capacity_meters,
    area: str | None = None,
    ip: str | None = None,
) -> StorageLocation:
    require_privileged(actor)
    clean_name = (name or '').strip()
    if not clean_name:
        raise ValidationFailed('Location name is required')
    if capacity is None or capacity <= 0:
        raise ValidationFailed('Capacity must be greater than zero')
    meters = _to_decimal(capacity_meters, field='capacity_meters')
    if meters <= 0:
        raise ValidationFailed('Length capacity must be greater than zero')

    exists = db.execute(select(StorageLocation.id).where(StorageLocation.name == clean_name)).scalar_one_or_none()
    if exists:
        raise ValidationFailed(f'Storage location {clean_name} already exists')

    now = _now()
    location = StorageLocation(
        name=clean_name,
        area=area.strip() if area and area.strip() else None,
        capacity=capacity,
        capacity_meters=meters,
        occupied=0,
        occupied_meters=Decimal('0'),
        created_at=now,
        updated_at=now,
    )
    db.add(location)
    db.flush()
    log_audit(
        db,
        actor_email=actor.email,
        action='CREATE_LOCATION',
        entity_type='storage_location',
        entity_id=location.id,
        ip=ip,
        metadata={'after': location_snapshot(location)},
    )
    logger.info('Storage location %s created with capacity %s / %s m', location.name, capacity, meters)
    return location


def adjust_location_occupancy(
    db: Session,
    *,
    actor: Principal,
    location_id: int,
    new_occupied: int,
    new_occupied_meters,
    reason: str,
    ip: str | None = None,
) -> StorageLocation:
    require_privileged(actor)
    clean_reason = (reason or '').strip()
    if len(clean_reason) < MIN_ADJUSTMENT_REASON_LENGTH:
        raise ValidationFailed(
            f'Adjustment reason must be at least {MIN_ADJUSTMENT_REASON_LENGTH} characters',
            details={'reason_length': len(clean_reason)},
        )
    meters = _to_decimal(new_occupied_meters, field='new_occupied_meters')

    location = db.execute(
        select(StorageLocation).where(StorageLocation.id == location_id).with_for_update()
    ).scalar_one_or_none()
    if not location:
        raise NotFound('Storage location not found', details={'location_id': location_id})

    if new_occupied < 0 or meters < 0:
        raise ValidationFailed('Occupancy cannot be negative')
    if new_occupied > location.capacity:
        raise ValidationFailed(
            f'Occupancy {new_occupied} exceeds capacity {location.capacity} at {location.name}',
            details={'capacity': location.capacity, 'requested': new_occupied},
        )
    if meters > location.capacity_meters:
        raise ValidationFailed(
            f'Occupied length {meters} m exceeds capacity {location.capacity_meters} m at {location.name}',
            details={'capacity_meters': location.capacity_meters, 'requested_meters': meters},
        )

    before = location_snapshot(location)
    location.occupied = new_occupied
    location.occupied_meters = meters
    location.updated_at = _now()
    db.flush()
    log_audit(
        db,
        actor_email=actor.email,
        action='ADJUST_OCCUPANCY',
        entity_type='storage_location',
        entity_id=location.id,
        ip=ip,
        metadata={'reason': clean_reason, 'before': before, 'after': location_snapshot(location)},
    )
    logger.info(
        'Storage location %s occupancy adjusted from %s to %s',
        location.name,
        before['occupied'],
        location.occupied,
    )
    return location
