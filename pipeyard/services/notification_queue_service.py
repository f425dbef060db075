"""Durable, deduplicated queue of lifecycle notifications.

Entries are written inside the same transaction as the state change that
produced them. While an entry for ``(type, load_id, target_status)`` is
still unprocessed, enqueueing the same key again is a silent no-op backed
by the partial unique index on the table. Request-level entries carry no
load id, so a second partial index keys them on
``(type, storage_request_id, target_status)`` instead.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from fastapi.encoders import jsonable_encoder
from sqlalchemy import func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from pipeyard.models import NotificationQueueEntry

logger = logging.getLogger(__name__)

REQUEST_SUBMITTED = 'request_submitted'
REQUEST_APPROVED = 'request_approved'
REQUEST_REJECTED = 'request_rejected'
LOAD_BOOKED = 'load_booked'
LOAD_APPROVED = 'load_approved'
LOAD_IN_TRANSIT = 'load_in_transit'
LOAD_COMPLETED = 'load_completed'
LOAD_REJECTED = 'load_rejected'

_INSERTS = {
    'postgresql': pg_insert,
    'sqlite': sqlite_insert,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    try:
        return _INSERTS[dialect]
    except KeyError as exc:
        raise RuntimeError(f'Notification queue does not support the {dialect} dialect') from exc


def enqueue(
    db: Session,
    *,
    notification_type: str,
    payload: dict,
    load_id: int | None = None,
    storage_request_id: int | None = None,
    target_status: str | None = None,
) -> int | None:
    """Queue a notification, returning the new entry id or ``None`` when deduplicated."""
    insert = _insert_for(db)
    stmt = (
        insert(NotificationQueueEntry)
        .values(
            type=notification_type,
            load_id=load_id,
            storage_request_id=storage_request_id,
            target_status=target_status,
            payload=jsonable_encoder(payload),
            processed=False,
            attempts=0,
            created_at=_now(),
        )
        .on_conflict_do_nothing()
        .returning(NotificationQueueEntry.id)
    )
    entry_id = db.execute(stmt).scalar_one_or_none()
    if entry_id is None:
        logger.info('Notification %s for load %s -> %s already queued', notification_type, load_id, target_status)
    return entry_id


def list_pending_notifications(db: Session, *, limit: int = 100) -> list[NotificationQueueEntry]:
    return db.execute(
        select(NotificationQueueEntry)
        .where(NotificationQueueEntry.processed.is_(False))
        .order_by(NotificationQueueEntry.created_at.asc(), NotificationQueueEntry.id.asc())
        .limit(limit)
    ).scalars().all()


def _stuck_condition(*, max_attempts: int, max_age_minutes: int):
    cutoff = _now() - timedelta(minutes=max_age_minutes)
    return (
        NotificationQueueEntry.processed.is_(False),
        or_(
            NotificationQueueEntry.attempts >= max_attempts,
            NotificationQueueEntry.created_at < cutoff,
        ),
    )


def list_stuck_notifications(
    db: Session,
    *,
    max_attempts: int,
    max_age_minutes: int,
    limit: int = 100,
) -> list[NotificationQueueEntry]:
    return db.execute(
        select(NotificationQueueEntry)
        .where(*_stuck_condition(max_attempts=max_attempts, max_age_minutes=max_age_minutes))
        .order_by(NotificationQueueEntry.created_at.asc(), NotificationQueueEntry.id.asc())
        .limit(limit)
    ).scalars().all()


def count_exhausted_notifications(db: Session, *, max_attempts: int) -> int:
    return db.execute(
        select(func.count(NotificationQueueEntry.id)).where(
            NotificationQueueEntry.processed.is_(False),
            NotificationQueueEntry.attempts >= max_attempts,
        )
    ).scalar_one()


def request_payload(request, *, company_name: str | None, status_from: str | None, status_to: str, **extra) -> dict:
    payload = {
        'storageRequestId': request.id,
        'referenceCode': request.reference_code,
        'companyName': company_name,
        'userEmail': request.requester_email,
        'statusTransitionFrom': status_from,
        'statusTransitionTo': status_to,
        'occurredAt': _now(),
    }
    payload.update(extra)
    return payload


def load_payload(load, request, *, company_name: str | None, status_from: str | None, status_to: str, **extra) -> dict:
    payload = request_payload(
        request,
        company_name=company_name,
        status_from=status_from,
        status_to=status_to,
        truckingLoadId=load.id,
        loadNumber=load.sequence_number,
        direction=load.direction.value,
        scheduledSlotStart=load.scheduled_slot_start,
        scheduledSlotEnd=load.scheduled_slot_end,
        truckingCompany=load.trucking_company,
        driverName=load.driver_name,
    )
    payload.update(extra)
    return payload
