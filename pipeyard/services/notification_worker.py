"""Drains the notification queue through a delivery channel.

A failed delivery only bumps the entry's attempt counter and records the
error; the entry stays unprocessed and is retried on a later drain until
it reaches ``max_attempts``. Exhausted entries are left in place for an
operator and are never deleted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from pipeyard.models import NotificationQueueEntry
from pipeyard.services.notification_queue_service import count_exhausted_notifications

logger = logging.getLogger(__name__)

ERROR_TEXT_LIMIT = 500


@dataclass
class DrainResult:
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {'sent': self.sent, 'failed': self.failed, 'skipped': self.skipped, 'errors': self.errors}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def drain_notification_queue(
    db: Session,
    *,
    channel,
    batch_size: int,
    max_attempts: int,
) -> DrainResult:
    entries = db.execute(
        select(NotificationQueueEntry)
        .where(
            NotificationQueueEntry.processed.is_(False),
            NotificationQueueEntry.attempts < max_attempts,
        )
        .order_by(NotificationQueueEntry.created_at.asc(), NotificationQueueEntry.id.asc())
        .limit(batch_size)
        .with_for_update(skip_locked=True)
    ).scalars().all()

    result = DrainResult()
    for entry in entries:
        attempted_at = _now()
        entry.attempts += 1
        entry.last_attempt_at = attempted_at
        try:
            channel.send(entry.type, entry.payload or {})
        except Exception as exc:  # noqa: BLE001
            entry.last_error = str(exc)[:ERROR_TEXT_LIMIT]
            result.failed += 1
            result.errors.append({'id': entry.id, 'type': entry.type, 'error': entry.last_error})
            logger.warning(
                'Notification %s (%s) failed on attempt %s/%s: %s',
                entry.id,
                entry.type,
                entry.attempts,
                max_attempts,
                entry.last_error,
            )
        else:
            entry.processed = True
            entry.processed_at = attempted_at
            entry.last_error = None
            result.sent += 1
        db.flush()

    result.skipped = count_exhausted_notifications(db, max_attempts=max_attempts)
    if result.skipped:
        logger.warning('%s notifications exhausted %s attempts and need attention', result.skipped, max_attempts)
    logger.info('Notification drain: sent=%s failed=%s skipped=%s', result.sent, result.failed, result.skipped)
    return result
