from __future__ import annotations

import argparse

from pipeyard.config import settings
from pipeyard.db import SessionLocal
from pipeyard.logging_config import setup_logging
from pipeyard.services.notification_queue_service import list_stuck_notifications
from pipeyard.services.notification_worker import DrainResult, drain_notification_queue
from pipeyard.services.provider_factory import get_notification_channel


def drain_once(*, batch_size: int, max_attempts: int) -> DrainResult:
    with SessionLocal() as db:
        result = drain_notification_queue(
            db,
            channel=get_notification_channel(),
            batch_size=batch_size,
            max_attempts=max_attempts,
        )
        db.commit()
    return result


def print_stuck(*, max_attempts: int, max_age_minutes: int) -> None:
    with SessionLocal() as db:
        entries = list_stuck_notifications(db, max_attempts=max_attempts, max_age_minutes=max_age_minutes)
        for entry in entries:
            print(
                f'{entry.id}\t{entry.type}\tload={entry.load_id}\tattempts={entry.attempts}\t'
                f'created={entry.created_at:%Y-%m-%d %H:%M}\t{entry.last_error or ""}'
            )
    print(f'{len(entries)} stuck notifications')


def main() -> None:
    parser = argparse.ArgumentParser(description='Deliver pending lifecycle notifications once.')
    parser.add_argument('--batch-size', type=int, default=settings.queue_batch_size)
    parser.add_argument('--max-attempts', type=int, default=settings.queue_max_attempts)
    parser.add_argument(
        '--list-stuck',
        action='store_true',
        help='List entries that exhausted their attempts or are older than the stuck age instead of draining.',
    )
    args = parser.parse_args()

    setup_logging()
    if args.list_stuck:
        print_stuck(max_attempts=args.max_attempts, max_age_minutes=settings.queue_stuck_age_minutes)
        return

    result = drain_once(batch_size=args.batch_size, max_attempts=args.max_attempts)
    print(f'Notification drain complete: sent={result.sent}, failed={result.failed}, skipped={result.skipped}')


if __name__ == '__main__':
    main()
