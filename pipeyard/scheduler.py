import logging

from apscheduler.schedulers.background import BackgroundScheduler

from pipeyard.config import settings
from pipeyard.db import SessionLocal
from pipeyard.services.notification_worker import drain_notification_queue
from pipeyard.services.provider_factory import get_notification_channel

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler(timezone='UTC')


@scheduler.scheduled_job(
    'interval',
    seconds=settings.queue_drain_interval_seconds,
    id='drain_notifications',
    max_instances=1,
    coalesce=True,
)
def drain_notifications_job():
    with SessionLocal() as db:
        drain_notification_queue(
            db,
            channel=get_notification_channel(),
            batch_size=settings.queue_batch_size,
            max_attempts=settings.queue_max_attempts,
        )
        db.commit()
