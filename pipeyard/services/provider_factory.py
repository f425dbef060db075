from __future__ import annotations

from functools import lru_cache

from pipeyard.config import settings
from pipeyard.services.notification_channels import LogChannel, WebhookChannel


@lru_cache(maxsize=1)
def get_notification_channel():
    channel = settings.notification_channel.strip().lower()
    if channel == 'webhook':
        return WebhookChannel(
            settings.notification_webhook_url or '',
            timeout_seconds=settings.notification_timeout_seconds,
        )
    return LogChannel()
