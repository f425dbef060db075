from __future__ import annotations

import json
import logging
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)

SUBJECTS = {
    'request_submitted': 'Storage request {referenceCode} submitted',
    'request_approved': 'Storage request {referenceCode} approved',
    'request_rejected': 'Storage request {referenceCode} rejected',
    'load_booked': 'Load #{loadNumber} booked for {referenceCode}',
    'load_approved': 'Load #{loadNumber} approved for {referenceCode}',
    'load_in_transit': 'Load #{loadNumber} for {referenceCode} is in transit',
    'load_completed': 'Load #{loadNumber} for {referenceCode} received',
    'load_rejected': 'Load #{loadNumber} for {referenceCode} rejected',
}


def render_subject(notification_type: str, payload: dict) -> str:
    template = SUBJECTS.get(notification_type)
    if template is None:
        return notification_type
    try:
        return template.format(**payload)
    except KeyError:
        return notification_type


class LogChannel:
    name = 'log'

    def send(self, notification_type: str, payload: dict) -> None:
        logger.info(
            'Notification %s to %s: %s',
            notification_type,
            payload.get('userEmail') or '-',
            render_subject(notification_type, payload),
        )


class WebhookChannel:
    name = 'webhook'

    def __init__(self, url: str, *, timeout_seconds: int = 10) -> None:
        if not url:
            raise RuntimeError('NOTIFICATION_WEBHOOK_URL is required for the webhook channel')
        self.url = url
        self.timeout_seconds = timeout_seconds

    def send(self, notification_type: str, payload: dict) -> None:
        body = {
            'type': notification_type,
            'subject': render_subject(notification_type, payload),
            'payload': payload,
        }
        req = Request(
            url=self.url,
            data=json.dumps(body).encode('utf-8'),
            headers={'Content-Type': 'application/json'},
            method='POST',
        )
        try:
            with urlopen(req, timeout=self.timeout_seconds) as response:
                response.read()
        except HTTPError as exc:
            detail = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            raise RuntimeError(f'Webhook error {exc.code}: {detail}') from exc
        except URLError as exc:
            raise RuntimeError(f'Webhook network error: {exc.reason}') from exc
