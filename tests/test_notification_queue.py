from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy import select, update

from engine_fixtures import EngineTestCase
from pipeyard.models import NotificationQueueEntry
from pipeyard.services.notification_channels import LogChannel, WebhookChannel, render_subject
from pipeyard.services.notification_queue_service import enqueue, list_stuck_notifications
from pipeyard.services.notification_worker import drain_notification_queue


class RecordingChannel:
    def __init__(self, fail_types: set[str] | None = None) -> None:
        self.fail_types = fail_types or set()
        self.sent: list[tuple[str, dict]] = []

    def send(self, notification_type: str, payload: dict) -> None:
        if notification_type in self.fail_types:
            raise RuntimeError('chat webhook returned 502')
        self.sent.append((notification_type, payload))


class QueueTestCase(EngineTestCase):
    def setUp(self) -> None:
        super().setUp()
        location = self.add_location(capacity=100)
        self.request = self.add_request(10)
        self.approve(self.request, [location], 10)
        self.load = self.book(self.request)

    def _enqueue(self, notification_type: str = 'load_approved', target_status: str = 'APPROVED'):
        entry_id = enqueue(
            self.db,
            notification_type=notification_type,
            load_id=self.load.id,
            storage_request_id=self.request.id,
            target_status=target_status,
            payload={'truckingLoadId': self.load.id, 'statusTransitionTo': target_status},
        )
        self.db.commit()
        return entry_id


class EnqueueDedupTests(QueueTestCase):
    def test_same_key_while_unprocessed_is_a_no_op(self) -> None:
        first = self._enqueue()
        second = self._enqueue()
        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertEqual(self.count(NotificationQueueEntry, NotificationQueueEntry.type == 'load_approved'), 1)

    def test_different_target_status_is_a_new_entry(self) -> None:
        self._enqueue(target_status='APPROVED')
        self.assertIsNotNone(self._enqueue(target_status='IN_TRANSIT'))

    def test_same_key_allowed_again_once_processed(self) -> None:
        first = self._enqueue()
        self.db.execute(
            update(NotificationQueueEntry).where(NotificationQueueEntry.id == first).values(processed=True)
        )
        self.db.commit()
        self.assertIsNotNone(self._enqueue())
        self.assertEqual(self.count(NotificationQueueEntry, NotificationQueueEntry.type == 'load_approved'), 2)

    def test_request_level_entries_are_deduplicated_per_request(self) -> None:
        def enqueue_approval(request_id: int):
            entry_id = enqueue(
                self.db,
                notification_type='request_approved',
                storage_request_id=request_id,
                target_status='APPROVED',
                payload={'storageRequestId': request_id},
            )
            self.db.commit()
            return entry_id

        # approve() in setUp already queued one for self.request
        self.assertIsNone(enqueue_approval(self.request.id))
        self.assertEqual(self.count(NotificationQueueEntry, NotificationQueueEntry.type == 'request_approved'), 1)

        other = self.add_request(5)
        self.assertIsNotNone(enqueue_approval(other.id))
        self.assertEqual(self.count(NotificationQueueEntry, NotificationQueueEntry.type == 'request_approved'), 2)


class DrainTests(QueueTestCase):
    def test_drain_sends_in_creation_order_and_marks_processed(self) -> None:
        channel = RecordingChannel()
        result = drain_notification_queue(self.db, channel=channel, batch_size=50, max_attempts=3)
        self.db.commit()

        # request_submitted, request_approved, load_booked
        self.assertEqual(result.sent, 3)
        self.assertEqual(result.failed, 0)
        self.assertEqual([sent[0] for sent in channel.sent], ['request_submitted', 'request_approved', 'load_booked'])
        self.assertEqual(self.count(NotificationQueueEntry, NotificationQueueEntry.processed.is_(False)), 0)
        self.assertTrue(
            all(entry.processed_at is not None for entry in self.db.execute(select(NotificationQueueEntry)).scalars())
        )

        again = drain_notification_queue(self.db, channel=channel, batch_size=50, max_attempts=3)
        self.assertEqual((again.sent, again.failed, again.skipped), (0, 0, 0))

    def test_batch_size_limits_each_drain(self) -> None:
        channel = RecordingChannel()
        result = drain_notification_queue(self.db, channel=channel, batch_size=2, max_attempts=3)
        self.assertEqual(result.sent, 2)
        self.assertEqual(self.count(NotificationQueueEntry, NotificationQueueEntry.processed.is_(False)), 1)

    def test_failures_are_retried_until_attempts_run_out(self) -> None:
        channel = RecordingChannel(fail_types={'load_booked'})

        for _ in range(3):
            result = drain_notification_queue(self.db, channel=channel, batch_size=50, max_attempts=3)
            self.db.commit()
            self.assertEqual(result.failed, 1)

        entry = self.db.execute(
            select(NotificationQueueEntry).where(NotificationQueueEntry.type == 'load_booked')
        ).scalar_one()
        self.assertFalse(entry.processed)
        self.assertEqual(entry.attempts, 3)
        self.assertIsNotNone(entry.last_attempt_at)
        self.assertIn('502', entry.last_error)

        final = drain_notification_queue(self.db, channel=channel, batch_size=50, max_attempts=3)
        self.assertEqual((final.sent, final.failed, final.skipped), (0, 0, 1))

        stuck = list_stuck_notifications(self.db, max_attempts=3, max_age_minutes=60)
        self.assertEqual([row.id for row in stuck], [entry.id])

    def test_old_unprocessed_entries_are_stuck(self) -> None:
        self.db.execute(
            update(NotificationQueueEntry).values(created_at=datetime.now(timezone.utc) - timedelta(hours=3))
        )
        self.db.commit()
        stuck = list_stuck_notifications(self.db, max_attempts=3, max_age_minutes=60)
        self.assertEqual(len(stuck), 3)
        self.assertEqual(list_stuck_notifications(self.db, max_attempts=3, max_age_minutes=600), [])

    def test_queue_rows_cannot_be_deleted(self) -> None:
        from pipeyard.models import AppendOnlyViolation

        entry = self.db.execute(select(NotificationQueueEntry).limit(1)).scalar_one()
        self.db.delete(entry)
        with self.assertRaises(AppendOnlyViolation):
            self.db.flush()
        self.db.rollback()


class ChannelTests(unittest.TestCase):
    def test_subject_rendering(self) -> None:
        subject = render_subject('load_completed', {'loadNumber': 2, 'referenceCode': 'REQ-2026-000001'})
        self.assertEqual(subject, 'Load #2 for REQ-2026-000001 received')
        self.assertEqual(render_subject('load_completed', {}), 'load_completed')
        self.assertEqual(render_subject('unknown_type', {}), 'unknown_type')

    def test_log_channel_logs_summary(self) -> None:
        with self.assertLogs('pipeyard.services.notification_channels', level='INFO') as logs:
            LogChannel().send('request_approved', {'referenceCode': 'REQ-2026-000004', 'userEmail': 'a@b.example'})
        self.assertIn('Storage request REQ-2026-000004 approved', logs.output[0])

    @patch('pipeyard.services.notification_channels.urlopen')
    def test_webhook_posts_json(self, mock_urlopen) -> None:
        channel = WebhookChannel('https://chat.example/hook', timeout_seconds=5)
        channel.send('load_booked', {'loadNumber': 1, 'referenceCode': 'REQ-2026-000002'})

        req = mock_urlopen.call_args.args[0]
        self.assertEqual(req.full_url, 'https://chat.example/hook')
        self.assertIn(b'"subject": "Load #1 booked for REQ-2026-000002"', req.data)
        self.assertEqual(mock_urlopen.call_args.kwargs['timeout'], 5)

    @patch('pipeyard.services.notification_channels.urlopen')
    def test_webhook_network_error_is_runtime_error(self, mock_urlopen) -> None:
        from urllib.error import URLError

        mock_urlopen.side_effect = URLError('connection refused')
        with self.assertRaises(RuntimeError):
            WebhookChannel('https://chat.example/hook').send('load_booked', {})


if __name__ == '__main__':
    unittest.main()
