from __future__ import annotations

import unittest
from types import SimpleNamespace

from pipeyard.errors import NotPending, WrongState
from pipeyard.models import LoadStatus, RequestStatus
from pipeyard.services.state_machine import (
    OPEN_LOAD_STATUSES,
    TERMINAL_LOAD_STATUSES,
    TERMINAL_REQUEST_STATUSES,
    assert_load_transition,
    assert_request_transition,
    can_transition_load,
    can_transition_request,
)


class StateMachineTests(unittest.TestCase):
    def test_request_only_leaves_pending_for_approved_or_rejected(self) -> None:
        self.assertTrue(can_transition_request(RequestStatus.PENDING, RequestStatus.APPROVED))
        self.assertTrue(can_transition_request(RequestStatus.PENDING, RequestStatus.REJECTED))
        self.assertFalse(can_transition_request(RequestStatus.APPROVED, RequestStatus.REJECTED))
        self.assertFalse(can_transition_request(RequestStatus.REJECTED, RequestStatus.APPROVED))
        self.assertEqual(TERMINAL_REQUEST_STATUSES, {RequestStatus.APPROVED, RequestStatus.REJECTED})

    def test_load_path_is_linear_with_reject_only_from_new(self) -> None:
        self.assertTrue(can_transition_load(LoadStatus.NEW, LoadStatus.APPROVED))
        self.assertTrue(can_transition_load(LoadStatus.APPROVED, LoadStatus.IN_TRANSIT))
        self.assertTrue(can_transition_load(LoadStatus.IN_TRANSIT, LoadStatus.COMPLETED))
        self.assertTrue(can_transition_load(LoadStatus.NEW, LoadStatus.REJECTED))
        self.assertFalse(can_transition_load(LoadStatus.APPROVED, LoadStatus.REJECTED))
        self.assertFalse(can_transition_load(LoadStatus.NEW, LoadStatus.COMPLETED))
        self.assertFalse(can_transition_load(LoadStatus.COMPLETED, LoadStatus.IN_TRANSIT))

    def test_open_and_terminal_load_statuses_partition_the_enum(self) -> None:
        self.assertEqual(TERMINAL_LOAD_STATUSES, {LoadStatus.COMPLETED, LoadStatus.REJECTED})
        self.assertEqual(OPEN_LOAD_STATUSES, {LoadStatus.NEW, LoadStatus.APPROVED, LoadStatus.IN_TRANSIT})

    def test_approving_non_pending_request_raises_not_pending(self) -> None:
        request = SimpleNamespace(id=7, reference_code='REQ-2026-000007', status=RequestStatus.APPROVED)
        with self.assertRaises(NotPending) as ctx:
            assert_request_transition(request, RequestStatus.APPROVED)
        self.assertIn('REQ-2026-000007', ctx.exception.message)
        self.assertEqual(ctx.exception.details['current_status'], 'APPROVED')

    def test_submitting_pending_request_raises_wrong_state(self) -> None:
        request = SimpleNamespace(id=7, reference_code=None, status=RequestStatus.PENDING)
        with self.assertRaises(WrongState):
            assert_request_transition(request, RequestStatus.PENDING)

    def test_completing_load_that_is_not_in_transit_raises_wrong_state(self) -> None:
        load = SimpleNamespace(id=3, sequence_number=1, status=LoadStatus.APPROVED)
        with self.assertRaises(WrongState) as ctx:
            assert_load_transition(load, LoadStatus.COMPLETED)
        self.assertEqual(ctx.exception.details['expected_status'], ['IN_TRANSIT'])
        self.assertEqual(ctx.exception.details['current_status'], 'APPROVED')


if __name__ == '__main__':
    unittest.main()
