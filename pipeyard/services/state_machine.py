"""Legal status transitions for storage requests and loads.

Transition functions elsewhere re-read the row under a lock and call the
``assert_*`` helpers here before writing, so a second approval or a second
completion of the same row always fails with a typed error instead of
re-applying its side effects.
"""

from __future__ import annotations

from pipeyard.errors import NotPending, WrongState
from pipeyard.models import Load, LoadStatus, RequestStatus, StorageRequest

REQUEST_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.DRAFT: frozenset({RequestStatus.PENDING}),
    RequestStatus.PENDING: frozenset({RequestStatus.APPROVED, RequestStatus.REJECTED}),
    RequestStatus.APPROVED: frozenset(),
    RequestStatus.REJECTED: frozenset(),
}

LOAD_TRANSITIONS: dict[LoadStatus, frozenset[LoadStatus]] = {
    LoadStatus.NEW: frozenset({LoadStatus.APPROVED, LoadStatus.REJECTED}),
    LoadStatus.APPROVED: frozenset({LoadStatus.IN_TRANSIT}),
    LoadStatus.IN_TRANSIT: frozenset({LoadStatus.COMPLETED}),
    LoadStatus.COMPLETED: frozenset(),
    LoadStatus.REJECTED: frozenset(),
}

TERMINAL_REQUEST_STATUSES = frozenset(status for status, targets in REQUEST_TRANSITIONS.items() if not targets)
TERMINAL_LOAD_STATUSES = frozenset(status for status, targets in LOAD_TRANSITIONS.items() if not targets)
OPEN_LOAD_STATUSES = frozenset(LoadStatus) - TERMINAL_LOAD_STATUSES


def _origins(table: dict, target) -> frozenset:
    return frozenset(origin for origin, targets in table.items() if target in targets)


def can_transition_request(current: RequestStatus, target: RequestStatus) -> bool:
    return target in REQUEST_TRANSITIONS[current]


def can_transition_load(current: LoadStatus, target: LoadStatus) -> bool:
    return target in LOAD_TRANSITIONS[current]


def is_terminal_load_status(status: LoadStatus) -> bool:
    return status in TERMINAL_LOAD_STATUSES


def assert_request_transition(request: StorageRequest, target: RequestStatus) -> None:
    if can_transition_request(request.status, target):
        return
    label = request.reference_code or f'#{request.id}'
    expected = sorted(origin.value for origin in _origins(REQUEST_TRANSITIONS, target))
    details = {
        'request_id': request.id,
        'reference_code': request.reference_code,
        'current_status': request.status.value,
        'expected_status': expected,
        'target_status': target.value,
    }
    if RequestStatus.PENDING in _origins(REQUEST_TRANSITIONS, target):
        raise NotPending(
            f'Request {label} is not pending (current status: {request.status.value})',
            details=details,
        )
    raise WrongState(
        f'Request {label} cannot move from {request.status.value} to {target.value}',
        details=details,
    )


def assert_load_transition(load: Load, target: LoadStatus) -> None:
    if can_transition_load(load.status, target):
        return
    expected = sorted(origin.value for origin in _origins(LOAD_TRANSITIONS, target))
    raise WrongState(
        f'Load #{load.sequence_number} must be {" or ".join(expected)} to become {target.value} '
        f'(current status: {load.status.value})',
        details={
            'load_id': load.id,
            'current_status': load.status.value,
            'expected_status': expected,
            'target_status': target.value,
        },
    )
