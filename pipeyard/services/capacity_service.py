from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from pipeyard.errors import InsufficientCapacity
from pipeyard.models import LocationReservation, StorageLocation

FEET_TO_METERS = Decimal('0.3048')
METERS_QUANTUM = Decimal('0.01')


@dataclass(frozen=True)
class LocationShare:
    location: StorageLocation
    quantity: int


@dataclass(frozen=True)
class CompletionSettlement:
    added_quantity: int
    reservation_credit: int
    added_meters: Decimal


def quantize_meters(value: Decimal) -> Decimal:
    return Decimal(value).quantize(METERS_QUANTUM, rounding=ROUND_HALF_UP)


def feet_to_meters(feet: Decimal | int | float) -> Decimal:
    return Decimal(str(feet)) * FEET_TO_METERS


def available_count(location: StorageLocation) -> int:
    return max(location.capacity - location.occupied, 0)


def available_length(location: StorageLocation) -> Decimal:
    remaining = Decimal(location.capacity_meters) - Decimal(location.occupied_meters or 0)
    return max(remaining, Decimal('0'))


def _location_names(locations: list[StorageLocation]) -> str:
    return ', '.join(location.name for location in locations)


def distribute_sequentially(required: int, locations: list[StorageLocation]) -> list[LocationShare]:
    """Split ``required`` joints across ``locations`` in the given order.

    Each location takes as much as it has free before the next one is used,
    so no share ever exceeds its location's remaining capacity.
    """
    total_available = sum(available_count(location) for location in locations)
    if total_available < required:
        raise InsufficientCapacity(
            f'Insufficient capacity: {required} joints required, {total_available} available '
            f'across locations: {_location_names(locations)}',
            details={
                'required': required,
                'available': total_available,
                'locations': [location.name for location in locations],
            },
        )

    shares: list[LocationShare] = []
    remaining = required
    for location in locations:
        share = min(remaining, available_count(location))
        shares.append(LocationShare(location=location, quantity=share))
        remaining -= share
    return shares


def settle_completion(
    location: StorageLocation,
    *,
    quantity: int,
    meters: Decimal,
    unconsumed_reservation: int,
) -> CompletionSettlement:
    """Work out what a completed load adds to ``location``.

    Joints already reserved for the request on this location at approval
    are credited instead of being counted twice; only the excess is added.
    Length was never reserved, so all of it is added.
    """
    credit = min(quantity, max(unconsumed_reservation, 0))
    added_quantity = quantity - credit
    free_count = available_count(location)
    if added_quantity > free_count:
        raise InsufficientCapacity(
            f'Insufficient capacity at {location.name}: {quantity} joints arriving, '
            f'{free_count + credit} available ({credit} reserved for this request)',
            details={
                'location': location.name,
                'required': quantity,
                'available': free_count + credit,
                'reserved_for_request': credit,
            },
        )

    meters = quantize_meters(meters)
    free_meters = available_length(location)
    if meters > free_meters:
        raise InsufficientCapacity(
            f'Insufficient length capacity at {location.name}: {meters} m arriving, {free_meters} m available',
            details={
                'location': location.name,
                'required_meters': str(meters),
                'available_meters': str(free_meters),
            },
        )
    return CompletionSettlement(added_quantity=added_quantity, reservation_credit=credit, added_meters=meters)


@dataclass(frozen=True)
class ReservationDraw:
    reservation: LocationReservation
    quantity: int


def unconsumed_quantity(reservation: LocationReservation) -> int:
    return max(reservation.reserved_quantity - reservation.consumed_quantity, 0)


def draw_reservations(reservations: list[LocationReservation], quantity: int) -> list[ReservationDraw]:
    """Consume up to ``quantity`` reserved joints, taking from ``reservations`` in order.

    A request reserves capacity as a whole, so joints arriving at one
    location may use up a reservation held on another.
    """
    draws: list[ReservationDraw] = []
    remaining = quantity
    for reservation in reservations:
        if remaining <= 0:
            break
        take = min(remaining, unconsumed_quantity(reservation))
        if take:
            draws.append(ReservationDraw(reservation=reservation, quantity=take))
            remaining -= take
    return draws
