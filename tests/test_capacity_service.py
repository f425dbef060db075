from __future__ import annotations

import unittest
from decimal import Decimal
from types import SimpleNamespace

from pipeyard.errors import InsufficientCapacity
from pipeyard.services.capacity_service import (
    available_count,
    available_length,
    distribute_sequentially,
    feet_to_meters,
    settle_completion,
)


def _location(name: str, capacity: int, occupied: int = 0, capacity_meters: str = '1000', occupied_meters: str = '0'):
    return SimpleNamespace(
        name=name,
        capacity=capacity,
        occupied=occupied,
        capacity_meters=Decimal(capacity_meters),
        occupied_meters=Decimal(occupied_meters),
    )


class CapacityServiceTests(unittest.TestCase):
    def test_feet_to_meters_uses_exact_constant(self) -> None:
        self.assertEqual(feet_to_meters(100), Decimal('30.4800'))
        self.assertEqual(feet_to_meters(Decimal('31.5')), Decimal('9.60120'))

    def test_available_figures(self) -> None:
        location = _location('A-1', 100, occupied=35, capacity_meters='500', occupied_meters='120.5')
        self.assertEqual(available_count(location), 65)
        self.assertEqual(available_length(location), Decimal('379.5'))

    def test_sequential_fill_uses_caller_order_and_never_exceeds_a_location(self) -> None:
        first = _location('A-1', 100, occupied=80)
        second = _location('A-2', 50, occupied=0)
        third = _location('A-3', 50, occupied=0)
        shares = distribute_sequentially(45, [first, second, third])
        self.assertEqual([share.quantity for share in shares], [20, 25, 0])
        for share in shares:
            self.assertLessEqual(share.quantity, available_count(share.location))

    def test_insufficient_capacity_reports_required_and_available(self) -> None:
        with self.assertRaises(InsufficientCapacity) as ctx:
            distribute_sequentially(60, [_location('A-1', 40, occupied=10), _location('A-2', 20)])
        self.assertIn('60 joints required, 50 available', ctx.exception.message)
        self.assertIn('A-1, A-2', ctx.exception.message)
        self.assertEqual(ctx.exception.details['required'], 60)
        self.assertEqual(ctx.exception.details['available'], 50)

    def test_settlement_credits_unconsumed_reservation(self) -> None:
        location = _location('A-1', 100, occupied=60)
        settlement = settle_completion(location, quantity=60, meters=Decimal('548.64'), unconsumed_reservation=60)
        self.assertEqual(settlement.added_quantity, 0)
        self.assertEqual(settlement.reservation_credit, 60)
        self.assertEqual(settlement.added_meters, Decimal('548.64'))

    def test_settlement_adds_excess_over_reservation(self) -> None:
        location = _location('A-1', 100, occupied=60)
        settlement = settle_completion(location, quantity=70, meters=Decimal('10'), unconsumed_reservation=60)
        self.assertEqual(settlement.added_quantity, 10)
        self.assertEqual(settlement.reservation_credit, 60)

    def test_settlement_without_reservation_checks_free_count(self) -> None:
        location = _location('B-1', 100, occupied=95)
        with self.assertRaises(InsufficientCapacity) as ctx:
            settle_completion(location, quantity=10, meters=Decimal('1'), unconsumed_reservation=0)
        self.assertEqual(ctx.exception.details['available'], 5)

    def test_settlement_checks_length_capacity(self) -> None:
        location = _location('A-1', 100, capacity_meters='100', occupied_meters='90')
        with self.assertRaises(InsufficientCapacity) as ctx:
            settle_completion(location, quantity=5, meters=Decimal('45.72'), unconsumed_reservation=0)
        self.assertIn('length', ctx.exception.message)


if __name__ == '__main__':
    unittest.main()
