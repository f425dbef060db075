from __future__ import annotations

import unittest
from decimal import Decimal
from unittest.mock import MagicMock, patch

from sqlalchemy import select

from engine_fixtures import ADMIN, ADMIN_EMAIL, EngineTestCase
from pipeyard.auth import Principal, Role, is_privileged_caller
from pipeyard.config import settings
from pipeyard.errors import AccessDenied, ValidationFailed
from pipeyard.models import AppendOnlyViolation, AuditLog, StorageLocation
from pipeyard.security.identity import resolve_principal
from pipeyard.services.audit_service import list_audit_entries
from pipeyard.services.completion_service import complete_load
from pipeyard.services.load_service import mark_load_approved, mark_load_in_transit, reject_load
from pipeyard.services.location_service import adjust_location_occupancy, create_storage_location
from pipeyard.services.request_service import append_request_note, approve_request, reject_request


class GuardTests(unittest.TestCase):
    def test_privileged_requires_admin_role_and_listed_email(self) -> None:
        accounts = frozenset({'ops@yard.example'})
        self.assertTrue(is_privileged_caller(Principal('ops@yard.example', Role.ADMIN), accounts))
        self.assertTrue(is_privileged_caller(Principal(' OPS@yard.example ', Role.ADMIN), accounts))
        self.assertFalse(is_privileged_caller(Principal('other@yard.example', Role.ADMIN), accounts))
        self.assertFalse(is_privileged_caller(Principal('ops@yard.example', Role.CUSTOMER), accounts))
        self.assertFalse(is_privileged_caller(None, accounts))

    def test_every_privileged_operation_rejects_before_touching_the_session(self) -> None:
        customer = Principal('buyer@acme.example', Role.CUSTOMER, company_id=1)
        calls = [
            lambda db: approve_request(db, actor=customer, request_id=1, location_ids=[1], required_quantity=1),
            lambda db: reject_request(db, actor=customer, request_id=1, reason='no'),
            lambda db: append_request_note(db, actor=customer, request_id=1, note='hello'),
            lambda db: mark_load_approved(db, actor=customer, load_id=1),
            lambda db: mark_load_in_transit(db, actor=customer, load_id=1),
            lambda db: reject_load(db, actor=customer, load_id=1, reason='no'),
            lambda db: complete_load(
                db, actor=customer, load_id=1, location_id=1, reported_quantity=1, manifest_items=[{'quantity': 1}]
            ),
            lambda db: create_storage_location(db, actor=customer, name='X', capacity=1, capacity_meters=1),
            lambda db: adjust_location_occupancy(
                db, actor=customer, location_id=1, new_occupied=0, new_occupied_meters=0, reason='recount after audit'
            ),
        ]
        with patch.object(settings, 'privileged_accounts', [ADMIN_EMAIL]):
            for call in calls:
                db = MagicMock()
                with self.assertRaises(AccessDenied):
                    call(db)
                db.execute.assert_not_called()
                db.add.assert_not_called()
                db.flush.assert_not_called()


class IdentityResolutionTests(EngineTestCase):
    def test_privileged_email_becomes_admin(self) -> None:
        principal = resolve_principal(self.db, 'Ops@Yard.Example', frozenset({ADMIN_EMAIL}))
        self.assertEqual(principal.role, Role.ADMIN)

    def test_customer_company_found_by_domain(self) -> None:
        principal = resolve_principal(self.db, 'buyer@acme.example', frozenset({ADMIN_EMAIL}))
        self.assertEqual(principal.role, Role.CUSTOMER)
        self.assertEqual(principal.company_id, self.company.id)

    def test_missing_or_malformed_identity(self) -> None:
        self.assertIsNone(resolve_principal(self.db, None))
        self.assertIsNone(resolve_principal(self.db, 'not-an-email'))


class LocationAdminTests(EngineTestCase):
    def test_create_location_is_audited(self) -> None:
        location = create_storage_location(self.db, actor=ADMIN, name=' C-7 ', capacity=80, capacity_meters='750.5')
        self.db.commit()
        self.assertEqual(location.name, 'C-7')
        self.assertEqual(location.capacity_meters, Decimal('750.50'))
        entry = self.db.execute(select(AuditLog).where(AuditLog.action == 'CREATE_LOCATION')).scalar_one()
        self.assertEqual(entry.entity_id, location.id)

    def test_duplicate_location_name(self) -> None:
        self.add_location('A-1')
        with self.assertRaises(ValidationFailed):
            create_storage_location(self.db, actor=ADMIN, name='A-1', capacity=10, capacity_meters=100)

    def test_adjustment_records_before_and_after(self) -> None:
        location = self.add_location(capacity=100, occupied=40)
        adjust_location_occupancy(
            self.db,
            actor=ADMIN,
            location_id=location.id,
            new_occupied=35,
            new_occupied_meters='320',
            reason='Physical recount found 5 joints moved',
        )
        self.db.commit()

        self.db.refresh(location)
        self.assertEqual(location.occupied, 35)
        entry = list_audit_entries(self.db, action='ADJUST_OCCUPANCY')[0]
        self.assertEqual(entry.meta['before']['occupied'], 40)
        self.assertEqual(entry.meta['after']['occupied'], 35)

    def test_adjustment_rejects_short_reason_and_out_of_range_values(self) -> None:
        location = self.add_location(capacity=100)
        bad_calls = [
            {'new_occupied': 10, 'new_occupied_meters': '0', 'reason': 'recount'},
            {'new_occupied': 101, 'new_occupied_meters': '0', 'reason': 'recount after audit'},
            {'new_occupied': -1, 'new_occupied_meters': '0', 'reason': 'recount after audit'},
            {'new_occupied': 10, 'new_occupied_meters': '1000.01', 'reason': 'recount after audit'},
        ]
        for kwargs in bad_calls:
            with self.assertRaises(ValidationFailed):
                adjust_location_occupancy(self.db, actor=ADMIN, location_id=location.id, **kwargs)
        self.assertEqual(self.db.get(StorageLocation, location.id).occupied, 0)


class AuditAppendOnlyTests(EngineTestCase):
    def test_audit_rows_cannot_be_updated_or_deleted(self) -> None:
        self.add_request(5)
        entry = self.db.execute(select(AuditLog)).scalars().first()

        entry.action = 'TAMPERED'
        with self.assertRaises(AppendOnlyViolation):
            self.db.flush()
        self.db.rollback()

        entry = self.db.execute(select(AuditLog)).scalars().first()
        self.db.delete(entry)
        with self.assertRaises(AppendOnlyViolation):
            self.db.flush()
        self.db.rollback()
        self.assertEqual(self.count(AuditLog), 1)


if __name__ == '__main__':
    unittest.main()
