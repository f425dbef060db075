from __future__ import annotations

import unittest
from decimal import Decimal

from pipeyard.errors import InvalidManifest
from pipeyard.services.manifest_service import ManifestItem, parse_manifest, summarize_manifest


class ManifestServiceTests(unittest.TestCase):
    def test_parse_accepts_strings_and_blank_optional_fields(self) -> None:
        items = parse_manifest(
            [
                {'quantity': '3', 'tally_length_ft': '31.25', 'grade': ' P110 ', 'serial_number': ''},
                {'tally_length_ft': 30},
            ]
        )
        self.assertEqual(items[0], ManifestItem(quantity=3, tally_length_ft=Decimal('31.25'), grade='P110'))
        self.assertEqual(items[1].quantity, 1)
        self.assertIsNone(items[1].weight_lbs_ft)

    def test_missing_length_defaults_to_zero(self) -> None:
        items = parse_manifest([{'quantity': 2}])
        self.assertEqual(items[0].tally_length_ft, Decimal('0'))

    def test_empty_manifest_is_invalid(self) -> None:
        with self.assertRaises(InvalidManifest):
            parse_manifest([])
        with self.assertRaises(InvalidManifest):
            parse_manifest(None)

    def test_bad_line_names_its_position(self) -> None:
        with self.assertRaises(InvalidManifest) as ctx:
            parse_manifest([{'quantity': 1}, {'quantity': 'two'}])
        self.assertEqual(ctx.exception.details['line'], 2)
        self.assertIn('line 2', ctx.exception.message)

    def test_line_damage_flags(self) -> None:
        items = parse_manifest(
            [
                {'quantity': 1, 'damaged': True},
                {'quantity': 1, 'damage_notes': ' Bent pin end '},
                {'quantity': 1},
            ]
        )
        self.assertEqual([item.reports_damage for item in items], [True, True, False])
        self.assertEqual(items[1].damage_notes, 'Bent pin end')
        with self.assertRaises(InvalidManifest):
            parse_manifest([{'quantity': 1, 'damaged': 'maybe'}])

    def test_negative_values_are_rejected(self) -> None:
        with self.assertRaises(InvalidManifest):
            parse_manifest([{'quantity': 0}])
        with self.assertRaises(InvalidManifest):
            parse_manifest([{'quantity': 1, 'tally_length_ft': '-2'}])
        with self.assertRaises(InvalidManifest):
            parse_manifest(['not an object'])

    def test_summary_totals_quantity_length_and_weight(self) -> None:
        items = parse_manifest(
            [
                {'quantity': 2, 'tally_length_ft': '30', 'weight_lbs_ft': '20'},
                {'quantity': 1, 'tally_length_ft': '40'},
            ]
        )
        totals = summarize_manifest(items)
        self.assertEqual(totals.quantity, 3)
        self.assertEqual(totals.length_ft, Decimal('100'))
        self.assertEqual(totals.length_meters, Decimal('30.48'))
        self.assertEqual(totals.weight_lbs, Decimal('1200.00'))

    def test_summary_weight_is_none_without_weights(self) -> None:
        totals = summarize_manifest(parse_manifest([{'quantity': 4, 'tally_length_ft': '30'}]))
        self.assertIsNone(totals.weight_lbs)


if __name__ == '__main__':
    unittest.main()
