from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal, InvalidOperation

from pipeyard.errors import InvalidManifest
from pipeyard.services.capacity_service import feet_to_meters, quantize_meters

_TEXT_FIELDS = ('grade', 'heat_number', 'serial_number', 'manufacturer', 'damage_notes')
_DECIMAL_FIELDS = ('tally_length_ft', 'outer_diameter', 'weight_lbs_ft')


@dataclass(frozen=True)
class ManifestItem:
    quantity: int = 1
    tally_length_ft: Decimal = Decimal('0')
    grade: str | None = None
    outer_diameter: Decimal | None = None
    weight_lbs_ft: Decimal | None = None
    heat_number: str | None = None
    serial_number: str | None = None
    manufacturer: str | None = None
    damaged: bool = False
    damage_notes: str | None = None

    @property
    def reports_damage(self) -> bool:
        return self.damaged or bool(self.damage_notes)

    def as_payload(self) -> dict:
        data = asdict(self)
        for field in _DECIMAL_FIELDS:
            if data[field] is not None:
                data[field] = str(data[field])
        return data


@dataclass(frozen=True)
class ManifestTotals:
    quantity: int
    length_ft: Decimal
    length_meters: Decimal
    weight_lbs: Decimal | None


def _invalid(index: int, message: str) -> InvalidManifest:
    return InvalidManifest(f'Manifest line {index + 1}: {message}', details={'line': index + 1})


def _parse_decimal(raw, *, index: int, field: str) -> Decimal | None:
    if raw is None or raw == '':
        return None
    if isinstance(raw, bool):
        raise _invalid(index, f'{field} must be a number')
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise _invalid(index, f'{field} must be a number') from exc
    if not value.is_finite() or value < 0:
        raise _invalid(index, f'{field} cannot be negative')
    return value


def _parse_quantity(raw, *, index: int) -> int:
    if raw is None or raw == '':
        return 1
    if isinstance(raw, bool):
        raise _invalid(index, 'quantity must be a whole number')
    if isinstance(raw, int):
        value = raw
    else:
        text = str(raw).strip()
        if not text.lstrip('-').isdigit():
            raise _invalid(index, 'quantity must be a whole number')
        value = int(text)
    if value < 1:
        raise _invalid(index, 'quantity must be at least 1')
    return value


def _parse_text(raw, *, index: int, field: str) -> str | None:
    if raw is None:
        return None
    if not isinstance(raw, (str, int)):
        raise _invalid(index, f'{field} must be text')
    value = str(raw).strip()
    return value or None


def _parse_flag(raw, *, index: int, field: str) -> bool:
    if raw is None or raw == '':
        return False
    if not isinstance(raw, bool):
        raise _invalid(index, f'{field} must be true or false')
    return raw


def parse_manifest_item(raw, *, index: int) -> ManifestItem:
    if isinstance(raw, ManifestItem):
        return raw
    if not isinstance(raw, dict):
        raise _invalid(index, 'expected an object')

    decimals = {field: _parse_decimal(raw.get(field), index=index, field=field) for field in _DECIMAL_FIELDS}
    texts = {field: _parse_text(raw.get(field), index=index, field=field) for field in _TEXT_FIELDS}
    return ManifestItem(
        quantity=_parse_quantity(raw.get('quantity'), index=index),
        tally_length_ft=decimals['tally_length_ft'] or Decimal('0'),
        outer_diameter=decimals['outer_diameter'],
        weight_lbs_ft=decimals['weight_lbs_ft'],
        damaged=_parse_flag(raw.get('damaged'), index=index, field='damaged'),
        **texts,
    )


def parse_manifest(raw_items) -> list[ManifestItem]:
    if raw_items is None or isinstance(raw_items, (str, bytes, dict)):
        raise InvalidManifest('Manifest must be a list of line items')
    items = [parse_manifest_item(raw, index=index) for index, raw in enumerate(raw_items)]
    if not items:
        raise InvalidManifest('Manifest has no line items')
    return items


def summarize_manifest(items: list[ManifestItem]) -> ManifestTotals:
    quantity = 0
    length_ft = Decimal('0')
    length_meters = Decimal('0')
    weight_lbs: Decimal | None = None
    for item in items:
        line_length_ft = item.quantity * item.tally_length_ft
        quantity += item.quantity
        length_ft += line_length_ft
        length_meters += feet_to_meters(line_length_ft)
        if item.weight_lbs_ft is not None:
            weight_lbs = (weight_lbs or Decimal('0')) + line_length_ft * item.weight_lbs_ft
    return ManifestTotals(
        quantity=quantity,
        length_ft=length_ft,
        length_meters=quantize_meters(length_meters),
        weight_lbs=quantize_meters(weight_lbs) if weight_lbs is not None else None,
    )
