from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from pipeyard.models import LoadDirection


class CreateRequestBody(BaseModel):
    company_id: int | None = None
    required_quantity: int
    requester_email: str | None = None
    details: dict = Field(default_factory=dict)
    submit: bool = True


class BookLoadBody(BaseModel):
    direction: LoadDirection = LoadDirection.INBOUND
    scheduled_slot_start: datetime | None = None
    scheduled_slot_end: datetime | None = None
    trucking_company: str | None = None
    driver_name: str | None = None
    driver_phone: str | None = None
    planned_quantity: int | None = None
    planned_length_ft: Decimal | None = None
    planned_weight_lbs: Decimal | None = None
    notes: str | None = None


class ApproveRequestBody(BaseModel):
    location_ids: list[int]
    required_quantity: int
    notes: str | None = None


class ReasonBody(BaseModel):
    reason: str


class NoteBody(BaseModel):
    note: str


class CompleteLoadBody(BaseModel):
    location_id: int
    reported_quantity: int
    # Line items are validated by the manifest parser so its errors name the offending line.
    manifest_items: list
    damage_notes: str | None = None


class CreateLocationBody(BaseModel):
    name: str
    capacity: int
    capacity_meters: Decimal
    area: str | None = None


class AdjustOccupancyBody(BaseModel):
    occupied: int
    occupied_meters: Decimal
    reason: str


class PickupBody(BaseModel):
    inventory_item_ids: list[int]
    reported_quantity: int
    notes: str | None = None
