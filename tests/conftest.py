from __future__ import annotations

import os
import tempfile

# meter_ui.database creates its engine at import time; keep it off the repo db
os.environ.setdefault("METER_DB_URL", "sqlite:///" + os.path.join(tempfile.mkdtemp(), "meters.db"))

import dataclasses
import threading
from decimal import Decimal
from typing import Optional

import pytest

from replacement import connection_config
from replacement.errors import MeterNotFoundError
from replacement.models import (
    ConnectionType,
    DeletionImpact,
    Meter,
    MeterType,
    ReplacementResult,
)


def build_meter(**overrides) -> Meter:
    values = dict(
        id=7,
        name="Main Meter",
        meter_type=MeterType.TOTAL,
        connection_type=ConnectionType.MODBUS_TCP,
        connection_config=connection_config.ModbusTcpConfig(ip_address="10.0.0.4"),
        last_reading=Decimal("1000.0"),
        building_id=1,
        building_name="Sonnenhof",
        apartment_unit=None,
    )
    values.update(overrides)
    return Meter(**values)


class FakeStore:
    """In-memory MeterStore that records every submission."""

    def __init__(self, meter: Meter):
        self.meters = {meter.id: meter}
        self.submitted = []
        self.fetch_count = 0
        self.fail_with: Optional[Exception] = None
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()
        self.topics = set()
        self.data_keys = set()

    def fetch_meter(self, meter_id: int) -> Meter:
        self.fetch_count += 1
        try:
            return dataclasses.replace(self.meters[meter_id])
        except KeyError:
            raise MeterNotFoundError(meter_id) from None

    def submit_replacement(self, request) -> ReplacementResult:
        self.submitted.append(request)
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.fail_with is not None:
            raise self.fail_with
        return ReplacementResult(archived_meter_id=request.old_meter_id, new_meter_id=99, replacement_id=1)

    def fetch_deletion_impact(self, meter_id: int) -> DeletionImpact:
        meter = self.fetch_meter(meter_id)
        return DeletionImpact(meter_id=meter.id, meter_name=meter.name, readings_count=0)

    def replacement_history(self, meter_id: int):
        return []

    def used_identifiers(self):
        return set(self.topics), set(self.data_keys)


@pytest.fixture
def old_meter() -> Meter:
    return build_meter()


@pytest.fixture
def fake_store(old_meter) -> FakeStore:
    return FakeStore(old_meter)
