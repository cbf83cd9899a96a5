# meter_ui/store.py
#
# SQLAlchemy implementation of replacement.store.MeterStore.

from __future__ import annotations

import json
from decimal import Decimal
from typing import List, Optional, Set, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError

import config
from meter_ui.database import SessionLocal
from meter_ui.models import Building, Meter as MeterRow, MeterReading, MeterReplacement
from replacement import connection_config
from replacement.connection_config import MqttConfig, UdpConfig
from replacement.errors import MeterNotFoundError, StoreError
from replacement.models import (
    ConnectionType,
    DeletionImpact,
    Meter,
    MeterType,
    ReplacementRecord,
    ReplacementRequest,
    ReplacementResult,
)
from replacement.offset import chain_offset
from utils import format_kwh, log


def _load_config(row: MeterRow) -> dict:
    try:
        data = json.loads(row.connection_config or "{}")
    except json.JSONDecodeError:
        log(f"[WARN] Meter {row.id} has an unreadable connection_config; using defaults")
        return {}
    return data if isinstance(data, dict) else {}


def _decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    return value if isinstance(value, Decimal) else Decimal(str(value))


def row_to_meter(row: MeterRow, building: Optional[Building] = None) -> Meter:
    try:
        connection_type = ConnectionType(row.connection_type)
        meter_type = MeterType(row.meter_type)
    except ValueError as exc:
        raise StoreError(f"Meter {row.id} ({row.name}) cannot be replaced here: {exc}") from exc

    return Meter(
        id=row.id,
        name=row.name,
        meter_type=meter_type,
        connection_type=connection_type,
        connection_config=connection_config.from_dict(connection_type, _load_config(row)),
        last_reading=_decimal(row.last_reading),
        is_active=bool(row.is_active),
        is_archived=bool(row.is_archived),
        building_id=row.building_id,
        building_name=building.name if building else None,
        apartment_unit=row.apartment_unit or None,
        user_id=row.user_id,
        device_type=row.device_type,
    )


def row_to_record(row: MeterReplacement) -> ReplacementRecord:
    return ReplacementRecord(
        id=row.id,
        old_meter_id=row.old_meter_id,
        new_meter_id=row.new_meter_id,
        replacement_date=row.replacement_date,
        old_meter_final_reading=_decimal(row.old_meter_final_reading),
        new_meter_initial_reading=_decimal(row.new_meter_initial_reading),
        reading_offset=_decimal(row.reading_offset),
        notes=row.notes or "",
        performed_by=row.performed_by,
        created=row.created,
    )


class SqlMeterStore:
    def __init__(self, session_factory=SessionLocal, performed_by: str = config.PERFORMED_BY):
        self.session_factory = session_factory
        self.performed_by = performed_by

    # ------------- reads -------------

    def fetch_meter(self, meter_id: int) -> Meter:
        with self.session_factory() as db:
            row = db.get(MeterRow, meter_id)
            if row is None:
                raise MeterNotFoundError(meter_id)
            building = db.get(Building, row.building_id) if row.building_id else None
            return row_to_meter(row, building)

    def used_identifiers(self) -> Tuple[Set[str], Set[str]]:
        topics: Set[str] = set()
        data_keys: Set[str] = set()
        with self.session_factory() as db:
            rows = db.query(MeterRow).filter(MeterRow.is_active.is_(True)).all()
            for row in rows:
                data = _load_config(row)
                if row.connection_type == ConnectionType.MQTT.value and data.get("mqtt_topic"):
                    topics.add(data["mqtt_topic"])
                elif row.connection_type == ConnectionType.UDP.value and data.get("data_key"):
                    data_keys.add(data["data_key"])
        return topics, data_keys

    def fetch_deletion_impact(self, meter_id: int) -> DeletionImpact:
        with self.session_factory() as db:
            row = db.get(MeterRow, meter_id)
            if row is None:
                raise MeterNotFoundError(meter_id)
            count, oldest, newest = (
                db.query(
                    func.count(MeterReading.id),
                    func.min(MeterReading.reading_time),
                    func.max(MeterReading.reading_time),
                )
                .filter(MeterReading.meter_id == meter_id)
                .one()
            )
            return DeletionImpact(
                meter_id=row.id,
                meter_name=row.name,
                readings_count=count or 0,
                oldest_reading=oldest,
                newest_reading=newest,
            )

    def replacement_history(self, meter_id: int) -> List[ReplacementRecord]:
        with self.session_factory() as db:
            rows = (
                db.query(MeterReplacement)
                .filter(or_(MeterReplacement.old_meter_id == meter_id, MeterReplacement.new_meter_id == meter_id))
                .order_by(MeterReplacement.replacement_date.desc(), MeterReplacement.id.desc())
                .all()
            )
            return [row_to_record(r) for r in rows]

    def chain_offset(self, meter_id: int) -> Decimal:
        """
        Sum of the offsets of every replacement that led to this meter.
        Add it to the meter's raw readings to continue the original series.
        """
        offsets = []
        seen = set()
        with self.session_factory() as db:
            current = meter_id
            while current is not None and current not in seen:
                seen.add(current)
                rec = db.query(MeterReplacement).filter(MeterReplacement.new_meter_id == current).first()
                if rec is None:
                    break
                offsets.append(_decimal(rec.reading_offset))
                current = rec.old_meter_id
        return chain_offset(offsets)

    # ------------- replacement -------------

    def submit_replacement(self, request: ReplacementRequest) -> ReplacementResult:
        """
        Single transaction:
          1) create the new meter (active, replaces the old one)
          2) archive the old meter with its final reading
          3) write the replacement record with the offset
        """
        try:
            with self.session_factory() as db, db.begin():
                old = db.get(MeterRow, request.old_meter_id)
                if old is None:
                    raise MeterNotFoundError(request.old_meter_id)
                self._check_replaceable(db, old, request)

                new = MeterRow(
                    name=request.new_meter_name,
                    meter_type=request.new_meter_type.value,
                    building_id=old.building_id,
                    connection_type=request.new_connection_type.value,
                    connection_config=json.dumps(request.new_connection_config.to_dict()),
                    notes=f"Replaces meter: {old.name}",
                    last_reading=request.new_meter_initial_reading,
                    is_active=True,
                    is_archived=False,
                    replaces_meter_id=old.id,
                )
                if request.copy_settings_from_old:
                    new.user_id = old.user_id
                    new.apartment_unit = old.apartment_unit
                    new.device_type = old.device_type
                db.add(new)
                db.flush()

                old.is_active = False
                old.is_archived = True
                old.replaced_by_meter_id = new.id
                old.replacement_date = request.replacement_date
                old.replacement_notes = request.replacement_notes
                old.last_reading = request.old_meter_final_reading

                record = MeterReplacement(
                    old_meter_id=old.id,
                    new_meter_id=new.id,
                    replacement_date=request.replacement_date,
                    old_meter_final_reading=request.old_meter_final_reading,
                    new_meter_initial_reading=request.new_meter_initial_reading,
                    reading_offset=request.reading_offset,
                    notes=request.replacement_notes,
                    performed_by=self.performed_by,
                )
                db.add(record)
                db.flush()

                result = ReplacementResult(
                    archived_meter_id=old.id,
                    new_meter_id=new.id,
                    replacement_id=record.id,
                )
        except SQLAlchemyError as exc:
            log(f"ERROR: replacement transaction for meter {request.old_meter_id} rolled back: {exc}")
            raise StoreError(f"Failed to store replacement: {exc}") from exc

        log(
            f"Meter {result.archived_meter_id} archived, meter {result.new_meter_id} active. "
            f"Offset: {format_kwh(request.reading_offset)}"
        )
        return result

    def _check_replaceable(self, db, old: MeterRow, request: ReplacementRequest) -> None:
        if old.is_archived:
            raise StoreError("Cannot replace an already archived meter")

        existing = db.query(MeterReplacement.id).filter(MeterReplacement.old_meter_id == old.id).first()
        if existing is not None:
            raise StoreError("This meter has already been replaced")

        last_reading = _decimal(old.last_reading)
        if last_reading != request.expected_last_reading:
            raise StoreError(
                f"Last reading of meter {old.name} changed to {last_reading} kWh; "
                f"re-check the final reading"
            )
        if request.old_meter_final_reading < last_reading:
            raise StoreError(
                f"Final reading {request.old_meter_final_reading} kWh is below the "
                f"last recorded reading {last_reading} kWh"
            )

        cfg = request.new_connection_config
        if isinstance(cfg, (MqttConfig, UdpConfig)):
            key, value = ("mqtt_topic", cfg.topic) if isinstance(cfg, MqttConfig) else ("data_key", cfg.data_key)
            others = (
                db.query(MeterRow)
                .filter(
                    MeterRow.is_active.is_(True),
                    MeterRow.connection_type == cfg.connection_type.value,
                    MeterRow.id != old.id,
                )
                .all()
            )
            for other in others:
                if _load_config(other).get(key) == value:
                    raise StoreError(f"{key} '{value}' is already used by meter {other.name}")
