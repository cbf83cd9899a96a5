from __future__ import annotations

import datetime as dt
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# kWh at Wh resolution, the precision replacement.offset.parse_reading rounds to
READING = Numeric(18, 3, asdecimal=True)


def _now() -> dt.datetime:
    return dt.datetime.now()


class Building(Base):
    __tablename__ = "buildings"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    address = Column(Text, nullable=True)

    created = Column(DateTime, default=_now)


class Meter(Base):
    __tablename__ = "meters"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    meter_type = Column(String, nullable=False, default="total_meter")
    building_id = Column(Integer, ForeignKey("buildings.id"), nullable=True)
    user_id = Column(Integer, nullable=True)
    apartment_unit = Column(String, nullable=True)
    connection_type = Column(String, nullable=False)
    connection_config = Column(Text, nullable=False, default="{}")
    device_type = Column(String, nullable=True, default="generic")
    notes = Column(Text, nullable=True)
    last_reading = Column(READING, nullable=False, default=0)
    last_reading_time = Column(DateTime, nullable=True)

    is_active = Column(Boolean, default=True)
    is_archived = Column(Boolean, default=False)
    replaced_by_meter_id = Column(Integer, ForeignKey("meters.id"), nullable=True)
    replaces_meter_id = Column(Integer, ForeignKey("meters.id"), nullable=True)
    replacement_date = Column(DateTime, nullable=True)
    replacement_notes = Column(Text, nullable=True)

    created = Column(DateTime, default=_now)
    updated = Column(DateTime, default=_now, onupdate=_now)


class MeterReading(Base):
    __tablename__ = "meter_readings"

    id = Column(Integer, primary_key=True)
    meter_id = Column(Integer, ForeignKey("meters.id"), nullable=False, index=True)
    reading_time = Column(DateTime, nullable=False)
    power_kwh = Column(READING, nullable=False)


class MeterReplacement(Base):
    __tablename__ = "meter_replacements"

    id = Column(Integer, primary_key=True)
    old_meter_id = Column(Integer, ForeignKey("meters.id"), nullable=False, unique=True)
    new_meter_id = Column(Integer, ForeignKey("meters.id"), nullable=False)
    replacement_date = Column(DateTime, nullable=False)
    old_meter_final_reading = Column(READING, nullable=False)
    new_meter_initial_reading = Column(READING, nullable=False)
    # added to every raw reading of the new meter (continuous = raw + offset)
    reading_offset = Column(READING, nullable=False)
    notes = Column(Text, nullable=True)
    performed_by = Column(String, nullable=True)

    created = Column(DateTime, default=_now)
