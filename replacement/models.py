# replacement/models.py

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .connection_config import ConnectionConfig


class MeterType(str, Enum):
    TOTAL = "total_meter"
    SOLAR = "solar_meter"
    APARTMENT = "apartment_meter"
    HEATING = "heating_meter"
    OTHER = "other"


class ConnectionType(str, Enum):
    LOXONE_API = "loxone_api"
    SMARTME = "smartme"
    MQTT = "mqtt"
    UDP = "udp"
    MODBUS_TCP = "modbus_tcp"


@dataclass
class Meter:
    id: int
    name: str
    meter_type: MeterType
    connection_type: ConnectionType
    connection_config: "ConnectionConfig"
    last_reading: Decimal
    is_active: bool = True
    is_archived: bool = False

    # Context used to derive topics and to carry settings over to the new meter
    building_id: Optional[int] = None
    building_name: Optional[str] = None
    apartment_unit: Optional[str] = None
    user_id: Optional[int] = None
    device_type: Optional[str] = None


@dataclass
class ReplacementDraft:
    """
    Mutable state of one open replacement. Readings are kept as entered
    and only parsed by the step validators.
    """
    old_meter_id: int
    old_meter_final_reading: str
    new_meter_name: str
    new_meter_type: MeterType
    copy_settings_from_old: bool
    new_connection_type: ConnectionType
    new_connection_config: "ConnectionConfig"
    new_meter_initial_reading: str = "0"
    replacement_notes: str = ""
    current_step: int = 1


@dataclass(frozen=True)
class ReplacementRequest:
    """
    The submitted record. Never mutated after it is built.

    reading_offset = old_meter_final_reading - new_meter_initial_reading.
    Billing ADDS the offset to every raw reading of the new meter:

        continuous_kwh = raw_new_meter_kwh + reading_offset

    so a positive offset means the new meter starts "behind" the old series.
    """
    old_meter_id: int
    old_meter_final_reading: Decimal
    new_meter_name: str
    new_meter_type: MeterType
    copy_settings_from_old: bool
    new_connection_type: ConnectionType
    new_connection_config: "ConnectionConfig"
    new_meter_initial_reading: Decimal
    replacement_notes: str
    replacement_date: datetime
    reading_offset: Decimal
    # last_reading the final reading was validated against
    expected_last_reading: Decimal

    def to_payload(self) -> dict:
        return {
            "old_meter_id": self.old_meter_id,
            "new_meter_name": self.new_meter_name,
            "new_meter_type": self.new_meter_type.value,
            "new_connection_type": self.new_connection_type.value,
            "new_connection_config": json.dumps(self.new_connection_config.to_dict()),
            "replacement_date": self.replacement_date.isoformat(),
            "old_meter_final_reading": str(self.old_meter_final_reading),
            "new_meter_initial_reading": str(self.new_meter_initial_reading),
            "reading_offset": str(self.reading_offset),
            "replacement_notes": self.replacement_notes,
            "copy_settings": self.copy_settings_from_old,
        }


@dataclass(frozen=True)
class ReplacementResult:
    archived_meter_id: int
    new_meter_id: int
    replacement_id: Optional[int] = None


@dataclass
class ReplacementRecord:
    id: int
    old_meter_id: int
    new_meter_id: int
    replacement_date: datetime
    old_meter_final_reading: Decimal
    new_meter_initial_reading: Decimal
    reading_offset: Decimal
    notes: str = ""
    performed_by: Optional[str] = None
    created: Optional[datetime] = None


@dataclass
class DeletionImpact:
    meter_id: int
    meter_name: str
    readings_count: int
    oldest_reading: Optional[datetime] = None
    newest_reading: Optional[datetime] = None
    has_data: bool = field(init=False)

    def __post_init__(self) -> None:
        self.has_data = self.readings_count > 0
