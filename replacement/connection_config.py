# replacement/connection_config.py
#
# One frozen dataclass per connection type. A meter holds exactly one of
# them, so settings of a previous protocol cannot linger in the record.
#
# Field values are stored as entered while the user edits (form input
# arrives as text); validate() returns a normalised copy with numeric
# fields converted to int and raises InvalidConnectionConfig otherwise.

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import ClassVar, Dict, List, Mapping, Optional, Tuple, Type, Union

import config
from .errors import InvalidConnectionConfig, ValidationError
from .models import ConnectionType, MeterType

Number = Union[int, str]

LOXONE_LOCAL = "local"
LOXONE_REMOTE = "remote"
LOXONE_CONNECTION_MODES = (LOXONE_LOCAL, LOXONE_REMOTE)

# Loxone sub-modes per meter type (first one is the default):
#   meter_block:           output1=Mrc import, output8=Mrd export
#   virtual_output_dual:   two UUIDs for import/export
#   energy_meter_block:    output1=Mr, single value
#   virtual_output_single: one UUID for a single value
LOXONE_MODES_BY_METER_TYPE: Dict[MeterType, Tuple[str, ...]] = {
    MeterType.TOTAL: ("meter_block", "virtual_output_dual"),
    MeterType.SOLAR: ("meter_block", "virtual_output_dual"),
    MeterType.APARTMENT: ("energy_meter_block", "virtual_output_single"),
    MeterType.HEATING: ("energy_meter_block", "virtual_output_single"),
    MeterType.OTHER: ("energy_meter_block", "virtual_output_single"),
}

SMARTME_AUTH_FIELDS: Dict[str, Tuple[str, ...]] = {
    "apikey": ("api_key",),
    "basic": ("username", "password"),
    "oauth": ("client_id", "client_secret"),
}

MODBUS_DATA_TYPES = ("float32", "float64", "int16", "uint16", "int32", "uint32")


def _as_int(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _blank(value) -> bool:
    return value is None or str(value).strip() == ""


def default_loxone_mode(meter_type: Optional[MeterType]) -> str:
    return LOXONE_MODES_BY_METER_TYPE[meter_type or MeterType.OTHER][0]


class _ConnectionConfig:
    connection_type: ClassVar[ConnectionType]

    # dataclass field -> key used in the stored JSON record
    STORAGE_KEYS: ClassVar[Dict[str, str]] = {}
    # field -> (min, max) inclusive
    NUMERIC_FIELDS: ClassVar[Dict[str, Tuple[int, int]]] = {}

    def to_dict(self) -> dict:
        return {key: getattr(self, name) for name, key in self.STORAGE_KEYS.items()}

    @classmethod
    def from_dict(cls, data: Mapping):
        kwargs = {}
        for name, key in cls.STORAGE_KEYS.items():
            if key in data and data[key] is not None:
                kwargs[name] = data[key]
        return cls(**kwargs)

    def problems(self, meter_type: Optional[MeterType] = None) -> Tuple[List[str], List[str]]:
        missing: List[str] = []
        invalid: List[str] = []
        for name, (low, high) in self.NUMERIC_FIELDS.items():
            raw = getattr(self, name)
            if _blank(raw):
                missing.append(name)
                continue
            value = _as_int(raw)
            if value is None or not low <= value <= high:
                invalid.append(name)
        return missing, invalid

    def normalized(self):
        changes = {name: _as_int(getattr(self, name)) for name in self.NUMERIC_FIELDS}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if f.name not in changes and isinstance(value, str):
                changes[f.name] = value.strip()
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class LoxoneConfig(_ConnectionConfig):
    connection_type: ClassVar[ConnectionType] = ConnectionType.LOXONE_API
    STORAGE_KEYS: ClassVar[Dict[str, str]] = {
        "connection_mode": "loxone_connection_mode",
        "host": "loxone_host",
        "mac_address": "loxone_mac_address",
        "device_id": "loxone_device_id",
        "username": "loxone_username",
        "password": "loxone_password",
        "loxone_mode": "loxone_mode",
        "export_device_id": "loxone_export_device_id",
    }

    connection_mode: str = LOXONE_LOCAL
    host: str = ""
    mac_address: str = ""
    device_id: str = ""
    username: str = ""
    password: str = ""
    loxone_mode: str = ""
    export_device_id: str = ""

    def problems(self, meter_type=None):
        missing, invalid = super().problems(meter_type)
        if self.connection_mode not in LOXONE_CONNECTION_MODES:
            invalid.append("connection_mode")
        elif self.connection_mode == LOXONE_REMOTE:
            if _blank(self.mac_address):
                missing.append("mac_address")
        elif _blank(self.host):
            missing.append("host")
        if _blank(self.device_id):
            missing.append("device_id")

        if meter_type is not None and self.loxone_mode not in LOXONE_MODES_BY_METER_TYPE[meter_type]:
            invalid.append("loxone_mode")
        if self.loxone_mode == "virtual_output_dual" and _blank(self.export_device_id):
            missing.append("export_device_id")
        return missing, invalid


@dataclass(frozen=True)
class SmartMeConfig(_ConnectionConfig):
    connection_type: ClassVar[ConnectionType] = ConnectionType.SMARTME
    STORAGE_KEYS: ClassVar[Dict[str, str]] = {
        "device_id": "device_id",
        "auth_type": "auth_type",
        "api_key": "api_key",
        "username": "username",
        "password": "password",
        "client_id": "client_id",
        "client_secret": "client_secret",
    }

    device_id: str = ""
    auth_type: str = "apikey"
    api_key: str = ""
    username: str = ""
    password: str = ""
    client_id: str = ""
    client_secret: str = ""

    def problems(self, meter_type=None):
        missing, invalid = super().problems(meter_type)
        if _blank(self.device_id):
            missing.append("device_id")
        required = SMARTME_AUTH_FIELDS.get(self.auth_type)
        if required is None:
            invalid.append("auth_type")
        else:
            missing.extend(name for name in required if _blank(getattr(self, name)))
        return missing, invalid

    def to_dict(self) -> dict:
        # only the credentials of the selected auth type are persisted
        data = {"device_id": self.device_id, "auth_type": self.auth_type}
        for name in SMARTME_AUTH_FIELDS.get(self.auth_type, ()):
            data[name] = getattr(self, name)
        return data


@dataclass(frozen=True)
class MqttConfig(_ConnectionConfig):
    connection_type: ClassVar[ConnectionType] = ConnectionType.MQTT
    STORAGE_KEYS: ClassVar[Dict[str, str]] = {
        "topic": "mqtt_topic",
        "broker_host": "mqtt_broker",
        "broker_port": "mqtt_port",
        "username": "mqtt_username",
        "password": "mqtt_password",
        "qos": "mqtt_qos",
    }
    NUMERIC_FIELDS: ClassVar[Dict[str, Tuple[int, int]]] = {
        "broker_port": (1, 65535),
        "qos": (0, 2),
    }

    topic: str = ""
    broker_host: str = config.DEFAULT_MQTT_BROKER
    broker_port: Number = config.DEFAULT_MQTT_PORT
    username: str = ""
    password: str = ""
    qos: Number = config.DEFAULT_MQTT_QOS

    def problems(self, meter_type=None):
        missing, invalid = super().problems(meter_type)
        if _blank(self.topic):
            missing.append("topic")
        if _blank(self.broker_host):
            missing.append("broker_host")
        return missing, invalid


@dataclass(frozen=True)
class UdpConfig(_ConnectionConfig):
    connection_type: ClassVar[ConnectionType] = ConnectionType.UDP
    STORAGE_KEYS: ClassVar[Dict[str, str]] = {
        "listen_port": "listen_port",
        "data_key": "data_key",
    }
    NUMERIC_FIELDS: ClassVar[Dict[str, Tuple[int, int]]] = {
        "listen_port": (1, 65535),
    }

    listen_port: Number = config.DEFAULT_UDP_PORT
    data_key: str = ""

    def problems(self, meter_type=None):
        missing, invalid = super().problems(meter_type)
        if _blank(self.data_key):
            missing.append("data_key")
        return missing, invalid


@dataclass(frozen=True)
class ModbusTcpConfig(_ConnectionConfig):
    connection_type: ClassVar[ConnectionType] = ConnectionType.MODBUS_TCP
    STORAGE_KEYS: ClassVar[Dict[str, str]] = {
        "ip_address": "ip_address",
        "port": "port",
        "register_address": "register_address",
        "register_count": "register_count",
        "unit_id": "unit_id",
        "function_code": "function_code",
        "data_type": "data_type",
    }
    NUMERIC_FIELDS: ClassVar[Dict[str, Tuple[int, int]]] = {
        "port": (1, 65535),
        "register_address": (0, 0xFFFF),
        "register_count": (1, 125),
        "unit_id": (0, 247),
        "function_code": (1, 4),
    }

    ip_address: str = ""
    port: Number = config.DEFAULT_MODBUS_PORT
    register_address: Number = config.DEFAULT_REGISTER_ADDRESS
    register_count: Number = config.DEFAULT_REGISTER_COUNT
    unit_id: Number = config.DEFAULT_UNIT_ID
    function_code: Number = config.DEFAULT_FUNCTION_CODE
    data_type: str = config.DEFAULT_DATA_TYPE

    def problems(self, meter_type=None):
        missing, invalid = super().problems(meter_type)
        if _blank(self.ip_address):
            missing.insert(0, "ip_address")
        if self.data_type not in MODBUS_DATA_TYPES:
            invalid.append("data_type")
        return missing, invalid


ConnectionConfig = Union[LoxoneConfig, SmartMeConfig, MqttConfig, UdpConfig, ModbusTcpConfig]

CONFIG_CLASSES: Dict[ConnectionType, Type[_ConnectionConfig]] = {
    cls.connection_type: cls
    for cls in (LoxoneConfig, SmartMeConfig, MqttConfig, UdpConfig, ModbusTcpConfig)
}


def config_class(connection_type) -> Type[_ConnectionConfig]:
    return CONFIG_CLASSES[ConnectionType(connection_type)]


def skeleton(connection_type, meter_type: Optional[MeterType] = None) -> ConnectionConfig:
    """
    Fresh configuration with the protocol defaults. Identifiers that must be
    unique (MQTT topic, UDP data key) are left empty; see identity.derive_config.
    """
    cls = config_class(connection_type)
    if cls is LoxoneConfig:
        return LoxoneConfig(loxone_mode=default_loxone_mode(meter_type))
    return cls()


def from_dict(connection_type, data: Optional[Mapping]) -> ConnectionConfig:
    return config_class(connection_type).from_dict(data or {})


def update(cfg: ConnectionConfig, **fields) -> ConnectionConfig:
    known = {f.name for f in dataclasses.fields(cfg)}
    for name in fields:
        if name not in known:
            raise ValidationError(
                name, f"{name} is not a {cfg.connection_type.value} setting"
            )
    return dataclasses.replace(cfg, **fields)


def validate(cfg: ConnectionConfig, meter_type: Optional[MeterType] = None) -> ConnectionConfig:
    """Return the normalised config or raise InvalidConnectionConfig."""
    missing, invalid = cfg.problems(meter_type)
    if missing or invalid:
        raise InvalidConnectionConfig(cfg.connection_type.value, missing, invalid)
    return cfg.normalized()
