# replacement/identity.py

from __future__ import annotations

import re
import uuid
from typing import Collection, Optional

import config
from . import connection_config
from .connection_config import ConnectionConfig, MqttConfig, UdpConfig
from .models import MeterType

_NON_SLUG = re.compile(r"[^a-z0-9]")


def default_meter_name(old_name: str) -> str:
    """Editable default shown on the identity step, e.g. "Main (New)"."""
    return f"{old_name.strip()}{config.NEW_METER_SUFFIX}"


def slugify(text: str) -> str:
    return _NON_SLUG.sub("_", text.lower())


def derive_mqtt_topic(
    meter_name: str,
    building_name: Optional[str] = None,
    apartment_unit: Optional[str] = None,
    taken: Collection[str] = (),
) -> str:
    """
    meters/<building>/<apartment>/<meter>   apartment meters
    meters/<building>/<meter>               building level meters
    meters/<meter>                          no building known

    A numeric suffix is appended while the topic is used by another meter.
    """
    if building_name and apartment_unit:
        topic = f"meters/{slugify(building_name)}/{slugify(apartment_unit)}/{slugify(meter_name)}"
    elif building_name:
        topic = f"meters/{slugify(building_name)}/{slugify(meter_name)}"
    else:
        topic = f"meters/{slugify(meter_name)}"

    candidate = topic
    counter = 1
    while candidate in taken:
        candidate = f"{topic}_{counter}"
        counter += 1
    return candidate


def generate_data_key(taken: Collection[str] = (), attempts: int = config.DATA_KEY_ATTEMPTS) -> str:
    key = f"{uuid.uuid4()}{config.DATA_KEY_SUFFIX}"
    for _ in range(attempts):
        if key not in taken:
            break
        key = f"{uuid.uuid4()}{config.DATA_KEY_SUFFIX}"
    return key


def derive_config(
    connection_type,
    meter_name: str,
    meter_type: Optional[MeterType] = None,
    building_name: Optional[str] = None,
    apartment_unit: Optional[str] = None,
    taken_topics: Collection[str] = (),
    taken_data_keys: Collection[str] = (),
) -> ConnectionConfig:
    """Skeleton for the connection type with topic/data key pre-filled."""
    cfg = connection_config.skeleton(connection_type, meter_type)
    if isinstance(cfg, MqttConfig):
        topic = derive_mqtt_topic(meter_name, building_name, apartment_unit, taken_topics)
        cfg = connection_config.update(cfg, topic=topic)
    elif isinstance(cfg, UdpConfig):
        cfg = connection_config.update(cfg, data_key=generate_data_key(taken_data_keys))
    return cfg
