# config.py

import os
from pathlib import Path

DB_PATH = Path(__file__).resolve().parent / "meters.db"
DATABASE_URL = os.environ.get("METER_DB_URL", f"sqlite:///{DB_PATH}")

DEFAULT_MODBUS_PORT = 502
DEFAULT_UNIT_ID = 1
DEFAULT_REGISTER_ADDRESS = 0
DEFAULT_REGISTER_COUNT = 2
DEFAULT_FUNCTION_CODE = 3  # read holding registers
DEFAULT_DATA_TYPE = "float32"
DEFAULT_TIMEOUT = 3.0  # seconds

DEFAULT_MQTT_BROKER = "localhost"
DEFAULT_MQTT_PORT = 1883
DEFAULT_MQTT_QOS = 1

DEFAULT_UDP_PORT = 8888
DATA_KEY_SUFFIX = "_power_kwh"
DATA_KEY_ATTEMPTS = 100

NEW_METER_SUFFIX = " (New)"
PERFORMED_BY = os.environ.get("METER_PERFORMED_BY", "admin")

HTTP_HOST = os.environ.get("METER_HTTP_HOST", "127.0.0.1")
HTTP_PORT = int(os.environ.get("METER_HTTP_PORT", "8000"))

# Open replacement sessions untouched for this long are dropped (seconds)
WORKFLOW_TTL = int(os.environ.get("METER_WORKFLOW_TTL", str(12 * 3600)))
