import pytest

from replacement import connection_config
from replacement.connection_config import (
    LoxoneConfig,
    ModbusTcpConfig,
    MqttConfig,
    SmartMeConfig,
    UdpConfig,
)
from replacement.errors import InvalidConnectionConfig, ValidationError
from replacement.models import ConnectionType, MeterType


def test_modbus_skeleton_defaults():
    cfg = connection_config.skeleton("modbus_tcp")
    assert isinstance(cfg, ModbusTcpConfig)
    assert (cfg.port, cfg.register_count, cfg.unit_id) == (502, 2, 1)
    assert cfg.ip_address == ""


def test_other_skeleton_defaults():
    assert connection_config.skeleton(ConnectionType.MQTT).broker_port == 1883
    assert connection_config.skeleton(ConnectionType.UDP).listen_port == 8888
    assert connection_config.skeleton(ConnectionType.SMARTME).auth_type == "apikey"


def test_loxone_mode_default_follows_meter_type():
    assert connection_config.skeleton("loxone_api", MeterType.SOLAR).loxone_mode == "meter_block"
    assert connection_config.skeleton("loxone_api", MeterType.APARTMENT).loxone_mode == "energy_meter_block"


def test_modbus_missing_ip_address():
    with pytest.raises(InvalidConnectionConfig) as excinfo:
        connection_config.validate(ModbusTcpConfig())
    err = excinfo.value
    assert err.connection_type == "modbus_tcp"
    assert err.missing_fields == ("ip_address",)
    assert err.field == "ip_address"


def test_modbus_numeric_fields_are_normalised():
    cfg = connection_config.update(
        ModbusTcpConfig(), ip_address=" 10.0.0.5 ", port="502", register_address="0", unit_id="3"
    )
    valid = connection_config.validate(cfg)
    assert valid.ip_address == "10.0.0.5"
    assert valid.port == 502
    assert valid.register_address == 0
    assert valid.unit_id == 3


def test_modbus_rejects_malformed_numbers():
    cfg = ModbusTcpConfig(ip_address="10.0.0.5", port="abc", register_count="", function_code=9)
    with pytest.raises(InvalidConnectionConfig) as excinfo:
        connection_config.validate(cfg)
    assert "register_count" in excinfo.value.missing_fields
    assert set(excinfo.value.invalid_fields) == {"port", "function_code"}


def test_loxone_local_needs_host_remote_needs_mac():
    local = LoxoneConfig(device_id="abc", loxone_mode="meter_block")
    with pytest.raises(InvalidConnectionConfig) as excinfo:
        connection_config.validate(local, MeterType.TOTAL)
    assert excinfo.value.missing_fields == ("host",)

    remote = LoxoneConfig(connection_mode="remote", host="", mac_address="504F94A0B1C2",
                          device_id="abc", loxone_mode="meter_block")
    assert connection_config.validate(remote, MeterType.TOTAL).mac_address == "504F94A0B1C2"


def test_loxone_mode_must_fit_meter_type():
    cfg = LoxoneConfig(host="192.168.1.10", device_id="abc", loxone_mode="meter_block")
    with pytest.raises(InvalidConnectionConfig) as excinfo:
        connection_config.validate(cfg, MeterType.HEATING)
    assert excinfo.value.invalid_fields == ("loxone_mode",)


def test_loxone_dual_output_needs_export_device():
    cfg = LoxoneConfig(host="192.168.1.10", device_id="abc", loxone_mode="virtual_output_dual")
    with pytest.raises(InvalidConnectionConfig) as excinfo:
        connection_config.validate(cfg, MeterType.SOLAR)
    assert excinfo.value.missing_fields == ("export_device_id",)


@pytest.mark.parametrize(
    "auth_type, fields, missing",
    [
        ("apikey", {}, ("api_key",)),
        ("basic", {"username": "u"}, ("password",)),
        ("oauth", {"client_id": "id"}, ("client_secret",)),
    ],
)
def test_smartme_credentials_follow_auth_type(auth_type, fields, missing):
    cfg = SmartMeConfig(device_id="d-1", auth_type=auth_type, **fields)
    with pytest.raises(InvalidConnectionConfig) as excinfo:
        connection_config.validate(cfg)
    assert excinfo.value.missing_fields == missing


def test_smartme_stores_only_selected_credentials():
    cfg = SmartMeConfig(device_id="d-1", auth_type="basic", username="u", password="p", api_key="stale")
    assert cfg.to_dict() == {"device_id": "d-1", "auth_type": "basic", "username": "u", "password": "p"}


def test_mqtt_and_udp_rules():
    with pytest.raises(InvalidConnectionConfig) as excinfo:
        connection_config.validate(MqttConfig(broker_host=""))
    assert set(excinfo.value.missing_fields) == {"topic", "broker_host"}

    with pytest.raises(InvalidConnectionConfig) as excinfo:
        connection_config.validate(UdpConfig(listen_port="eighty", data_key="k_power_kwh"))
    assert excinfo.value.invalid_fields == ("listen_port",)


def test_update_rejects_fields_of_other_protocols():
    with pytest.raises(ValidationError) as excinfo:
        connection_config.update(ModbusTcpConfig(), mqtt_topic="meters/x")
    assert excinfo.value.field == "mqtt_topic"


def test_round_trip_through_storage_keys():
    cfg = MqttConfig(topic="meters/a/b", broker_host="broker", broker_port=1884)
    stored = cfg.to_dict()
    assert stored["mqtt_topic"] == "meters/a/b"
    assert connection_config.from_dict("mqtt", stored) == cfg


def test_from_dict_ignores_foreign_keys():
    cfg = connection_config.from_dict("udp", {"data_key": "k_power_kwh", "ip_address": "1.2.3.4"})
    assert cfg == UdpConfig(data_key="k_power_kwh")
