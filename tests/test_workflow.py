import threading
from datetime import datetime
from decimal import Decimal

import pytest

from conftest import FakeStore, build_meter
from replacement.connection_config import LoxoneConfig, ModbusTcpConfig, MqttConfig
from replacement.errors import (
    CommitInProgressError,
    ConcurrentModificationError,
    InvalidConnectionConfig,
    MeterNotFoundError,
    ReadingRegressionError,
    StoreError,
    SubmissionError,
    ValidationError,
    WorkflowClosedError,
    WorkflowStateError,
)
from replacement.models import ConnectionType, MeterType
from replacement.validators import Step
from replacement.workflow import ReplacementWorkflow

SWAP_TIME = datetime(2026, 3, 1, 10, 30)


def open_workflow(store, meter_id=7):
    return ReplacementWorkflow.open(store, meter_id, clock=lambda: SWAP_TIME)


def drive_to_review(wf, final="1000.0", ip="10.0.0.5", initial="0"):
    wf.advance()
    wf.set_old_final_reading(final)
    wf.advance()
    wf.advance()
    wf.set_connection_fields(ip_address=ip)
    wf.advance()
    wf.set_new_initial_reading(initial)
    wf.advance()
    assert wf.current_step is Step.REVIEW


def test_open_seeds_draft_from_old_meter(fake_store):
    wf = open_workflow(fake_store)
    draft = wf.draft
    assert wf.current_step is Step.OVERVIEW
    assert draft.old_meter_final_reading == "1000.0"
    assert draft.new_meter_name == "Main Meter (New)"
    assert draft.new_meter_type is MeterType.TOTAL
    assert draft.copy_settings_from_old is True
    assert draft.new_connection_type is ConnectionType.MODBUS_TCP
    # the old meter's address is not carried over
    assert draft.new_connection_config == ModbusTcpConfig()
    assert fake_store.submitted == []


def test_open_rejects_archived_meter():
    store = FakeStore(build_meter(is_archived=True))
    with pytest.raises(WorkflowStateError):
        open_workflow(store)


def test_open_unknown_meter(fake_store):
    with pytest.raises(MeterNotFoundError):
        open_workflow(fake_store, 404)


def test_incomplete_connection_blocks_step_four(fake_store):
    wf = open_workflow(fake_store)
    wf.advance()
    wf.advance()
    wf.advance()
    assert wf.current_step is Step.CONNECTION
    assert not wf.can_advance

    with pytest.raises(InvalidConnectionConfig) as excinfo:
        wf.advance()
    assert excinfo.value.missing_fields == ("ip_address",)
    assert wf.current_step is Step.CONNECTION
    assert wf.error is excinfo.value
    assert fake_store.submitted == []

    wf.set_connection_fields(ip_address="10.0.0.5")
    assert wf.advance() is Step.NEW_READING
    assert wf.error is None


def test_regressing_final_reading_blocks_step_two(fake_store):
    wf = open_workflow(fake_store)
    wf.advance()
    wf.set_old_final_reading("999.9")
    with pytest.raises(ReadingRegressionError):
        wf.advance()
    assert wf.current_step is Step.OLD_READING

    wf.set_old_final_reading("1000.0")
    assert wf.advance() is Step.NEW_IDENTITY


def test_switching_connection_type_starts_fresh(fake_store):
    wf = open_workflow(fake_store)
    wf.advance()
    wf.advance()
    wf.advance()

    wf.select_connection_type("mqtt")
    assert wf.draft.new_connection_config.topic == "meters/sonnenhof/main_meter__new_"
    wf.set_connection_fields(broker_host="broker.local")

    wf.select_connection_type("modbus_tcp")
    wf.set_connection_fields(ip_address="10.0.0.9", port="1502")

    wf.select_connection_type("mqtt")
    assert wf.draft.new_connection_config.broker_host == "localhost"

    wf.select_connection_type("modbus_tcp")
    cfg = wf.draft.new_connection_config
    assert isinstance(cfg, ModbusTcpConfig)
    assert cfg.ip_address == ""
    assert (cfg.port, cfg.register_count, cfg.unit_id) == (502, 2, 1)


def test_selecting_same_type_keeps_fields(fake_store):
    wf = open_workflow(fake_store)
    for _ in range(3):
        wf.advance()
    wf.set_connection_fields(ip_address="10.0.0.5")
    wf.select_connection_type(ConnectionType.MODBUS_TCP)
    assert wf.draft.new_connection_config.ip_address == "10.0.0.5"


def test_unknown_connection_type(fake_store):
    wf = open_workflow(fake_store)
    for _ in range(3):
        wf.advance()
    with pytest.raises(ValidationError) as excinfo:
        wf.select_connection_type("zigbee")
    assert excinfo.value.field == "new_connection_type"


def test_end_to_end_offset(fake_store):
    store = FakeStore(build_meter(last_reading=Decimal("50000.000")))
    wf = open_workflow(store)
    drive_to_review(wf, final="50012.500", ip="10.0.0.5", initial="0.000")
    wf.set_notes("  swapped after display failure ")

    result = wf.commit()

    assert result.new_meter_id == 99
    assert wf.closed
    assert len(store.submitted) == 1
    request = store.submitted[0]
    assert request.reading_offset == Decimal("50012.500")
    assert request.old_meter_final_reading == Decimal("50012.500")
    assert request.new_meter_initial_reading == Decimal("0.000")
    assert request.new_connection_config.ip_address == "10.0.0.5"
    assert request.new_connection_config.port == 502
    assert request.replacement_notes == "swapped after display failure"
    assert request.replacement_date == SWAP_TIME
    assert request.expected_last_reading == Decimal("50000.000")


def test_offset_preview_follows_entries(fake_store):
    wf = open_workflow(fake_store)
    drive_to_review(wf, final="1200.5", initial="0.5")
    assert wf.offset_preview == Decimal("1200.0")
    assert wf.summary()["offset_preview"] == "1200.000"


def test_commit_only_on_review(fake_store):
    wf = open_workflow(fake_store)
    with pytest.raises(WorkflowStateError):
        wf.commit()
    assert fake_store.submitted == []


def test_single_commit_under_concurrent_calls(fake_store):
    wf = open_workflow(fake_store)
    drive_to_review(wf)
    fake_store.gate = threading.Event()
    results = []

    worker = threading.Thread(target=lambda: results.append(wf.commit()))
    worker.start()
    assert fake_store.entered.wait(5)

    assert wf.submitting
    assert not wf.can_commit
    with pytest.raises(CommitInProgressError):
        wf.commit()
    with pytest.raises(CommitInProgressError):
        wf.retreat()

    fake_store.gate.set()
    worker.join(5)

    assert len(fake_store.submitted) == 1
    assert results[0].new_meter_id == 99
    with pytest.raises(WorkflowClosedError):
        wf.commit()
    assert len(fake_store.submitted) == 1


def test_submission_failure_keeps_draft(fake_store):
    wf = open_workflow(fake_store)
    drive_to_review(wf)
    fake_store.fail_with = StoreError("database is locked")

    with pytest.raises(SubmissionError) as excinfo:
        wf.commit()
    assert str(excinfo.value) == "database is locked"
    assert wf.current_step is Step.REVIEW
    assert not wf.closed
    assert wf.summary()["error"]["message"] == "database is locked"
    assert wf.draft.new_connection_config.ip_address == "10.0.0.5"

    fake_store.fail_with = None
    assert wf.commit().new_meter_id == 99
    assert len(fake_store.submitted) == 2


def test_reading_changed_in_store_returns_to_step_two(fake_store, old_meter):
    wf = open_workflow(fake_store)
    drive_to_review(wf)
    old_meter.last_reading = Decimal("1005.0")

    with pytest.raises(ConcurrentModificationError):
        wf.commit()
    assert wf.current_step is Step.OLD_READING
    assert wf.old_meter.last_reading == Decimal("1005.0")
    assert fake_store.submitted == []

    with pytest.raises(ReadingRegressionError):
        wf.advance()
    wf.set_old_final_reading("1005.0")
    for _ in range(4):
        wf.advance()
    wf.commit()
    assert fake_store.submitted[0].expected_last_reading == Decimal("1005.0")


def test_meter_archived_meanwhile(fake_store, old_meter):
    wf = open_workflow(fake_store)
    drive_to_review(wf)
    old_meter.is_archived = True

    with pytest.raises(SubmissionError):
        wf.commit()
    assert fake_store.submitted == []


def test_retreat_keeps_entered_values(fake_store):
    wf = open_workflow(fake_store)
    wf.advance()
    wf.set_old_final_reading("1010")
    wf.advance()
    wf.set_identity(name="Boiler Room", meter_type="heating_meter", copy_settings=False)
    wf.retreat()
    wf.retreat()
    assert wf.current_step is Step.OVERVIEW
    with pytest.raises(WorkflowStateError):
        wf.retreat()

    draft = wf.draft
    assert draft.old_meter_final_reading == "1010"
    assert draft.new_meter_name == "Boiler Room"
    assert draft.new_meter_type is MeterType.HEATING
    assert draft.copy_settings_from_old is False


def test_fields_edit_only_on_their_step(fake_store):
    wf = open_workflow(fake_store)
    with pytest.raises(WorkflowStateError):
        wf.set_old_final_reading("1001")
    with pytest.raises(WorkflowStateError):
        wf.set_notes("early")
    with pytest.raises(WorkflowStateError):
        wf.set_connection_fields(ip_address="10.0.0.5")


def test_draft_property_is_a_copy(fake_store):
    wf = open_workflow(fake_store)
    wf.draft.new_meter_name = "changed"
    assert wf.draft.new_meter_name == "Main Meter (New)"


def test_name_change_regenerates_mqtt_topic():
    meter = build_meter(
        connection_type=ConnectionType.MQTT,
        connection_config=MqttConfig(topic="meters/sonnenhof/main_meter"),
    )
    store = FakeStore(meter)
    store.topics = {"meters/sonnenhof/main_meter", "meters/sonnenhof/boiler"}
    wf = open_workflow(store)
    assert wf.draft.new_connection_config.topic == "meters/sonnenhof/main_meter__new_"

    wf.advance()
    wf.advance()
    wf.set_identity(name="Boiler")
    assert wf.draft.new_connection_config.topic == "meters/sonnenhof/boiler_1"


def test_meter_type_change_refits_loxone_mode():
    meter = build_meter(
        connection_type=ConnectionType.LOXONE_API,
        connection_config=LoxoneConfig(host="192.168.1.10", device_id="abc", loxone_mode="meter_block"),
    )
    wf = open_workflow(FakeStore(meter))
    assert wf.draft.new_connection_config.loxone_mode == "meter_block"

    wf.advance()
    wf.advance()
    wf.set_identity(meter_type=MeterType.APARTMENT)
    assert wf.draft.new_connection_config.loxone_mode == "energy_meter_block"


def test_cancel(fake_store):
    wf = open_workflow(fake_store)
    wf.advance()
    wf.cancel()
    assert wf.cancelled and wf.closed
    wf.cancel()
    with pytest.raises(WorkflowClosedError):
        wf.advance()
    assert fake_store.submitted == []


def test_cancel_after_commit(fake_store):
    wf = open_workflow(fake_store)
    drive_to_review(wf)
    wf.commit()
    with pytest.raises(WorkflowClosedError):
        wf.cancel()


def test_summary_shape(fake_store):
    wf = open_workflow(fake_store)
    state = wf.summary()
    assert state["current_step"] == 1
    assert state["step_name"] == "overview"
    assert state["old_meter"]["last_reading"] == "1000.0"
    assert state["draft"]["new_connection_config"]["port"] == 502
    assert state["can_advance"] is True
    assert state["can_retreat"] is False
    assert state["can_commit"] is False
    assert state["result"] is None
