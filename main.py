from __future__ import annotations

import argparse
import json
from typing import Dict, List, Optional

import config
from meter_ui.database import make_session_factory
from meter_ui.store import SqlMeterStore
from modbus_probe import read_initial_reading
from replacement.connection_config import ModbusTcpConfig
from replacement.errors import ReplacementError, StoreError, ValidationError
from replacement.models import ConnectionType, MeterType
from replacement.workflow import ReplacementWorkflow
from utils import format_dt, format_kwh, log


def _parse_settings(items: Optional[List[str]]) -> Dict[str, str]:
    """
    --set key=value pairs for the connection settings, e.g.
    --set ip_address=10.0.0.5 --set register_address=0
    """
    settings = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValidationError("new_connection_config", f"Expected key=value, got {item!r}")
        settings[key.strip()] = value.strip()
    return settings


def run_replacement(store, args: argparse.Namespace) -> ReplacementWorkflow:
    wf = ReplacementWorkflow.open(store, args.meter_id)
    old = wf.old_meter
    log(
        f"Replacing {old.name} ({old.meter_type.value}, {old.connection_type.value}), "
        f"last reading {format_kwh(old.last_reading)}"
    )

    # 1) Overview
    wf.advance()

    # 2) Final reading of the old meter
    if args.final_reading is not None:
        wf.set_old_final_reading(args.final_reading)
    wf.advance()

    # 3) Identity of the new meter
    wf.set_identity(
        name=args.name,
        meter_type=args.meter_type,
        copy_settings=not args.no_copy_settings,
    )
    wf.advance()

    # 4) Connection
    if args.connection_type:
        wf.select_connection_type(args.connection_type)
    settings = _parse_settings(args.set)
    if settings:
        wf.set_connection_fields(**settings)
    wf.advance()

    # 5) Initial reading of the new meter
    draft = wf.draft
    if args.probe:
        if not isinstance(draft.new_connection_config, ModbusTcpConfig):
            raise ValidationError("new_meter_initial_reading", "--probe needs a modbus_tcp connection")
        reading = read_initial_reading(draft.new_connection_config, timeout=args.timeout)
        log(f"Read initial reading {format_kwh(reading)} from the new meter")
        wf.set_new_initial_reading(reading)
    else:
        wf.set_new_initial_reading(args.initial_reading)
    wf.advance()

    # 6) Review
    if args.notes:
        wf.set_notes(args.notes)

    draft = wf.draft
    log(f"New meter: {draft.new_meter_name} ({draft.new_meter_type.value})")
    log(f"Connection: {draft.new_connection_type.value} {draft.new_connection_config.to_dict()}")
    log(
        f"Final {draft.old_meter_final_reading} kWh, initial {draft.new_meter_initial_reading} kWh "
        f"-> offset {format_kwh(wf.offset_preview)}"
    )

    if args.dry_run:
        payload = wf.build_request().to_payload()
        log(f"Dry run, nothing submitted: {json.dumps(payload, sort_keys=True)}")
        wf.cancel()
        return wf

    result = wf.commit()
    log(f"Meter {result.archived_meter_id} archived, new meter id {result.new_meter_id}")
    return wf


def show_history(store, meter_id: int) -> None:
    meter = store.fetch_meter(meter_id)
    records = store.replacement_history(meter_id)
    if not records:
        log(f"No replacements recorded for {meter.name}.")
        return

    for rec in records:
        log(
            f"#{rec.id} {format_dt(rec.replacement_date)}: meter {rec.old_meter_id} -> {rec.new_meter_id}, "
            f"final {format_kwh(rec.old_meter_final_reading)}, "
            f"initial {format_kwh(rec.new_meter_initial_reading)}, "
            f"offset {format_kwh(rec.reading_offset)}"
            + (f" ({rec.notes})" if rec.notes else "")
        )
    log(f"Total offset for meter {meter_id}: {format_kwh(store.chain_offset(meter_id))}")


def show_impact(store, meter_id: int) -> None:
    impact = store.fetch_deletion_impact(meter_id)
    if not impact.has_data:
        log(f"{impact.meter_name} has no readings.")
        return
    log(
        f"{impact.meter_name}: {impact.readings_count} readings "
        f"from {format_dt(impact.oldest_reading)} to {format_dt(impact.newest_reading)}"
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)

    if args.command == "serve":
        import uvicorn

        uvicorn.run("meter_ui.main:app", host=args.host, port=args.port)
        return 0

    store = SqlMeterStore(make_session_factory(args.db))
    try:
        if args.command == "replace":
            run_replacement(store, args)
        elif args.command == "history":
            show_history(store, args.meter_id)
        elif args.command == "impact":
            show_impact(store, args.meter_id)
    except ValidationError as exc:
        log(f"ERROR: {exc.field}: {exc.message}")
        return 2
    except (ReplacementError, StoreError, RuntimeError) as exc:
        log(f"ERROR: {exc}")
        return 1
    return 0


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Meter replacement with billing continuity")
    p.add_argument("--db", default=config.DATABASE_URL, help="SQLAlchemy database URL")
    sub = p.add_subparsers(dest="command", required=True)

    r = sub.add_parser("replace", help="Replace a meter, carrying its readings over")
    r.add_argument("--meter-id", type=int, required=True)
    r.add_argument("--final-reading", help="Final reading of the old meter (kWh)")
    r.add_argument("--name", help="Name of the new meter (default: '<old name> (New)')")
    r.add_argument("--meter-type", choices=[t.value for t in MeterType])
    r.add_argument("--no-copy-settings", action="store_true",
                   help="Do not carry apartment/user settings over to the new meter")
    r.add_argument("--connection-type", choices=[t.value for t in ConnectionType])
    r.add_argument("--set", action="append", metavar="KEY=VALUE",
                   help="Connection setting, repeatable (e.g. --set ip_address=10.0.0.5)")
    r.add_argument("--initial-reading", default="0", help="Initial reading of the new meter (kWh)")
    r.add_argument("--probe", action="store_true",
                   help="Read the initial reading from the new Modbus TCP meter")
    r.add_argument("--timeout", type=float, default=config.DEFAULT_TIMEOUT)
    r.add_argument("--notes", default="")
    r.add_argument("--dry-run", action="store_true", help="Validate and show the offset only")

    h = sub.add_parser("history", help="Show replacements of a meter")
    h.add_argument("--meter-id", type=int, required=True)

    i = sub.add_parser("impact", help="Show how much data deleting a meter would remove")
    i.add_argument("--meter-id", type=int, required=True)

    s = sub.add_parser("serve", help="Run the HTTP API")
    s.add_argument("--host", default=config.HTTP_HOST)
    s.add_argument("--port", type=int, default=config.HTTP_PORT)

    return p.parse_args(argv)


if __name__ == "__main__":
    raise SystemExit(main())
