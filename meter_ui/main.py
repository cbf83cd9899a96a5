from __future__ import annotations

import dataclasses
import time
import uuid
from typing import Dict, Optional

from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import JSONResponse

import config
from meter_ui.database import init_db
from meter_ui.store import SqlMeterStore
from modbus_probe import read_initial_reading
from replacement.connection_config import ModbusTcpConfig
from replacement.errors import (
    ConcurrentModificationError,
    MeterNotFoundError,
    StoreError,
    SubmissionError,
    ValidationError,
    WorkflowStateError,
)
from replacement.validators import Step
from replacement.workflow import ReplacementWorkflow
from utils import log

app = FastAPI(title="Meter Replacement UI")

init_db()

# Open replacement sessions. Each one owns its own draft.
WORKFLOWS: Dict[str, ReplacementWorkflow] = {}
# workflow id -> time.monotonic() when it was opened
WORKFLOW_OPENED: Dict[str, float] = {}

_store = SqlMeterStore()


def get_store():
    return _store


def _expire_workflows(now: float) -> None:
    for workflow_id, opened in list(WORKFLOW_OPENED.items()):
        wf = WORKFLOWS.get(workflow_id)
        if wf is not None and wf.submitting:
            continue
        if now - opened > config.WORKFLOW_TTL:
            _forget(workflow_id)
            log(f"Replacement session {workflow_id} expired")


def _forget(workflow_id: str) -> None:
    WORKFLOWS.pop(workflow_id, None)
    WORKFLOW_OPENED.pop(workflow_id, None)


def _workflow(workflow_id: str) -> ReplacementWorkflow:
    wf = WORKFLOWS.get(workflow_id)
    if wf is None:
        raise HTTPException(status_code=404, detail=f"Unknown replacement {workflow_id}")
    return wf


def _state(workflow_id: str, wf: ReplacementWorkflow) -> dict:
    return {"id": workflow_id, **wf.summary()}


@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError):
    return JSONResponse(exc.to_dict(), status_code=422)


@app.exception_handler(ConcurrentModificationError)
async def _concurrent_error(request: Request, exc: ConcurrentModificationError):
    return JSONResponse({"error": type(exc).__name__, "message": str(exc)}, status_code=409)


@app.exception_handler(WorkflowStateError)
async def _state_error(request: Request, exc: WorkflowStateError):
    return JSONResponse({"error": type(exc).__name__, "message": str(exc)}, status_code=409)


@app.exception_handler(SubmissionError)
async def _submission_error(request: Request, exc: SubmissionError):
    return JSONResponse({"error": type(exc).__name__, "message": str(exc)}, status_code=502)


@app.exception_handler(MeterNotFoundError)
async def _not_found(request: Request, exc: MeterNotFoundError):
    return JSONResponse({"error": type(exc).__name__, "message": str(exc)}, status_code=404)


@app.exception_handler(StoreError)
async def _store_error(request: Request, exc: StoreError):
    return JSONResponse({"error": type(exc).__name__, "message": str(exc)}, status_code=400)


# ------------- replacement sessions -------------


@app.post("/replacements", status_code=201)
def replacement_open(meter_id: int = Form(...), store=Depends(get_store)):
    now = time.monotonic()
    _expire_workflows(now)
    wf = ReplacementWorkflow.open(store, meter_id)
    workflow_id = uuid.uuid4().hex
    WORKFLOWS[workflow_id] = wf
    WORKFLOW_OPENED[workflow_id] = now
    return _state(workflow_id, wf)


@app.get("/replacements/{workflow_id}")
def replacement_get(workflow_id: str):
    return _state(workflow_id, _workflow(workflow_id))


@app.delete("/replacements/{workflow_id}")
def replacement_cancel(workflow_id: str):
    wf = _workflow(workflow_id)
    wf.cancel()
    _forget(workflow_id)
    return _state(workflow_id, wf)


@app.post("/replacements/{workflow_id}/old-reading")
def replacement_old_reading(workflow_id: str, reading: str = Form(...)):
    wf = _workflow(workflow_id)
    wf.set_old_final_reading(reading)
    return _state(workflow_id, wf)


@app.post("/replacements/{workflow_id}/identity")
def replacement_identity(
    workflow_id: str,
    name: Optional[str] = Form(None),
    meter_type: Optional[str] = Form(None),
    copy_settings: Optional[bool] = Form(None),
):
    wf = _workflow(workflow_id)
    wf.set_identity(name=name, meter_type=meter_type, copy_settings=copy_settings)
    return _state(workflow_id, wf)


@app.post("/replacements/{workflow_id}/connection-type")
def replacement_connection_type(workflow_id: str, connection_type: str = Form(...)):
    wf = _workflow(workflow_id)
    wf.select_connection_type(connection_type)
    return _state(workflow_id, wf)


@app.post("/replacements/{workflow_id}/connection")
async def replacement_connection(workflow_id: str, request: Request):
    """Any subset of the selected connection type's settings, form encoded."""
    wf = _workflow(workflow_id)
    form = await request.form()
    wf.set_connection_fields(**{key: value for key, value in form.items() if isinstance(value, str)})
    return _state(workflow_id, wf)


@app.post("/replacements/{workflow_id}/new-reading")
def replacement_new_reading(workflow_id: str, reading: str = Form(...)):
    wf = _workflow(workflow_id)
    wf.set_new_initial_reading(reading)
    return _state(workflow_id, wf)


@app.post("/replacements/{workflow_id}/new-reading/probe")
def replacement_probe(workflow_id: str):
    """
    Read the initial reading straight from a Modbus TCP meter and put it
    into the draft. Returns the reason on failure so the UI can show it.
    """
    wf = _workflow(workflow_id)
    if wf.current_step is not Step.NEW_READING:
        raise HTTPException(status_code=409, detail="The meter can only be read on the new reading step")
    cfg = wf.draft.new_connection_config
    if not isinstance(cfg, ModbusTcpConfig):
        raise HTTPException(status_code=400, detail="Only Modbus TCP meters can be read directly")

    try:
        reading = read_initial_reading(cfg)
    except (RuntimeError, ValueError, OSError) as exc:
        log(f"Probe of {cfg.ip_address} failed: {exc}")
        return JSONResponse({"reachable": False, "reason": str(exc)}, status_code=502)

    wf.set_new_initial_reading(reading)
    return {"reachable": True, "reading": str(reading), **_state(workflow_id, wf)}


@app.post("/replacements/{workflow_id}/notes")
def replacement_notes(workflow_id: str, notes: str = Form("")):
    wf = _workflow(workflow_id)
    wf.set_notes(notes)
    return _state(workflow_id, wf)


@app.post("/replacements/{workflow_id}/advance")
def replacement_advance(workflow_id: str):
    wf = _workflow(workflow_id)
    wf.advance()
    return _state(workflow_id, wf)


@app.post("/replacements/{workflow_id}/retreat")
def replacement_retreat(workflow_id: str):
    wf = _workflow(workflow_id)
    wf.retreat()
    return _state(workflow_id, wf)


@app.post("/replacements/{workflow_id}/commit", status_code=201)
def replacement_commit(workflow_id: str):
    wf = _workflow(workflow_id)
    wf.commit()
    _forget(workflow_id)
    return _state(workflow_id, wf)


# ------------- meter lookups -------------


@app.get("/meters/{meter_id}/replacement-history")
def meter_replacement_history(meter_id: int, store=Depends(get_store)):
    store.fetch_meter(meter_id)
    records = store.replacement_history(meter_id)
    return [_jsonable(dataclasses.asdict(r)) for r in records]


@app.get("/meters/{meter_id}/deletion-impact")
def meter_deletion_impact(meter_id: int, store=Depends(get_store)):
    return _jsonable(dataclasses.asdict(store.fetch_deletion_impact(meter_id)))


def _jsonable(data: dict) -> dict:
    out = {}
    for key, value in data.items():
        if hasattr(value, "isoformat"):
            out[key] = value.isoformat()
        elif value is not None and not isinstance(value, (bool, int, str)):
            out[key] = str(value)
        else:
            out[key] = value
    return out
