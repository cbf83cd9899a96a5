# replacement/workflow.py
#
# Six-step meter replacement wizard:
#
#   1 OVERVIEW      informational
#   2 OLD_READING   final reading of the meter being removed
#   3 NEW_IDENTITY  name, type, copy settings
#   4 CONNECTION    connection type + protocol settings
#   5 NEW_READING   initial reading of the new meter (offset preview)
#   6 REVIEW        summary + notes, commit()
#
# Steps are linear. advance() only moves forward when the validator for the
# step being left passes; retreat() never loses entered values; commit()
# performs exactly one store call and holds a lock while it is pending.

from __future__ import annotations

import dataclasses
import threading
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Collection, Dict, Optional, Tuple

from utils import format_kwh, log

from . import connection_config
from .connection_config import LOXONE_MODES_BY_METER_TYPE, LoxoneConfig, MqttConfig, default_loxone_mode
from .errors import (
    CommitInProgressError,
    ConcurrentModificationError,
    ReplacementError,
    StoreError,
    SubmissionError,
    ValidationError,
    WorkflowClosedError,
    WorkflowStateError,
)
from .identity import default_meter_name, derive_config, derive_mqtt_topic
from .models import (
    ConnectionType,
    Meter,
    MeterType,
    ReplacementDraft,
    ReplacementRequest,
    ReplacementResult,
)
from .offset import compute_offset, parse_reading
from .store import MeterStore
from .validators import ReplacementStepValidator, Step


class Action(str, Enum):
    ADVANCE = "advance"
    RETREAT = "retreat"
    COMMIT = "commit"


TRANSITIONS: Dict[Tuple[Step, Action], Step] = {
    (Step.OVERVIEW, Action.ADVANCE): Step.OLD_READING,
    (Step.OLD_READING, Action.ADVANCE): Step.NEW_IDENTITY,
    (Step.NEW_IDENTITY, Action.ADVANCE): Step.CONNECTION,
    (Step.CONNECTION, Action.ADVANCE): Step.NEW_READING,
    (Step.NEW_READING, Action.ADVANCE): Step.REVIEW,
    (Step.OLD_READING, Action.RETREAT): Step.OVERVIEW,
    (Step.NEW_IDENTITY, Action.RETREAT): Step.OLD_READING,
    (Step.CONNECTION, Action.RETREAT): Step.NEW_IDENTITY,
    (Step.NEW_READING, Action.RETREAT): Step.CONNECTION,
    (Step.REVIEW, Action.RETREAT): Step.NEW_READING,
    (Step.REVIEW, Action.COMMIT): Step.REVIEW,
}


class ReplacementWorkflow:
    """
    Owns one ReplacementDraft from open() until commit() succeeds or the
    user cancels. Nothing is written to the store before commit().
    """

    def __init__(
        self,
        store: MeterStore,
        old_meter: Meter,
        taken_topics: Collection[str] = (),
        taken_data_keys: Collection[str] = (),
        validator: Optional[ReplacementStepValidator] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.old_meter = old_meter
        self.validator = validator or ReplacementStepValidator()
        self.error: Optional[ReplacementError] = None
        self.result: Optional[ReplacementResult] = None
        self.closed = False
        self.cancelled = False

        self._clock = clock
        self._taken_topics = set(taken_topics)
        self._taken_data_keys = set(taken_data_keys)
        self._submit_lock = threading.Lock()

        name = default_meter_name(old_meter.name)
        self._draft = ReplacementDraft(
            old_meter_id=old_meter.id,
            old_meter_final_reading=str(old_meter.last_reading),
            new_meter_name=name,
            new_meter_type=old_meter.meter_type,
            copy_settings_from_old=True,
            new_connection_type=old_meter.connection_type,
            new_connection_config=self._derive_config(old_meter.connection_type, name, old_meter.meter_type),
        )

    @classmethod
    def open(cls, store: MeterStore, meter_id: int, **kwargs) -> "ReplacementWorkflow":
        """Fetch the old meter once and seed a new draft from it."""
        meter = store.fetch_meter(meter_id)
        if meter.is_archived:
            raise WorkflowStateError(f"Meter {meter.name} is archived and cannot be replaced")

        if "taken_topics" not in kwargs and "taken_data_keys" not in kwargs:
            topics, data_keys = store.used_identifiers()
            kwargs.update(taken_topics=topics, taken_data_keys=data_keys)

        log(
            f"Replacement opened for meter {meter.id} ({meter.name}), "
            f"last reading {format_kwh(meter.last_reading)}"
        )
        return cls(store, meter, **kwargs)

    # ------------- read-only surface -------------

    @property
    def current_step(self) -> Step:
        return Step(self._draft.current_step)

    @property
    def draft(self) -> ReplacementDraft:
        """A copy; edits go through the setters below."""
        return dataclasses.replace(self._draft)

    @property
    def submitting(self) -> bool:
        return self._submit_lock.locked()

    @property
    def can_advance(self) -> bool:
        if self.closed or self.submitting:
            return False
        if (self.current_step, Action.ADVANCE) not in TRANSITIONS:
            return False
        return self.validator.check(self.current_step, self._draft, self.old_meter) is None

    @property
    def can_retreat(self) -> bool:
        return (
            not self.closed
            and not self.submitting
            and (self.current_step, Action.RETREAT) in TRANSITIONS
        )

    @property
    def can_commit(self) -> bool:
        return not self.closed and not self.submitting and self.current_step is Step.REVIEW

    @property
    def offset_preview(self) -> Optional[Decimal]:
        try:
            return compute_offset(
                self._draft.old_meter_final_reading,
                self._draft.new_meter_initial_reading,
            )
        except ValueError:
            return None

    # ------------- draft edits -------------

    def set_old_final_reading(self, reading) -> None:
        self._edit(Step.OLD_READING, old_meter_final_reading=str(reading).strip())

    def set_identity(self, name: Optional[str] = None, meter_type=None, copy_settings: Optional[bool] = None) -> None:
        self._require_step(Step.NEW_IDENTITY)
        draft = self._draft

        if meter_type is not None:
            try:
                draft.new_meter_type = MeterType(meter_type)
            except ValueError as exc:
                raise ValidationError("new_meter_type", f"Unknown meter type: {meter_type}") from exc
            self._fit_loxone_mode()

        if copy_settings is not None:
            draft.copy_settings_from_old = bool(copy_settings)

        if name is not None and name != draft.new_meter_name:
            draft.new_meter_name = name
            cfg = draft.new_connection_config
            if isinstance(cfg, MqttConfig) and name.strip():
                topic = derive_mqtt_topic(
                    name,
                    self.old_meter.building_name,
                    self.old_meter.apartment_unit,
                    self._taken_topics,
                )
                draft.new_connection_config = connection_config.update(cfg, topic=topic)

    def select_connection_type(self, connection_type) -> None:
        """Switching type throws the previous protocol's settings away."""
        self._require_step(Step.CONNECTION)
        try:
            new_type = ConnectionType(connection_type)
        except ValueError as exc:
            raise ValidationError("new_connection_type", f"Unknown connection type: {connection_type}") from exc

        if new_type == self._draft.new_connection_type:
            return

        self._draft.new_connection_type = new_type
        self._draft.new_connection_config = self._derive_config(
            new_type, self._draft.new_meter_name, self._draft.new_meter_type
        )
        log(f"Replacement of meter {self.old_meter.id}: connection type -> {new_type.value}")

    def set_connection_fields(self, **fields) -> None:
        self._require_step(Step.CONNECTION)
        self._draft.new_connection_config = connection_config.update(
            self._draft.new_connection_config, **fields
        )

    def set_new_initial_reading(self, reading) -> None:
        self._edit(Step.NEW_READING, new_meter_initial_reading=str(reading).strip())

    def set_notes(self, notes: Optional[str]) -> None:
        self._edit(Step.REVIEW, replacement_notes=notes or "")

    # ------------- transitions -------------

    def advance(self) -> Step:
        self._ensure_open()
        self._ensure_idle()
        step = self.current_step
        target = self._target(Action.ADVANCE)

        try:
            self.validator.validate(step, self._draft, self.old_meter)
        except ValidationError as exc:
            self.error = exc
            log(f"Replacement of meter {self.old_meter.id}: step {step.name} blocked ({exc.message})")
            raise

        if step is Step.CONNECTION:
            self._draft.new_connection_config = connection_config.validate(
                self._draft.new_connection_config, self._draft.new_meter_type
            )

        self.error = None
        self._draft.current_step = target
        return target

    def retreat(self) -> Step:
        self._ensure_open()
        self._ensure_idle()
        target = self._target(Action.RETREAT)
        self.error = None
        self._draft.current_step = target
        return target

    def cancel(self) -> None:
        if self.cancelled:
            return
        if self.closed:
            raise WorkflowClosedError("Replacement was already submitted")
        self._ensure_idle()
        self.closed = True
        self.cancelled = True
        self.error = None
        log(f"Replacement of meter {self.old_meter.id} cancelled at step {self.current_step.name}")

    def build_request(self) -> ReplacementRequest:
        """Re-validate every step and freeze the draft into a request."""
        draft = self._draft
        self.validator.validate_all(draft, self.old_meter)

        final = parse_reading(draft.old_meter_final_reading)
        initial = parse_reading(draft.new_meter_initial_reading)
        return ReplacementRequest(
            old_meter_id=draft.old_meter_id,
            old_meter_final_reading=final,
            new_meter_name=draft.new_meter_name.strip(),
            new_meter_type=draft.new_meter_type,
            copy_settings_from_old=draft.copy_settings_from_old,
            new_connection_type=draft.new_connection_type,
            new_connection_config=connection_config.validate(
                draft.new_connection_config, draft.new_meter_type
            ),
            new_meter_initial_reading=initial,
            replacement_notes=draft.replacement_notes.strip(),
            replacement_date=self._clock(),
            reading_offset=compute_offset(final, initial),
            expected_last_reading=self.old_meter.last_reading,
        )

    def commit(self) -> ReplacementResult:
        self._ensure_open()
        if not self._submit_lock.acquire(blocking=False):
            log(f"Replacement of meter {self.old_meter.id} is already being submitted; commit ignored")
            raise CommitInProgressError("A replacement submission is already in progress")

        try:
            self._ensure_open()
            if self.current_step is not Step.REVIEW:
                raise WorkflowStateError(
                    f"Commit is only possible on the review step (current: {self.current_step.name})"
                )
            self.error = None

            try:
                request = self.build_request()
            except ValidationError as exc:
                self.error = exc
                raise

            self._check_old_meter_unchanged()

            log(
                f"Submitting replacement of meter {request.old_meter_id}: "
                f"final={format_kwh(request.old_meter_final_reading)}, "
                f"initial={format_kwh(request.new_meter_initial_reading)}, "
                f"offset={format_kwh(request.reading_offset)}"
            )
            try:
                result = self.store.submit_replacement(request)
            except (StoreError, OSError) as exc:
                error = SubmissionError(str(exc))
                self.error = error
                log(f"Replacement of meter {request.old_meter_id} failed: {exc}")
                raise error from exc

            self.result = result
            self.closed = True
            log(
                f"SUCCESS: meter {result.archived_meter_id} replaced by meter {result.new_meter_id}. "
                f"Offset: {format_kwh(request.reading_offset)}"
            )
            return result
        finally:
            self._submit_lock.release()

    def summary(self) -> dict:
        """JSON friendly state for the UI shell."""
        draft = self._draft
        offset = self.offset_preview
        return {
            "current_step": int(self.current_step),
            "step_name": self.current_step.name.lower(),
            "old_meter": {
                "id": self.old_meter.id,
                "name": self.old_meter.name,
                "meter_type": self.old_meter.meter_type.value,
                "connection_type": self.old_meter.connection_type.value,
                "last_reading": str(self.old_meter.last_reading),
            },
            "draft": {
                "old_meter_final_reading": draft.old_meter_final_reading,
                "new_meter_name": draft.new_meter_name,
                "new_meter_type": draft.new_meter_type.value,
                "copy_settings_from_old": draft.copy_settings_from_old,
                "new_connection_type": draft.new_connection_type.value,
                "new_connection_config": draft.new_connection_config.to_dict(),
                "new_meter_initial_reading": draft.new_meter_initial_reading,
                "replacement_notes": draft.replacement_notes,
            },
            "offset_preview": None if offset is None else str(offset),
            "error": None if self.error is None else _error_dict(self.error),
            "can_advance": self.can_advance,
            "can_retreat": self.can_retreat,
            "can_commit": self.can_commit,
            "closed": self.closed,
            "cancelled": self.cancelled,
            "result": None if self.result is None else dataclasses.asdict(self.result),
        }

    # ------------- internals -------------

    def _derive_config(self, connection_type, name: str, meter_type: MeterType):
        return derive_config(
            connection_type,
            name,
            meter_type,
            self.old_meter.building_name,
            self.old_meter.apartment_unit,
            self._taken_topics,
            self._taken_data_keys,
        )

    def _fit_loxone_mode(self) -> None:
        cfg = self._draft.new_connection_config
        meter_type = self._draft.new_meter_type
        if isinstance(cfg, LoxoneConfig) and cfg.loxone_mode not in LOXONE_MODES_BY_METER_TYPE[meter_type]:
            self._draft.new_connection_config = connection_config.update(
                cfg, loxone_mode=default_loxone_mode(meter_type)
            )

    def _check_old_meter_unchanged(self) -> None:
        meter_id = self.old_meter.id
        try:
            current = self.store.fetch_meter(meter_id)
        except (StoreError, OSError) as exc:
            error = SubmissionError(str(exc))
            self.error = error
            raise error from exc

        if current.is_archived:
            error = SubmissionError(f"Meter {current.name} has already been replaced")
            self.error = error
            raise error

        if current.last_reading != self.old_meter.last_reading:
            error = ConcurrentModificationError(meter_id, self.old_meter.last_reading, current.last_reading)
            self.old_meter = current
            self._draft.current_step = Step.OLD_READING
            self.error = error
            log(f"Replacement of meter {meter_id}: {error}")
            raise error

    def _target(self, action: Action) -> Step:
        try:
            return TRANSITIONS[(self.current_step, action)]
        except KeyError:
            raise WorkflowStateError(
                f"Cannot {action.value} from step {self.current_step.name}"
            ) from None

    def _require_step(self, step: Step) -> None:
        self._ensure_open()
        self._ensure_idle()
        if self.current_step is not step:
            raise WorkflowStateError(
                f"{step.name} fields can only be edited on step {int(step)} "
                f"(current: {int(self.current_step)})"
            )

    def _edit(self, step: Step, **changes) -> None:
        self._require_step(step)
        for name, value in changes.items():
            setattr(self._draft, name, value)

    def _ensure_open(self) -> None:
        if self.closed:
            raise WorkflowClosedError(
                "Replacement was cancelled" if self.cancelled else "Replacement was already submitted"
            )

    def _ensure_idle(self) -> None:
        if self.submitting:
            raise CommitInProgressError("A replacement submission is already in progress")


def _error_dict(error: ReplacementError) -> dict:
    if isinstance(error, ValidationError):
        return error.to_dict()
    return {"error": type(error).__name__, "message": str(error)}
