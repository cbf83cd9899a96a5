# replacement/validators.py
#
# One pure validator per wizard step. A validator raises ValidationError
# (or a subclass) naming the offending draft field and returns nothing
# when the step may be left.

from __future__ import annotations

from enum import IntEnum
from typing import Callable, Dict, Optional

from . import connection_config
from .errors import ReadingRegressionError, ValidationError
from .models import Meter, MeterType, ReplacementDraft
from .offset import parse_reading


class Step(IntEnum):
    OVERVIEW = 1
    OLD_READING = 2
    NEW_IDENTITY = 3
    CONNECTION = 4
    NEW_READING = 5
    REVIEW = 6


StepValidator = Callable[[ReplacementDraft, Meter], None]


def _parse(field: str, raw, label: str):
    try:
        return parse_reading(raw)
    except ValueError as exc:
        raise ValidationError(field, f"Invalid {label}: enter a non-negative number") from exc


def always_valid(draft: ReplacementDraft, old_meter: Meter) -> None:
    return None


def validate_old_reading(draft: ReplacementDraft, old_meter: Meter) -> None:
    final = _parse("old_meter_final_reading", draft.old_meter_final_reading, "final reading")
    if final < old_meter.last_reading:
        raise ReadingRegressionError("old_meter_final_reading", final, old_meter.last_reading)


def validate_identity(draft: ReplacementDraft, old_meter: Meter) -> None:
    if not (draft.new_meter_name or "").strip():
        raise ValidationError("new_meter_name", "Meter name is required")
    if not isinstance(draft.new_meter_type, MeterType):
        raise ValidationError("new_meter_type", f"Unknown meter type: {draft.new_meter_type!r}")


def validate_connection(draft: ReplacementDraft, old_meter: Meter) -> None:
    cfg = draft.new_connection_config
    if cfg.connection_type != draft.new_connection_type:
        raise ValidationError(
            "new_connection_config",
            f"Configuration is for {cfg.connection_type.value}, "
            f"not {draft.new_connection_type.value}",
        )
    connection_config.validate(cfg, draft.new_meter_type)


def validate_new_reading(draft: ReplacementDraft, old_meter: Meter) -> None:
    _parse("new_meter_initial_reading", draft.new_meter_initial_reading, "initial reading")


STEP_VALIDATORS: Dict[Step, StepValidator] = {
    Step.OVERVIEW: always_valid,
    Step.OLD_READING: validate_old_reading,
    Step.NEW_IDENTITY: validate_identity,
    Step.CONNECTION: validate_connection,
    Step.NEW_READING: validate_new_reading,
    Step.REVIEW: always_valid,
}


class ReplacementStepValidator:
    def __init__(self, validators: Optional[Dict[Step, StepValidator]] = None):
        self.validators = dict(STEP_VALIDATORS if validators is None else validators)

    def validate(self, step, draft: ReplacementDraft, old_meter: Meter) -> None:
        self.validators[Step(step)](draft, old_meter)

    def check(self, step, draft: ReplacementDraft, old_meter: Meter) -> Optional[ValidationError]:
        try:
            self.validate(step, draft, old_meter)
        except ValidationError as exc:
            return exc
        return None

    def validate_all(self, draft: ReplacementDraft, old_meter: Meter, upto=Step.REVIEW) -> None:
        for step in Step:
            if step > upto:
                break
            self.validate(step, draft, old_meter)
