# replacement/errors.py

from __future__ import annotations

from decimal import Decimal
from typing import Sequence, Tuple


class ReplacementError(Exception):
    """Base class for everything raised by the replacement workflow."""


class ValidationError(ReplacementError):
    """
    A step-local problem with one field of the draft. Blocks advance();
    the user corrects the field in place.
    """

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "field": self.field, "message": self.message}


class ReadingRegressionError(ValidationError):
    """The entered final reading is below the meter's recorded history."""

    def __init__(self, field: str, entered: Decimal, last_reading: Decimal):
        super().__init__(
            field,
            f"Final reading {entered} kWh is below the last recorded reading "
            f"{last_reading} kWh",
        )
        self.entered = entered
        self.last_reading = last_reading


class InvalidConnectionConfig(ValidationError):
    def __init__(
        self,
        connection_type: str,
        missing_fields: Sequence[str] = (),
        invalid_fields: Sequence[str] = (),
    ):
        self.connection_type = connection_type
        self.missing_fields: Tuple[str, ...] = tuple(missing_fields)
        self.invalid_fields: Tuple[str, ...] = tuple(invalid_fields)

        parts = []
        if self.missing_fields:
            parts.append("missing " + ", ".join(self.missing_fields))
        if self.invalid_fields:
            parts.append("invalid " + ", ".join(self.invalid_fields))
        first = (self.missing_fields + self.invalid_fields or ("new_connection_config",))[0]
        super().__init__(first, f"Incomplete {connection_type} configuration: " + "; ".join(parts))

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update(
            connection_type=self.connection_type,
            missing_fields=list(self.missing_fields),
            invalid_fields=list(self.invalid_fields),
        )
        return data


class SubmissionError(ReplacementError):
    """The store rejected or failed the replacement call. The draft is kept."""


class ConcurrentModificationError(ReplacementError):
    """The old meter changed in the store after the draft was seeded."""

    def __init__(self, meter_id: int, seeded: Decimal, current: Decimal):
        super().__init__(
            f"Meter {meter_id} last reading changed from {seeded} to {current} kWh "
            f"while the replacement was open; re-enter the final reading"
        )
        self.meter_id = meter_id
        self.seeded = seeded
        self.current = current


class WorkflowStateError(ReplacementError):
    """Action or edit not allowed in the current step."""


class WorkflowClosedError(WorkflowStateError):
    """The workflow was committed or cancelled."""


class CommitInProgressError(WorkflowStateError):
    """A submission for this workflow is still pending."""


class StoreError(Exception):
    """Raised by MeterStore implementations; the message is shown to the user."""


class MeterNotFoundError(StoreError):
    def __init__(self, meter_id: int):
        super().__init__(f"Meter {meter_id} not found")
        self.meter_id = meter_id
