# replacement/store.py

from __future__ import annotations

from typing import List, Protocol, Set, Tuple

from .models import DeletionImpact, Meter, ReplacementRecord, ReplacementRequest, ReplacementResult


class MeterStore(Protocol):
    """
    Persistence the replacement workflow talks to. Implementations raise
    StoreError (MeterNotFoundError for unknown ids) with a message that can
    be shown to the user as is.
    """

    def fetch_meter(self, meter_id: int) -> Meter:
        ...

    def submit_replacement(self, request: ReplacementRequest) -> ReplacementResult:
        """Archive the old meter and activate the new one, both or neither."""
        ...

    def fetch_deletion_impact(self, meter_id: int) -> DeletionImpact:
        ...

    def replacement_history(self, meter_id: int) -> List[ReplacementRecord]:
        ...

    def used_identifiers(self) -> Tuple[Set[str], Set[str]]:
        """(mqtt topics, udp data keys) of active meters."""
        ...
