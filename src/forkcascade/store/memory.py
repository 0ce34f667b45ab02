"""In-memory RecordStore for tests and dry runs."""

from __future__ import annotations

import itertools
import threading

from forkcascade.core.errors import RecordNotFound
from forkcascade.model.record import EscalationEvent, SyncRecord
from forkcascade.store.base import ScanResult


class MemoryRecordStore:
    """Keeps serialized copies so callers never share record objects."""

    def __init__(self):
        self._records: dict[str, str] = {}
        self._escalations: list[EscalationEvent] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def create(self, record: SyncRecord) -> SyncRecord:
        with self._lock:
            record = record.model_copy(update={"id": f"r{next(self._ids)}"})
            self._records[record.id] = record.model_dump_json()
        return record

    def get(self, record_id: str) -> SyncRecord:
        with self._lock:
            payload = self._records.get(record_id)
        if payload is None:
            raise RecordNotFound(record_id)
        return SyncRecord.model_validate_json(payload)

    def save(self, record: SyncRecord, summary: str = "") -> None:
        with self._lock:
            if record.id not in self._records:
                raise RecordNotFound(record.id)
            self._records[record.id] = record.model_dump_json()

    def scan(self, include_terminal: bool = False) -> ScanResult:
        with self._lock:
            payloads = list(self._records.values())
        records = [SyncRecord.model_validate_json(p) for p in payloads]
        if not include_terminal:
            records = [r for r in records if not r.is_terminal]
        return ScanResult(records=records)

    def list(self, include_terminal: bool = False) -> list[SyncRecord]:
        return self.scan(include_terminal).records

    def append_escalation(self, event: EscalationEvent) -> EscalationEvent:
        with self._lock:
            self._escalations.append(event)
        return event

    def escalations(self, record_id: str | None = None) -> list[EscalationEvent]:
        with self._lock:
            events = list(self._escalations)
        if record_id is None:
            return events
        return [e for e in events if e.record_id == record_id]
