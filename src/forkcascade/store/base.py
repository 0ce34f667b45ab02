"""RecordStore contract."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from forkcascade.core.errors import RecordDecodeError
from forkcascade.model.record import EscalationEvent, SyncRecord


class ScanResult(BaseModel):
    """Records read in one pass, plus the issues that failed to decode."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    records: list[SyncRecord] = Field(default_factory=list)
    unreadable: list[RecordDecodeError] = Field(default_factory=list)


@runtime_checkable
class RecordStore(Protocol):
    """Persistence for SyncRecords and the escalation log.

    Only the BranchStateMachine calls create/save. Reads always go
    to the backing store; nothing is cached between calls.
    """

    def create(self, record: SyncRecord) -> SyncRecord: ...

    def get(self, record_id: str) -> SyncRecord: ...

    def save(self, record: SyncRecord, summary: str = "") -> None: ...

    def scan(self, include_terminal: bool = False) -> ScanResult:
        """Live records; terminal ones too if asked. Archived records
        are never returned."""
        ...

    def list(self, include_terminal: bool = False) -> list[SyncRecord]: ...

    def append_escalation(self, event: EscalationEvent) -> EscalationEvent: ...

    def escalations(self, record_id: str | None = None) -> list[EscalationEvent]: ...
