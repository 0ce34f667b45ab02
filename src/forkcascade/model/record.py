"""SyncRecord, its lifecycle vocabulary, and escalation events."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(UTC)


class SyncState(StrEnum):
    """Lifecycle states of a reconciliation effort."""

    DETECTED = "DETECTED"
    STAGING = "STAGING"
    CONFLICTED = "CONFLICTED"
    RESOLVING = "RESOLVING"
    VALIDATED = "VALIDATED"
    PROMOTING = "PROMOTING"
    PROMOTED = "PROMOTED"
    FAILED = "FAILED"
    ABANDONED = "ABANDONED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def holds_conflicts(self) -> bool:
        return self in (SyncState.CONFLICTED, SyncState.RESOLVING)


TERMINAL_STATES = frozenset({SyncState.PROMOTED, SyncState.FAILED, SyncState.ABANDONED})


class Trigger(StrEnum):
    """Transition events accepted by the state machine."""

    ATTEMPT_MERGE = "attempt_merge"
    MERGE_CLEAN = "merge_clean"
    MERGE_CONFLICT = "merge_conflict"
    RESOLUTION_STARTED = "resolution_started"
    RESOLUTION_VALIDATED = "resolution_validated"
    RESOLUTION_ABANDONED = "resolution_abandoned"
    PROMOTE = "promote"
    PROMOTE_SUCCESS = "promote_success"
    PROMOTE_FAILURE = "promote_failure"
    FATAL_ERROR = "fatal_error"


class DiffStats(BaseModel):
    """Size of an upstream change batch."""

    commits: int = 0
    files_changed: int = 0
    lines_added: int = 0
    lines_removed: int = 0

    @property
    def lines_changed(self) -> int:
        return self.lines_added + self.lines_removed


class AuditEntry(BaseModel):
    """One line of a record's audit trail."""

    at: datetime = Field(default_factory=utcnow)
    trigger: Trigger | None = None
    from_state: SyncState | None = None
    to_state: SyncState | None = None
    detail: str = ""


class SyncRecord(BaseModel):
    """One detected upstream change batch and its reconciliation.

    Only the BranchStateMachine writes records; everything else asks
    it for transitions.
    """

    id: str = ""
    source_ref: str
    target_ref: str
    production_ref: str
    upstream_sha: str = ""
    detected_at: datetime = Field(default_factory=utcnow)
    last_transition_at: datetime = Field(default_factory=utcnow)
    diff_stats: DiffStats = Field(default_factory=DiffStats)
    state: SyncState = SyncState.DETECTED

    conflict_files: set[str] = Field(default_factory=set)
    past_conflict_files: set[str] = Field(
        default_factory=set,
        description="Conflicts this record went through and left behind",
    )
    breaking_change: bool = False
    commit_subjects: list[str] = Field(default_factory=list)

    escalation_level: int = 0
    validation_attempts: int = 0

    tracking_issue: int | None = None
    conflict_issue: int | None = None
    isolation_branch: str | None = None
    resolution_pr: int | None = None
    release_branch: str | None = None
    promotion_pr: int | None = None
    promotion_queued_at: datetime | None = None

    failure_reason: str | None = None
    human_required: bool = False
    retry_of: str | None = None
    retried_by: str | None = None

    history: list[AuditEntry] = Field(default_factory=list)
    applied_triggers: set[Trigger] = Field(
        default_factory=set,
        description="Every trigger ever applied; kept in full while history is capped",
    )

    @model_validator(mode="after")
    def _conflicts_match_state(self) -> "SyncRecord":
        if bool(self.conflict_files) != self.state.holds_conflicts:
            raise ValueError(
                f"conflict_files must be non-empty exactly in CONFLICTED/"
                f"RESOLVING (state {self.state}, "
                f"{len(self.conflict_files)} conflict files)"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def was_conflicted(self) -> bool:
        return bool(self.conflict_files or self.past_conflict_files)

    def has_seen(self, trigger: Trigger) -> bool:
        """True if trigger was applied to this record at some point."""
        return trigger in self.applied_triggers or any(
            entry.trigger == trigger for entry in self.history
        )

    def age(self, now: datetime) -> float:
        """Seconds since the last transition."""
        return (now - self.last_transition_at).total_seconds()

    def short_sha(self) -> str:
        return self.upstream_sha[:8]


class EscalationReason(StrEnum):
    SLA_BREACH = "sla_breach"
    VALIDATION_EXHAUSTED = "validation_exhausted"
    MONITOR_DEGRADED = "monitor_degraded"
    RECORD_UNREADABLE = "record_unreadable"


class EscalationEvent(BaseModel):
    """Append-only escalation log entry; never mutated."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    record_id: str | None = None
    reason: EscalationReason
    state: SyncState | None = None
    level: int = 0
    labels: tuple[str, ...] = ()
    detail: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    issue: int | None = None
