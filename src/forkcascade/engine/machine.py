"""Branch state machine: the only writer of SyncRecords.

Every other component asks for a transition through fire() or one
of the narrow mutation methods below. The machine validates the
trigger against the transition table, updates the record, runs the
entry action of the new state, persists the record and leaves a
comment on the tracking issue.

Triggers are idempotent. A trigger that is not legal from the
current state but was applied to the record before is a
redelivery and does nothing; a trigger that was never legal is a
caller bug and raises IllegalTransition.
"""

from __future__ import annotations

import fcntl
import re
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel

from forkcascade.core.config import Config
from forkcascade.core.errors import CascadeError, IllegalTransition
from forkcascade.core.log import logger
from forkcascade.host.base import SourceControlHost, Summarizer
from forkcascade.host.summary import describe_change, template_summary
from forkcascade.model.record import (
    AuditEntry,
    EscalationEvent,
    EscalationReason,
    SyncRecord,
    SyncState,
    Trigger,
    utcnow,
)
from forkcascade.store.base import RecordStore

S = SyncState
T = Trigger

TRANSITIONS: dict[tuple[SyncState, Trigger], SyncState] = {
    (S.DETECTED, T.ATTEMPT_MERGE): S.STAGING,
    (S.STAGING, T.MERGE_CLEAN): S.VALIDATED,
    (S.STAGING, T.MERGE_CONFLICT): S.CONFLICTED,
    (S.CONFLICTED, T.RESOLUTION_STARTED): S.RESOLVING,
    (S.RESOLVING, T.RESOLUTION_VALIDATED): S.VALIDATED,
    (S.RESOLVING, T.RESOLUTION_ABANDONED): S.ABANDONED,
    (S.VALIDATED, T.PROMOTE): S.PROMOTING,
    (S.PROMOTING, T.PROMOTE_SUCCESS): S.PROMOTED,
    (S.PROMOTING, T.PROMOTE_FAILURE): S.FAILED,
}

# Triggers that can end a promotion take the production gate lock.
GATE_TRIGGERS = frozenset({T.PROMOTE, T.PROMOTE_SUCCESS, T.PROMOTE_FAILURE, T.FATAL_ERROR})


def target_state(state: SyncState, trigger: Trigger) -> SyncState | None:
    """State reached by trigger from state, or None if illegal."""
    if trigger == T.FATAL_ERROR:
        return None if state.is_terminal else S.FAILED
    return TRANSITIONS.get((state, trigger))


class Transition(BaseModel):
    """What fire() did."""

    record: SyncRecord
    applied: bool
    queued: bool = False
    next_record_id: str | None = None

    @property
    def state(self) -> SyncState:
        return self.record.state


class GateLock:
    """Production gate mutex shared by threads and by processes on this host.

    Reentrant within a thread. The first acquisition also takes an
    exclusive flock on path, so a second forkcascade process working
    the same production ref waits for the gate too.
    """

    def __init__(self, path: Path):
        self.path = path
        self._thread_lock = threading.RLock()
        self._depth = 0
        self._handle = None

    def __enter__(self) -> GateLock:
        self._thread_lock.acquire()
        if self._depth == 0:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self.path.touch(exist_ok=True)
                handle = self.path.open("r+", encoding="utf-8")
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            except OSError:
                self._thread_lock.release()
                raise
            self._handle = handle
        self._depth += 1
        return self

    def __exit__(self, *exc_info) -> None:
        self._depth -= 1
        if self._depth == 0:
            try:
                fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
            finally:
                self._handle.close()
                self._handle = None
        self._thread_lock.release()


class BranchStateMachine:
    """Authoritative lifecycle tracker for SyncRecords."""

    def __init__(
        self,
        store: RecordStore,
        host: SourceControlHost,
        config: Config,
        summarizer: Summarizer | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.host = host
        self.config = config
        self.summarizer = summarizer
        self.clock = clock
        self._locks: dict[str, threading.RLock] = {}
        self._gates: dict[str, GateLock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # locking
    # ------------------------------------------------------------------

    def _lock(self, key: str) -> threading.RLock:
        with self._locks_guard:
            return self._locks.setdefault(key, threading.RLock())

    def _record_lock(self, record_id: str) -> threading.RLock:
        return self._lock(f"record:{record_id}")

    def gate_lock_path(self, production_ref: str) -> Path:
        name = re.sub(r"[^\w.-]", "_", production_ref)
        return self.config.log_root / "locks" / f"gate-{name}.lock"

    def _gate_lock(self, production_ref: str) -> GateLock:
        with self._locks_guard:
            if production_ref not in self._gates:
                self._gates[production_ref] = GateLock(self.gate_lock_path(production_ref))
            return self._gates[production_ref]

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------

    def fire(
        self,
        record_id: str,
        trigger: Trigger | str,
        *,
        conflict_files: set[str] | None = None,
        reason: str | None = None,
        detail: str = "",
        pull_request: int | None = None,
    ) -> Transition:
        """Apply trigger to a record.

        Args:
            record_id: Record to transition
            trigger: Trigger name
            conflict_files: Required for merge_conflict
            reason: Failure reason for fatal_error/promote_failure
            detail: Free text for the audit trail and issue comment
            pull_request: Resolution PR number for resolution_started

        Raises:
            IllegalTransition: If trigger was never legal for this record
        """
        trigger = Trigger(trigger)
        if trigger == T.PROMOTE:
            return self.request_promotion(record_id)
        if trigger in GATE_TRIGGERS:
            production_ref = self.store.get(record_id).production_ref
            with self._gate_lock(production_ref), self._record_lock(record_id):
                return self._fire(record_id, trigger, conflict_files, reason, detail, pull_request)
        with self._record_lock(record_id):
            return self._fire(record_id, trigger, conflict_files, reason, detail, pull_request)

    def _fire(
        self,
        record_id: str,
        trigger: Trigger,
        conflict_files: set[str] | None,
        reason: str | None,
        detail: str,
        pull_request: int | None,
        summary: str = "",
    ) -> Transition:
        record = self.store.get(record_id)

        if record.is_terminal:
            logger.info(
                f"Ignoring '{trigger}' on terminal record {record.id}",
                record_id=record.id,
                state=record.state,
                trigger=trigger,
            )
            return Transition(record=record, applied=False)

        target = target_state(record.state, trigger)
        if target is None:
            if record.has_seen(trigger):
                logger.info(
                    f"Ignoring redelivered '{trigger}' on record {record.id}",
                    record_id=record.id,
                    state=record.state,
                    trigger=trigger,
                )
                return Transition(record=record, applied=False)
            raise IllegalTransition(record.id, record.state, trigger)

        if trigger == T.MERGE_CONFLICT and not conflict_files:
            raise IllegalTransition(
                record.id, record.state, trigger, "merge_conflict needs conflict files"
            )

        previous = record.state
        now = self.clock()
        if previous.holds_conflicts and not target.holds_conflicts:
            record.past_conflict_files |= record.conflict_files
            record.conflict_files = set()
        if trigger == T.MERGE_CONFLICT:
            record.conflict_files = set(conflict_files)
        if trigger == T.RESOLUTION_STARTED and pull_request is not None:
            record.resolution_pr = pull_request
        if trigger == T.PROMOTE:
            record.promotion_queued_at = None
        if target == S.FAILED:
            record.failure_reason = reason or detail or str(trigger)
            record.human_required = True

        record.state = target
        record.applied_triggers.add(trigger)
        record.last_transition_at = now
        record.escalation_level = 0
        record.history.append(
            AuditEntry(
                at=now,
                trigger=trigger,
                from_state=previous,
                to_state=target,
                detail=reason or detail,
            )
        )
        record = SyncRecord.model_validate(record.model_dump())

        logger.info(
            f"Record {record.id}: {previous} -> {target}",
            record_id=record.id,
            trigger=trigger,
            from_state=previous,
            to_state=target,
        )
        self._save(record)
        self._comment(record, self._transition_comment(record, previous, trigger, reason or detail))

        record = self._enter(record, summary)

        next_record_id = None
        if previous == S.PROMOTING:
            queued = self.promotion_queue(record.production_ref)
            next_record_id = queued[0].id if queued else None
        return Transition(record=record, applied=True, next_record_id=next_record_id)

    def _transition_comment(
        self, record: SyncRecord, previous: SyncState, trigger: Trigger, detail: str
    ) -> str:
        text = f"**{previous} -> {record.state}** (`{trigger}`)"
        if record.conflict_files:
            files = "\n".join(f"- `{path}`" for path in sorted(record.conflict_files))
            text += f"\n\nConflicting files:\n{files}"
        if detail:
            text += f"\n\n{detail}"
        return text

    # ------------------------------------------------------------------
    # entry actions
    # ------------------------------------------------------------------

    def _enter(self, record: SyncRecord, summary: str = "") -> SyncRecord:
        """Run the entry action of the record's current state."""
        if record.state == S.CONFLICTED:
            return self._enter_conflicted(record)
        if record.state == S.PROMOTING:
            return self._enter_promoting(record, summary)
        if record.state == S.PROMOTED:
            return self._enter_promoted(record)
        return record

    def complete_entry(self, record_id: str) -> SyncRecord:
        """Re-run a missing entry action, e.g. after a crash mid-way.

        Entry actions are guarded by the fields they fill in, so this
        never duplicates a branch, issue or pull request.
        """
        with self._record_lock(record_id):
            record = self.store.get(record_id)
            if record.state in (S.CONFLICTED, S.PROMOTING):
                return self._enter(record)
            return record

    def _enter_conflicted(self, record: SyncRecord) -> SyncRecord:
        labels = self.config.labels
        if record.isolation_branch is None:
            name = f"{self.config.git.isolation_prefix}{record.short_sha() or 'head'}-{record.id}"
            self.host.create_branch(name, record.target_ref)
            record.isolation_branch = name
            self._save(record)

        if record.conflict_issue is None:
            files = "\n".join(f"- `{path}`" for path in sorted(record.conflict_files))
            body = (
                f"Merging `{record.source_ref}` into `{record.target_ref}` "
                f"conflicts in {len(record.conflict_files)} files:\n\n{files}\n\n"
                f"Resolve on `{record.isolation_branch}` and merge the resolution "
                f"pull request into `{record.target_ref}`. Promotion of this change "
                f"to `{record.production_ref}` is blocked until then.\n\n"
                f"Tracking issue: #{record.tracking_issue}"
            )
            record.conflict_issue = self.host.create_issue(
                f"Resolve upstream merge conflicts ({record.short_sha() or record.id})",
                body,
                [labels.conflict, labels.blocked, labels.human_required],
            )
            self._save(record)
        return record

    def _enter_promoting(self, record: SyncRecord, summary: str = "") -> SyncRecord:
        """Open the release branch and promotion PR.

        summary is the change description prepared by the caller; a
        repair run without one falls back to the templated facts.
        """
        if record.release_branch is None:
            name = f"{self.config.git.release_prefix}{self.clock():%Y%m%d-%H%M%S}-{record.id}"
            self.host.create_branch(name, record.target_ref)
            record.release_branch = name
            self._save(record)

        if record.promotion_pr is None:
            body = (
                f"Promotes upstream changes from `{record.target_ref}` to "
                f"`{record.production_ref}`.\n\n"
                f"{summary or template_summary(record)}\n\n"
                f"Tracking issue: #{record.tracking_issue}"
            )
            record.promotion_pr = self.host.create_pull_request(
                record.production_ref,
                record.release_branch,
                f"Promote upstream {record.short_sha() or record.id} to {record.production_ref}",
                body,
                [self.config.labels.tracking],
            )
            self._save(record)
        return record

    def _enter_promoted(self, record: SyncRecord) -> SyncRecord:
        if record.tracking_issue is not None:
            self.host.close_issue(
                record.tracking_issue,
                f"Promoted to `{record.production_ref}` via #{record.promotion_pr}.\n\n"
                f"{template_summary(record)}",
            )
        return record

    # ------------------------------------------------------------------
    # promotion gate
    # ------------------------------------------------------------------

    def gate_holder(self, production_ref: str) -> SyncRecord | None:
        """The record currently PROMOTING into production_ref, if any."""
        for record in self.store.list():
            if record.state == S.PROMOTING and record.production_ref == production_ref:
                return record
        return None

    def promotion_queue(self, production_ref: str) -> list[SyncRecord]:
        """VALIDATED records waiting for the gate, oldest first."""
        waiting = [
            record
            for record in self.store.list()
            if record.state == S.VALIDATED
            and record.production_ref == production_ref
            and record.promotion_queued_at is not None
        ]
        return sorted(waiting, key=lambda r: r.promotion_queued_at)

    def request_promotion(self, record_id: str, summary: str = "") -> Transition:
        """Promote now if the production gate is free, otherwise queue.

        At most one record per production ref is PROMOTING at a time.
        summary goes into the promotion PR body.
        """
        production_ref = self.store.get(record_id).production_ref
        with self._gate_lock(production_ref), self._record_lock(record_id):
            record = self.store.get(record_id)
            if record.state != S.VALIDATED:
                if record.is_terminal or record.has_seen(T.PROMOTE):
                    return Transition(record=record, applied=False)
                raise IllegalTransition(
                    record.id, record.state, T.PROMOTE, "only VALIDATED records are promoted"
                )

            holder = self.gate_holder(production_ref)
            if holder is None:
                return self._fire(record.id, T.PROMOTE, None, None, "", None, summary)

            if record.promotion_queued_at is None:
                record.promotion_queued_at = self.clock()
                detail = f"Queued for promotion behind record {holder.id}"
                record.history.append(AuditEntry(at=record.promotion_queued_at, detail=detail))
                logger.info(detail, record_id=record.id, holder=holder.id)
                self._save(record)
                self._comment(record, detail)
            return Transition(record=record, applied=False, queued=True)

    # ------------------------------------------------------------------
    # other mutations
    # ------------------------------------------------------------------

    def open_record(self, record: SyncRecord) -> SyncRecord:
        """Persist a freshly detected record and open its tracking issue."""
        record = self.store.create(record)
        if record.tracking_issue is None:
            record.tracking_issue = self.host.create_issue(
                f"Upstream sync {record.short_sha() or record.id}",
                template_summary(record),
                [self.config.labels.tracking],
            )
        detail = f"Detected {record.diff_stats.commits} upstream commits"
        if record.retry_of:
            detail += f" (retry of record {record.retry_of})"
        record.history.append(
            AuditEntry(at=record.detected_at, to_state=record.state, detail=detail)
        )
        self._save(record)
        logger.info(detail, record_id=record.id, sha=record.short_sha())
        return record

    async def change_summary(self, record: SyncRecord, base: str, head: str) -> str:
        """Summary of the changes head brings over base; never raises."""
        try:
            diff = self.host.diff_text(base, head)
        except CascadeError as e:
            logger.warn("Could not read change diff", record_id=record.id, error=str(e))
            diff = ""
        return await describe_change(self.summarizer, record, diff)

    async def describe(self, record: SyncRecord) -> None:
        """Post the change summary on the tracking issue."""
        summary = await self.change_summary(record, record.target_ref, record.source_ref)
        self._comment(record, summary)

    def record_validation_failure(self, record_id: str, report: str = "") -> int:
        """Count a failed validation; returns the attempts so far."""
        with self._record_lock(record_id):
            record = self.store.get(record_id)
            record.validation_attempts += 1
            limit = self.config.policy.max_validation_attempts
            detail = f"Validation failed (attempt {record.validation_attempts}/{limit})"
            record.history.append(AuditEntry(at=self.clock(), detail=detail))
            self._save(record)
            self._comment(record, f"{detail}\n\n{report}" if report else detail)
            logger.warn(detail, record_id=record.id)
            return record.validation_attempts

    def escalate(
        self, record_id: str, reason: EscalationReason, detail: str = ""
    ) -> EscalationEvent:
        """Raise the record's escalation level and log an EscalationEvent."""
        labels = self.config.labels
        with self._record_lock(record_id):
            record = self.store.get(record_id)
            record.escalation_level += 1
            level = record.escalation_level
            event_labels = [labels.escalation, labels.escalated]
            if level >= self.config.sla.high_priority_level:
                event_labels.append(labels.high_priority)

            event = self.store.append_escalation(
                EscalationEvent(
                    record_id=record.id,
                    reason=reason,
                    state=record.state,
                    level=level,
                    labels=tuple(event_labels),
                    detail=detail,
                    created_at=self.clock(),
                )
            )
            text = f"Escalated ({reason}) to level {level}"
            if event.issue is not None:
                text += f", see #{event.issue}"
            record.history.append(AuditEntry(at=event.created_at, detail=text))
            self._save(record)
            if record.tracking_issue is not None:
                self.host.add_labels(record.tracking_issue, event_labels[1:])
            self._comment(record, f"{text}\n\n{detail}" if detail else text)
            logger.warn(text, record_id=record.id, state=record.state, level=level)
            return event

    def note(self, record_id: str, detail: str) -> None:
        """Attach a failure or remark to the record's audit trail."""
        with self._record_lock(record_id):
            record = self.store.get(record_id)
            record.history.append(AuditEntry(at=self.clock(), detail=detail))
            self._save(record)
            self._comment(record, detail)

    def open_retry(self, record_id: str) -> SyncRecord | None:
        """Open a fresh record retrying a terminal one.

        The terminal record stays untouched apart from the retried_by
        link; returns None if it is not terminal or already retried.
        """
        with self._record_lock(record_id):
            old = self.store.get(record_id)
            if not old.is_terminal or old.retried_by is not None:
                return None
            fresh = self.open_record(
                SyncRecord(
                    source_ref=old.source_ref,
                    target_ref=old.target_ref,
                    production_ref=old.production_ref,
                    upstream_sha=old.upstream_sha,
                    diff_stats=old.diff_stats,
                    breaking_change=old.breaking_change,
                    commit_subjects=old.commit_subjects,
                    detected_at=self.clock(),
                    last_transition_at=self.clock(),
                    retry_of=old.id,
                )
            )
            old.retried_by = fresh.id
            detail = f"Retried as record {fresh.id}"
            old.history.append(AuditEntry(at=self.clock(), detail=detail))
            self._save(old)
            self._comment(old, detail)
            return fresh

    # ------------------------------------------------------------------
    # persistence helpers
    # ------------------------------------------------------------------

    def _save(self, record: SyncRecord) -> None:
        self.store.save(record, template_summary(record))

    def _comment(self, record: SyncRecord, text: str) -> None:
        if record.tracking_issue is not None:
            self.host.comment_issue(record.tracking_issue, text)
