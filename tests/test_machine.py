"""Tests for the branch state machine."""

import pytest
from pydantic import ValidationError

from forkcascade.core.errors import IllegalTransition
from forkcascade.engine.machine import target_state
from forkcascade.model.record import (
    EscalationReason,
    SyncRecord,
    SyncState,
    Trigger,
)


def open_record(machine, clock, **kwargs):
    fields = dict(
        source_ref="fork_upstream",
        target_ref="fork_integration",
        production_ref="main",
        upstream_sha="abc1234def5678",
        detected_at=clock(),
        last_transition_at=clock(),
    )
    fields.update(kwargs)
    return machine.open_record(SyncRecord(**fields))


def to_validated(machine, record_id):
    machine.fire(record_id, Trigger.ATTEMPT_MERGE)
    return machine.fire(record_id, Trigger.MERGE_CLEAN).record


def to_resolving(machine, record_id, files=("src/app.py",)):
    machine.fire(record_id, Trigger.ATTEMPT_MERGE)
    machine.fire(record_id, Trigger.MERGE_CONFLICT, conflict_files=set(files))
    return machine.fire(record_id, Trigger.RESOLUTION_STARTED, pull_request=99).record


def test_target_state_table():
    assert target_state(SyncState.DETECTED, Trigger.ATTEMPT_MERGE) == SyncState.STAGING
    assert target_state(SyncState.STAGING, Trigger.MERGE_CONFLICT) == SyncState.CONFLICTED
    assert target_state(SyncState.RESOLVING, Trigger.RESOLUTION_ABANDONED) == SyncState.ABANDONED
    assert target_state(SyncState.VALIDATED, Trigger.PROMOTE) == SyncState.PROMOTING
    assert target_state(SyncState.DETECTED, Trigger.MERGE_CLEAN) is None


@pytest.mark.parametrize("state", [s for s in SyncState if not s.is_terminal])
def test_fatal_error_legal_from_every_live_state(state):
    assert target_state(state, Trigger.FATAL_ERROR) == SyncState.FAILED


@pytest.mark.parametrize("state", [SyncState.PROMOTED, SyncState.FAILED, SyncState.ABANDONED])
def test_fatal_error_not_legal_from_terminal_states(state):
    assert target_state(state, Trigger.FATAL_ERROR) is None


def test_open_record_creates_tracking_issue(machine, host, clock):
    record = open_record(machine, clock)

    assert record.id == "r1"
    assert record.tracking_issue in host.issues
    assert "upstream-sync" in host.issues[record.tracking_issue].labels
    assert record.history[0].to_state == SyncState.DETECTED


def test_clean_path_updates_history_and_comments(machine, host, clock):
    record = open_record(machine, clock)
    clock.advance(hours=1)

    validated = to_validated(machine, record.id)

    assert validated.state == SyncState.VALIDATED
    assert validated.last_transition_at == clock()
    triggers = [entry.trigger for entry in validated.history if entry.trigger]
    assert triggers == [Trigger.ATTEMPT_MERGE, Trigger.MERGE_CLEAN]
    comments = host.comments[record.tracking_issue]
    assert any("DETECTED -> STAGING" in c for c in comments)
    assert any("STAGING -> VALIDATED" in c for c in comments)


def test_illegal_trigger_fails_loudly(machine, clock):
    record = open_record(machine, clock)

    with pytest.raises(IllegalTransition) as exc_info:
        machine.fire(record.id, Trigger.MERGE_CLEAN)

    assert exc_info.value.trigger == Trigger.MERGE_CLEAN
    assert machine.store.get(record.id).state == SyncState.DETECTED


def test_unknown_trigger_name_rejected(machine, clock):
    record = open_record(machine, clock)

    with pytest.raises(ValueError):
        machine.fire(record.id, "teleport")


def test_redelivered_trigger_is_a_noop(machine, host, clock):
    record = open_record(machine, clock)
    machine.fire(record.id, Trigger.ATTEMPT_MERGE)
    comments = len(host.comments[record.tracking_issue])

    again = machine.fire(record.id, Trigger.ATTEMPT_MERGE)

    assert not again.applied
    assert again.record.state == SyncState.STAGING
    assert len(host.comments[record.tracking_issue]) == comments


def test_merge_conflict_requires_files(machine, clock):
    record = open_record(machine, clock)
    machine.fire(record.id, Trigger.ATTEMPT_MERGE)

    with pytest.raises(IllegalTransition):
        machine.fire(record.id, Trigger.MERGE_CONFLICT, conflict_files=set())


def test_conflicted_entry_opens_branch_and_issue_once(machine, host, clock):
    record = open_record(machine, clock)
    machine.fire(record.id, Trigger.ATTEMPT_MERGE)

    conflicted = machine.fire(
        record.id, Trigger.MERGE_CONFLICT, conflict_files={"src/app.py", "README.md"}
    ).record
    machine.fire(record.id, Trigger.MERGE_CONFLICT, conflict_files={"src/app.py"})
    machine.complete_entry(record.id)

    assert conflicted.state == SyncState.CONFLICTED
    assert conflicted.isolation_branch == "conflict/upstream-abc1234d-r1"
    assert host.branches[conflicted.isolation_branch] == "fork_integration"
    conflict_issues = host.issues_with("conflict")
    assert len(conflict_issues) == 1
    assert {"cascade-blocked", "human-required"} <= conflict_issues[0].labels
    assert "`src/app.py`" in conflict_issues[0].body
    assert machine.store.get(record.id).conflict_issue == conflict_issues[0].number


def test_complete_entry_repairs_missing_issue(machine, host, clock):
    record = open_record(machine, clock)
    machine.fire(record.id, Trigger.ATTEMPT_MERGE)
    host.failures["create_issue"].append(RuntimeError("crashed mid-entry"))

    with pytest.raises(RuntimeError):
        machine.fire(record.id, Trigger.MERGE_CONFLICT, conflict_files={"a.py"})

    half = machine.store.get(record.id)
    assert half.state == SyncState.CONFLICTED
    assert half.isolation_branch is not None
    assert half.conflict_issue is None

    repaired = machine.complete_entry(record.id)

    assert repaired.conflict_issue is not None
    assert len(host.issues_with("conflict")) == 1
    assert host.calls.count("create_branch") == 1


def test_leaving_conflict_states_keeps_conflict_history(machine, clock):
    record = open_record(machine, clock)
    resolving = to_resolving(machine, record.id, files=("src/app.py",))
    assert resolving.conflict_files == {"src/app.py"}
    assert resolving.resolution_pr == 99

    validated = machine.fire(record.id, Trigger.RESOLUTION_VALIDATED).record

    assert validated.conflict_files == set()
    assert validated.past_conflict_files == {"src/app.py"}
    assert validated.was_conflicted


def test_conflict_files_invariant_enforced_by_model():
    with pytest.raises(ValidationError):
        SyncRecord(
            source_ref="a", target_ref="b", production_ref="c", state=SyncState.CONFLICTED
        )
    with pytest.raises(ValidationError):
        SyncRecord(
            source_ref="a",
            target_ref="b",
            production_ref="c",
            state=SyncState.VALIDATED,
            conflict_files={"x.py"},
        )


def test_fatal_error_marks_failure(machine, clock):
    record = open_record(machine, clock)
    machine.fire(record.id, Trigger.ATTEMPT_MERGE)

    failed = machine.fire(record.id, Trigger.FATAL_ERROR, reason="timeout:merge").record

    assert failed.state == SyncState.FAILED
    assert failed.failure_reason == "timeout:merge"
    assert failed.human_required
    assert failed.history[-1].detail == "timeout:merge"


@pytest.mark.parametrize("trigger", list(Trigger))
def test_terminal_records_never_change(machine, clock, trigger):
    record = open_record(machine, clock)
    machine.fire(record.id, Trigger.FATAL_ERROR, reason="boom")

    transition = machine.fire(record.id, trigger, conflict_files={"a.py"})

    assert not transition.applied
    assert machine.store.get(record.id).state == SyncState.FAILED


def test_abandoned_is_final(machine, clock):
    record = open_record(machine, clock)
    to_resolving(machine, record.id)
    machine.fire(record.id, Trigger.RESOLUTION_ABANDONED)

    machine.fire(record.id, Trigger.RESOLUTION_VALIDATED)
    machine.fire(record.id, Trigger.FATAL_ERROR)

    record = machine.store.get(record.id)
    assert record.state == SyncState.ABANDONED
    assert record.past_conflict_files == {"src/app.py"}


def test_promoting_a_non_validated_record_is_rejected(machine, clock):
    record = open_record(machine, clock)
    machine.fire(record.id, Trigger.ATTEMPT_MERGE)

    with pytest.raises(IllegalTransition):
        machine.request_promotion(record.id)
    with pytest.raises(IllegalTransition):
        machine.fire(record.id, Trigger.PROMOTE)


def test_promoting_entry_opens_release_branch_and_pr(machine, host, clock):
    record = open_record(machine, clock)
    to_validated(machine, record.id)

    promoting = machine.request_promotion(record.id).record

    assert promoting.state == SyncState.PROMOTING
    assert promoting.release_branch == "release/upstream-20250106-090000-r1"
    pr = host.pulls[promoting.promotion_pr]
    assert (pr.base, pr.head) == ("main", promoting.release_branch)
    assert f"Tracking issue: #{record.tracking_issue}" in pr.body

    again = machine.request_promotion(record.id)
    assert not again.applied
    assert len(host.pulls) == 1


def test_promoted_closes_tracking_issue(machine, host, clock):
    record = open_record(machine, clock)
    to_validated(machine, record.id)
    machine.request_promotion(record.id)

    promoted = machine.fire(record.id, Trigger.PROMOTE_SUCCESS).record

    assert promoted.state == SyncState.PROMOTED
    assert host.issues[record.tracking_issue].state == "CLOSED"
    assert "Promoted to `main`" in host.comments[record.tracking_issue][-1]


def test_escalation_levels_and_labels(machine, host, clock):
    record = open_record(machine, clock)

    first = machine.escalate(record.id, EscalationReason.SLA_BREACH, "stalled")
    second = machine.escalate(record.id, EscalationReason.SLA_BREACH, "still stalled")

    assert (first.level, second.level) == (1, 2)
    assert "high-priority" not in first.labels
    assert "high-priority" in second.labels
    assert {"cascade-escalated", "high-priority"} <= host.issues[record.tracking_issue].labels
    assert [e.level for e in machine.store.escalations(record.id)] == [1, 2]

    reset = machine.fire(record.id, Trigger.ATTEMPT_MERGE).record
    assert reset.escalation_level == 0


def test_validation_failures_are_counted_on_the_record(machine, host, clock):
    record = open_record(machine, clock)

    assert machine.record_validation_failure(record.id, "- test: failed (1)") == 1
    assert machine.record_validation_failure(record.id) == 2

    stored = machine.store.get(record.id)
    assert stored.validation_attempts == 2
    assert "Validation failed (attempt 1/3)" in host.comments[record.tracking_issue][-2]


def test_open_retry_links_records(machine, clock):
    record = open_record(machine, clock)
    assert machine.open_retry(record.id) is None

    machine.fire(record.id, Trigger.FATAL_ERROR, reason="merge-failed")
    fresh = machine.open_retry(record.id)

    assert fresh.id != record.id
    assert fresh.state == SyncState.DETECTED
    assert fresh.retry_of == record.id
    assert fresh.upstream_sha == record.upstream_sha
    old = machine.store.get(record.id)
    assert old.retried_by == fresh.id
    assert old.state == SyncState.FAILED
    assert machine.open_retry(record.id) is None
