"""Tests for the conflict resolver coordinator."""

import pytest

from forkcascade.core.errors import HostError, OperationTimeout, TransientHostError
from forkcascade.host.base import PullRequestState
from forkcascade.model.record import EscalationReason, SyncRecord, SyncState, Trigger


@pytest.fixture
def conflicted(machine, clock):
    record = machine.open_record(
        SyncRecord(
            source_ref="fork_upstream",
            target_ref="fork_integration",
            production_ref="main",
            upstream_sha="0123456789abcdef",
            detected_at=clock(),
            last_transition_at=clock(),
        )
    )
    machine.fire(record.id, Trigger.ATTEMPT_MERGE)
    return machine.fire(
        record.id, Trigger.MERGE_CONFLICT, conflict_files={"src/app.py"}
    ).record


@pytest.fixture
def resolver(orchestrator):
    return orchestrator.resolver


def test_begin_resolution_opens_pull_request(resolver, host, conflicted):
    transition = resolver.begin_resolution(conflicted)

    record = transition.record
    assert record.state == SyncState.RESOLVING
    assert host.merges[-1] == (conflicted.isolation_branch, "fork_upstream", True)
    pr = host.pulls[record.resolution_pr]
    assert (pr.base, pr.head) == ("fork_integration", conflicted.isolation_branch)
    assert {"conflict", "human-required"} <= pr.labels
    assert f"Closes #{conflicted.conflict_issue}" in pr.body


def test_begin_resolution_is_idempotent(resolver, host, conflicted):
    resolver.begin_resolution(conflicted)
    again = resolver.begin_resolution(conflicted)

    assert not again.applied
    assert len(host.pulls) == 1
    assert host.calls.count("merge") == 1


def test_merge_timeout_on_isolation_branch_fails_record(resolver, host, conflicted):
    host.failures["merge"] = [OperationTimeout("merge", 900)]

    record = resolver.begin_resolution(conflicted).record

    assert record.state == SyncState.FAILED
    assert record.failure_reason == "timeout:merge"
    assert record.past_conflict_files == {"src/app.py"}


def test_passing_resolution_is_merged_and_validated(resolver, host, ci, conflicted):
    resolving = resolver.begin_resolution(conflicted).record

    record = resolver.validate_resolution(resolving).record

    assert ci.refs == [conflicted.isolation_branch]
    assert record.state == SyncState.VALIDATED
    assert record.was_conflicted
    assert host.pulls[resolving.resolution_pr].state == PullRequestState.MERGED
    assert host.issues[conflicted.conflict_issue].state == "CLOSED"


def test_resolution_merged_by_a_human_is_not_merged_again(resolver, host, conflicted):
    resolving = resolver.begin_resolution(conflicted).record
    host.pulls[resolving.resolution_pr].state = PullRequestState.MERGED

    record = resolver.validate_resolution(resolving, branch="fork_integration").record

    assert record.state == SyncState.VALIDATED
    assert "merge_pull_request" not in host.calls


def test_failed_resolution_counts_attempts(resolver, ci, conflicted):
    resolving = resolver.begin_resolution(conflicted).record
    ci.outcomes = [False]

    transition = resolver.validate_resolution(resolving)

    assert not transition.applied
    assert transition.record.state == SyncState.RESOLVING
    assert transition.record.validation_attempts == 1


def test_repeated_failures_abandon_and_escalate(resolver, machine, ci, conflicted):
    resolving = resolver.begin_resolution(conflicted).record
    ci.outcomes = [False, False, False]

    for _ in range(3):
        transition = resolver.validate_resolution(resolving)

    record = transition.record
    assert record.state == SyncState.ABANDONED
    assert record.validation_attempts == 3
    events = machine.store.escalations(record.id)
    assert [e.reason for e in events] == [EscalationReason.VALIDATION_EXHAUSTED]
    assert "failed validation 3 times" in events[0].detail


def test_validation_timeout_fails_record(resolver, ci, conflicted):
    resolving = resolver.begin_resolution(conflicted).record
    ci.outcomes = ["timeout"]

    record = resolver.validate_resolution(resolving).record

    assert record.state == SyncState.FAILED
    assert record.failure_reason == "timeout:validation"


def test_validating_a_settled_record_is_a_noop(resolver, ci, conflicted):
    resolving = resolver.begin_resolution(conflicted).record
    resolver.validate_resolution(resolving)

    again = resolver.validate_resolution(resolving)

    assert not again.applied
    assert again.record.state == SyncState.VALIDATED
    assert len(ci.refs) == 1


def test_unreachable_ci_fails_resolution_after_retries(resolver, ci, sleeps, conflicted):
    resolving = resolver.begin_resolution(conflicted).record
    ci.outcomes = [TransientHostError("checkout", "HTTP 502") for _ in range(4)]

    record = resolver.validate_resolution(resolving).record

    assert sleeps == [30, 60, 120]
    assert record.state == SyncState.FAILED
    assert record.failure_reason.startswith("validation-error: ")
    assert record.validation_attempts == 0


def test_checkout_error_fails_resolution(resolver, ci, conflicted):
    resolving = resolver.begin_resolution(conflicted).record
    ci.outcomes = [HostError("checkout", "reference is not a tree", 128)]

    record = resolver.validate_resolution(resolving).record

    assert record.state == SyncState.FAILED
    assert record.failure_reason == "validation-error: checkout: reference is not a tree"
