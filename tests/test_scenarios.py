"""End-to-end cascade runs through the workflow graph."""

import asyncio

import pytest
from fakes import FixedAgentSummarizer

from forkcascade.core.errors import HostError, OperationTimeout, TransientHostError
from forkcascade.engine.policy import Decision
from forkcascade.host.base import PullRequestState
from forkcascade.model.record import SyncState


def sync(orchestrator):
    return asyncio.run(orchestrator.sync())


def only_record(store):
    records = store.list(include_terminal=True)
    assert len(records) == 1
    return records[0]


def test_up_to_date(orchestrator, store, host):
    assert sync(orchestrator) == "up-to-date"
    assert store.list(include_terminal=True) == []
    assert host.fetched == ["upstream/main", "fork_upstream"]


def test_small_clean_change_is_promoted_unattended(orchestrator, store, host, ci):
    host.upstream(3, added=40, removed=10)

    assert sync(orchestrator) == "promoted"

    record = only_record(store)
    assert record.state == SyncState.PROMOTED
    assert host.branches["fork_upstream"] == host.sha
    assert host.merges[:2] == [
        ("fork_integration", "main", False),
        ("fork_integration", "fork_upstream", False),
    ]
    assert ci.refs == ["fork_integration"]

    pr = host.pulls[record.promotion_pr]
    assert (pr.base, pr.head) == ("main", record.release_branch)
    assert pr.state == PullRequestState.MERGED
    assert pr.strategy == "merge"
    assert host.issues[record.tracking_issue].state == "CLOSED"

    visited = orchestrator.state.runtime.cascade.visited
    assert "SettlePromotion" in visited
    assert "BeginResolution" not in visited
    assert [entry.to_state for entry in record.history if entry.to_state][-3:] == [
        SyncState.VALIDATED,
        SyncState.PROMOTING,
        SyncState.PROMOTED,
    ]


def test_conflict_goes_through_human_resolution(orchestrator, store, host, ci):
    host.upstream(2, added=10, removed=2)
    host.conflicts[("fork_integration", "fork_upstream")] = {"src/app.py"}

    assert sync(orchestrator) == "awaiting-resolution"

    record = only_record(store)
    assert record.state == SyncState.RESOLVING
    assert record.isolation_branch == "conflict/upstream-abc1234d-r1"
    assert {"conflict", "cascade-blocked", "human-required"} <= (
        host.issues[record.conflict_issue].labels
    )
    assert host.pulls[record.resolution_pr].state == PullRequestState.OPEN
    assert ci.refs == []

    outcome = asyncio.run(orchestrator.resolve(record.id))

    assert outcome == "awaiting-approval"
    record = store.get(record.id)
    assert record.state == SyncState.PROMOTING
    assert ci.refs == [record.isolation_branch]
    assert host.pulls[record.resolution_pr].state == PullRequestState.MERGED
    assert host.issues[record.conflict_issue].state == "CLOSED"
    assert "human-required" in host.pulls[record.promotion_pr].labels
    assert orchestrator.policy.evaluate(record).rule == "merge conflicts were resolved by hand"

    assert asyncio.run(orchestrator.settle(record.id, merged=True)) == "promoted"

    record = store.get(record.id)
    assert record.state == SyncState.PROMOTED
    assert record.past_conflict_files == {"src/app.py"}
    assert record.conflict_files == set()


def test_large_change_waits_for_approval(orchestrator, store, host, machine):
    host.upstream(40, added=1000, removed=200)

    assert sync(orchestrator) == "awaiting-approval"

    record = only_record(store)
    decision = orchestrator.policy.evaluate(record)
    assert record.state == SyncState.PROMOTING
    assert decision.decision == Decision.MANUAL
    assert decision.rule.startswith("size: 1200 lines")
    assert any(entry.to_state == SyncState.VALIDATED for entry in record.history)
    pr = host.pulls[record.promotion_pr]
    assert pr.state == PullRequestState.OPEN
    assert "human-required" in pr.labels
    assert machine.gate_holder("main").id == record.id


def test_breaking_change_waits_for_approval(orchestrator, store, host):
    host.upstream(2, added=4, removed=1, messages=["feat!: drop the v1 API", "fix: typo"])

    assert sync(orchestrator) == "awaiting-approval"
    assert orchestrator.policy.evaluate(only_record(store)).rule == (
        "breaking change marker in history"
    )


def test_stalled_resolution_is_escalated(orchestrator, store, host, clock):
    host.upstream(2, added=10, removed=2)
    host.conflicts[("fork_integration", "fork_upstream")] = {"src/app.py"}
    sync(orchestrator)

    clock.advance(hours=50)
    result = asyncio.run(orchestrator.sweep())

    record = only_record(store)
    assert record.state == SyncState.RESOLVING
    assert record.escalation_level == 1
    assert [e.record_id for e in result.escalations] == [record.id]
    assert record.id in result.report.blocked


def test_second_record_is_promoted_when_the_gate_frees(orchestrator, store, host, clock):
    host.upstream(40, added=1000, removed=200)
    assert sync(orchestrator) == "awaiting-approval"

    clock.advance(hours=1)
    host.upstream(2, added=5, removed=1, sha="fedcba9876543210")
    assert sync(orchestrator) == "queued"

    first, second = sorted(store.list(), key=lambda r: r.detected_at)
    assert second.state == SyncState.VALIDATED
    assert second.promotion_queued_at == clock()

    assert asyncio.run(orchestrator.settle(first.id, merged=True)) == "promoted"

    assert store.get(first.id).state == SyncState.PROMOTED
    second = store.get(second.id)
    assert second.state == SyncState.PROMOTED
    assert host.pulls[second.promotion_pr].state == PullRequestState.MERGED


def test_closed_promotion_fails_and_still_frees_the_gate(orchestrator, store, host, clock):
    host.upstream(40, added=1000, removed=200)
    sync(orchestrator)
    clock.advance(hours=1)
    host.upstream(2, added=5, removed=1, sha="fedcba9876543210")
    sync(orchestrator)
    first, second = sorted(store.list(), key=lambda r: r.detected_at)

    outcome = asyncio.run(orchestrator.settle(first.id, merged=False, reason="rejected"))

    assert outcome == "promoted"
    first = store.get(first.id)
    assert first.state == SyncState.FAILED
    assert first.failure_reason == "rejected"
    assert first.human_required
    assert store.get(second.id).state == SyncState.PROMOTED


def test_production_conflicting_with_staging_fails(orchestrator, store, host):
    host.upstream(2, added=10)
    host.conflicts[("fork_integration", "main")] = {"README.md"}

    assert sync(orchestrator) == "failed"

    record = only_record(store)
    assert record.state == SyncState.FAILED
    assert record.failure_reason == "production-merge-conflict"
    assert record.human_required
    assert ("fork_integration", "fork_upstream", False) not in host.merges


def test_production_first_merge_can_be_disabled(orchestrator, store, host, config):
    config.policy.sync_production_first = False
    host.upstream(2, added=10)
    host.conflicts[("fork_integration", "main")] = {"README.md"}

    assert sync(orchestrator) == "promoted"
    assert ("fork_integration", "main", False) not in host.merges


def test_merge_timeout_fails_the_record(orchestrator, store, host):
    host.upstream(2, added=10)
    host.failures["merge"] = [OperationTimeout("merge", 900)]

    assert sync(orchestrator) == "failed"
    assert only_record(store).failure_reason == "timeout:merge"


def test_validation_failures_are_retried_then_fail(orchestrator, store, host, ci):
    host.upstream(2, added=10)
    ci.outcomes = [False, False, False]

    assert sync(orchestrator) == "failed"

    record = only_record(store)
    assert record.failure_reason == "validation-failed"
    assert record.validation_attempts == 3
    assert len(ci.refs) == 3


def test_flaky_validation_passes_on_retry(orchestrator, store, host, ci):
    host.upstream(2, added=10)
    ci.outcomes = [False, True]

    assert sync(orchestrator) == "promoted"
    assert only_record(store).validation_attempts == 1


def test_validation_timeout_fails_the_record(orchestrator, store, host, ci):
    host.upstream(2, added=10)
    ci.outcomes = ["timeout"]

    assert sync(orchestrator) == "failed"
    assert only_record(store).failure_reason == "timeout:validation"


def test_checkout_hiccup_before_validation_is_retried(orchestrator, store, host, ci, sleeps):
    host.upstream(2, added=10)
    ci.outcomes = [TransientHostError("checkout", "unable to access remote")]

    assert sync(orchestrator) == "promoted"
    assert sleeps == [30]
    assert only_record(store).validation_attempts == 0


def test_checkout_failure_before_validation_fails_the_record(orchestrator, store, host, ci):
    host.upstream(2, added=10)
    ci.outcomes = [HostError("checkout", "pathspec 'fork_integration' did not match", 1)]

    assert sync(orchestrator) == "failed"

    record = only_record(store)
    assert record.failure_reason.startswith("validation-error: checkout: ")
    assert record.human_required


def test_drive_continues_a_detected_record(orchestrator, host):
    host.upstream(2, added=10)
    record = orchestrator.detector.detect()

    assert asyncio.run(orchestrator.drive(record.id)) == "promoted"
    assert asyncio.run(orchestrator.drive(record.id)) == "promoted"


@pytest.mark.parametrize(
    "conflict, expected",
    [
        (False, "awaiting-approval"),
        (True, "awaiting-resolution"),
    ],
)
def test_drive_stops_at_humans(orchestrator, host, conflict, expected):
    host.upstream(40, added=1000, removed=200)
    if conflict:
        host.conflicts[("fork_integration", "fork_upstream")] = {"src/app.py"}
    sync(orchestrator)

    assert asyncio.run(orchestrator.drive("r1")) == expected


def test_model_summary_reaches_the_issue_and_promotion_pr(state, host, ci, store, clock, sleeps):
    from forkcascade.engine.orchestrator import Orchestrator

    orchestrator = Orchestrator(
        state,
        host,
        ci,
        store,
        FixedAgentSummarizer("- Upstream adds a greeting"),
        clock=clock,
        sleep=sleeps.append,
    )
    host.upstream(2, added=10)

    assert sync(orchestrator) == "promoted"

    record = only_record(store)
    comments = host.comments[record.tracking_issue]
    assert any(comment.startswith("- Upstream adds a greeting") for comment in comments)
    assert "- Upstream adds a greeting" in host.pulls[record.promotion_pr].body
