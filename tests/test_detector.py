"""Tests for the sync detector."""

import asyncio

from forkcascade.core.errors import HostError, OperationTimeout, TransientHostError
from forkcascade.model.record import SyncState


def test_up_to_date_mirror_opens_nothing(orchestrator, host, store):
    host.upstream(0)

    assert orchestrator.detector.detect() is None
    assert store.list(include_terminal=True) == []
    assert "force_update" not in host.calls
    assert host.fetched == ["upstream/main", "fork_upstream"]


def test_new_commits_open_a_detected_record(orchestrator, host):
    host.upstream(
        5,
        added=30,
        removed=10,
        messages=["feat: one\n\nbody", "fix: two", "fix: three", "docs: four", "test: five"],
    )

    record = orchestrator.detector.detect()

    assert record.state == SyncState.DETECTED
    assert (record.source_ref, record.target_ref, record.production_ref) == (
        "fork_upstream",
        "fork_integration",
        "main",
    )
    assert record.diff_stats.commits == 5
    assert record.diff_stats.lines_changed == 40
    assert not record.breaking_change
    assert record.commit_subjects[0] == "feat: one"
    assert record.upstream_sha == host.sha
    assert host.branches["fork_upstream"] == host.sha


def test_breaking_marker_is_detected(orchestrator, host):
    host.upstream(2, added=5, messages=["fix: small", "feat(api)!: remove v1"])

    assert orchestrator.detector.detect().breaking_change


def test_commit_subjects_are_capped(orchestrator, host):
    host.upstream(30, added=30)

    record = orchestrator.detector.detect()

    assert len(record.commit_subjects) == 20
    assert record.diff_stats.commits == 30


def test_change_summary_posted_on_tracking_issue(orchestrator, host):
    host.upstream(3, added=12, messages=["fix: a", "fix: b", "fix: c"])
    record = orchestrator.detector.detect()

    asyncio.run(orchestrator.machine.describe(record))

    summary = host.comments[record.tracking_issue][-1]
    assert "**Size:** 3 commits" in summary
    assert "- fix: b" in summary


def test_transient_fetch_failures_are_retried(orchestrator, host, sleeps):
    host.upstream(1, added=1)
    host.failures["fetch"] = [
        TransientHostError("fetch", "Could not resolve host: github.com"),
        TransientHostError("fetch", "Could not resolve host: github.com"),
    ]

    record = orchestrator.detector.detect()

    assert record.state == SyncState.DETECTED
    assert sleeps == [30, 60]


def test_exhausted_fetch_fails_a_fresh_record(orchestrator, host, sleeps):
    host.failures["fetch"] = [
        TransientHostError("fetch", "connection reset by peer") for _ in range(4)
    ]

    record = orchestrator.detector.detect()

    assert sleeps == [30, 60, 120]
    assert record.state == SyncState.FAILED
    assert record.failure_reason.startswith("fetch-failed: ")
    assert "connection reset" in record.failure_reason
    assert record.human_required


def test_auth_failures_on_fetch_are_retried(orchestrator, host, sleeps):
    host.upstream(1, added=1)
    host.failures["fetch"] = [
        HostError("fetch", "git@github.com: Permission denied (publickey).", 128)
    ]

    record = orchestrator.detector.detect()

    assert record.state == SyncState.DETECTED
    assert sleeps == [30]


def test_persistent_auth_failure_fails_a_fresh_record(orchestrator, host, store, sleeps):
    host.failures["fetch"] = [
        HostError("fetch", "git@github.com: Permission denied (publickey).", 128)
        for _ in range(4)
    ]

    record = orchestrator.detector.detect()

    assert sleeps == [30, 60, 120]
    assert record.state == SyncState.FAILED
    assert record.failure_reason.startswith("fetch-failed: ")
    assert "Permission denied" in record.failure_reason
    assert [r.id for r in store.list(include_terminal=True)] == [record.id]


def test_fetch_timeout_fails_a_fresh_record(orchestrator, host, sleeps):
    host.failures["fetch"] = [OperationTimeout("fetch", 600) for _ in range(4)]

    record = orchestrator.detector.detect()

    assert record.state == SyncState.FAILED
    assert record.failure_reason == "fetch-failed: fetch timed out after 600s"


def test_comparison_error_fails_a_fresh_record(orchestrator, host, sleeps):
    host.upstream(2, added=4)
    host.failures["count_commits"] = [HostError("count", "bad revision")]

    record = orchestrator.detector.detect()

    assert sleeps == []
    assert record.state == SyncState.FAILED
    assert record.failure_reason == "compare-failed: count: bad revision"


def test_mirror_update_failure_fails_a_fresh_record(orchestrator, host, sleeps):
    host.upstream(2, added=4)
    host.failures["force_update"] = [
        TransientHostError("push", "HTTP 503") for _ in range(4)
    ]

    record = orchestrator.detector.detect()

    assert record.state == SyncState.FAILED
    assert record.failure_reason.startswith("mirror-update-failed: ")
    assert record.upstream_sha == host.sha
    assert "fork_upstream" not in host.branches
