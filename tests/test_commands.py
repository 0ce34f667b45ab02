"""Tests for the CLI subcommands against in-memory collaborators."""

import asyncio

import pytest

from forkcascade.command.cascade import CascadeCommand
from forkcascade.command.event import EventCommand
from forkcascade.command.monitor import DEGRADED, MonitorCommand
from forkcascade.command.resolve import ResolveCommand
from forkcascade.command.settle import SettleCommand
from forkcascade.command.status import StatusCommand, format_age
from forkcascade.command.sync import SyncCommand, exit_code
from forkcascade.core.errors import HostError


def run(command, state):
    return asyncio.run(command.run_workflow(state))


@pytest.mark.parametrize(
    "outcome, code",
    [
        ("promoted", 0),
        ("queued", 0),
        ("awaiting-approval", 0),
        ("up-to-date", 0),
        ("failed", 1),
        ("abandoned", 1),
    ],
)
def test_exit_code(outcome, code):
    assert exit_code(outcome) == code


def test_format_age():
    assert format_age(5 * 3600) == "5.0h"
    assert format_age(30 * 60) == "0.5h"
    assert format_age(72 * 3600) == "3.0d"


def test_sync_prints_the_outcome(orchestrator, state, host, capsys):
    host.upstream(2, added=10)

    assert run(SyncCommand(), state) == 0
    assert "promoted" in capsys.readouterr().out


def test_sync_failure_exit_code(orchestrator, state, host, ci, capsys):
    host.upstream(2, added=10)
    ci.outcomes = ["timeout"]

    assert run(SyncCommand(), state) == 1


def test_cascade_command_drives_a_record(orchestrator, state, host, capsys):
    host.upstream(2, added=10)
    record = orchestrator.detector.detect()

    assert run(CascadeCommand.model_validate({"record-id": record.id}), state) == 0
    assert "promoted" in capsys.readouterr().out


def test_resolve_and_settle_commands(orchestrator, state, host, store, capsys):
    host.upstream(2, added=10)
    host.conflicts[("fork_integration", "fork_upstream")] = {"src/app.py"}
    asyncio.run(orchestrator.sync())

    assert run(ResolveCommand.model_validate({"record-id": "r1"}), state) == 0
    assert "awaiting-approval" in capsys.readouterr().out

    assert run(SettleCommand.model_validate({"record-id": "r1"}), state) == 0
    assert "promoted" in capsys.readouterr().out
    assert store.get("r1").state == "PROMOTED"

    assert run(SettleCommand.model_validate({"record-id": "r1"}), state) == 0
    assert "unchanged" in capsys.readouterr().out


def test_rejected_resolution_is_not_an_error(orchestrator, state, host, ci, capsys):
    host.upstream(2, added=10)
    host.conflicts[("fork_integration", "fork_upstream")] = {"src/app.py"}
    asyncio.run(orchestrator.sync())
    ci.outcomes = [False]

    assert run(ResolveCommand.model_validate({"record-id": "r1"}), state) == 0
    assert "resolution-rejected" in capsys.readouterr().out


def test_event_command(orchestrator, state, host, capsys):
    host.upstream(40, added=1000, removed=200)
    asyncio.run(orchestrator.sync())
    payload = '{"kind": "promotion_settled", "record_id": "r1", "merged": true}'

    assert run(EventCommand(payload=payload), state) == 0
    assert "promoted" in capsys.readouterr().out

    assert run(EventCommand(payload=payload), state) == 0
    assert "duplicate" in capsys.readouterr().out


def test_event_command_rejects_bad_payload(orchestrator, state):
    assert run(EventCommand(payload='{"kind": "nope"}'), state) == 1


def test_status_lists_open_records(orchestrator, state, host, clock, capsys):
    assert run(StatusCommand(), state) == 0
    assert "No open records." in capsys.readouterr().out

    host.upstream(40, added=1000, removed=200)
    asyncio.run(orchestrator.sync())
    clock.advance(hours=3)

    assert run(StatusCommand(), state) == 0
    out = capsys.readouterr().out
    assert "PROMOTING" in out
    assert "3.0h" in out
    assert "MANUAL" in out
    assert "size: 1200 lines" in out


def test_monitor_writes_report(orchestrator, state, tmp_path, capsys):
    report_file = tmp_path / "reports" / "health.md"

    assert run(MonitorCommand.model_validate({"report-file": str(report_file)}), state) == 0

    text = report_file.read_text()
    assert text.startswith("## Cascade health:")
    assert text.strip() in capsys.readouterr().out


def test_monitor_degraded_exit_code(orchestrator, state, store, monkeypatch):
    def unreachable(include_terminal=False):
        raise HostError("issue_list", "HTTP 503: service unavailable")

    monkeypatch.setattr(store, "scan", unreachable)

    assert run(MonitorCommand(), state) == DEGRADED
