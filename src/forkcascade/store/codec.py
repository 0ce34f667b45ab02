"""Encode records into issue bodies and parse them back.

An issue body is a human-readable summary followed by an HTML
comment holding the full record as JSON. The comment is invisible
in the rendered issue; the labels stay the source of truth for the
state and the human-required flag.
"""

from __future__ import annotations

import re

from pydantic import ValidationError

from forkcascade.core.config import LabelsConfig
from forkcascade.core.errors import RecordDecodeError
from forkcascade.host.base import IssueSnapshot
from forkcascade.model.record import EscalationEvent, SyncRecord, SyncState

RECORD_MARKER = "forkcascade:record"
ESCALATION_MARKER = "forkcascade:escalation"

# Older audit entries survive as comments on the issue.
HISTORY_LIMIT = 50


def _block_pattern(marker: str) -> re.Pattern:
    return re.compile(rf"<!--\s*{re.escape(marker)}\s*\n(.*?)\n\s*-->", re.DOTALL)


def embed(marker: str, readable: str, payload: str) -> str:
    # "--" cannot appear inside an HTML comment
    payload = payload.replace("--", "-\\u002d")
    return f"{readable.rstrip()}\n\n<!-- {marker}\n{payload}\n-->\n"


def extract(marker: str, body: str) -> str | None:
    match = _block_pattern(marker).search(body or "")
    if not match:
        return None
    return match.group(1).replace("-\\u002d", "--")


def record_title(record: SyncRecord) -> str:
    sha = record.short_sha() or "unknown"
    commits = record.diff_stats.commits
    return f"Upstream sync {sha}: {commits} commits from {record.source_ref}"


def encode_record(record: SyncRecord, summary: str = "") -> str:
    """Issue body for a record."""
    readable = [
        f"## Upstream sync `{record.id}`",
        "",
        f"**State:** `{record.state}`",
        f"**Detected:** {record.detected_at.isoformat(timespec='seconds')}",
    ]
    if record.failure_reason:
        readable.append(f"**Failure:** {record.failure_reason}")
    if record.escalation_level:
        readable.append(f"**Escalation level:** {record.escalation_level}")
    if summary:
        readable.extend(["", summary])
    if len(record.history) > HISTORY_LIMIT:
        record = record.model_copy(update={"history": record.history[-HISTORY_LIMIT:]})
    payload = record.model_dump_json()
    return embed(RECORD_MARKER, "\n".join(readable), payload)


def state_from_labels(issue: IssueSnapshot, labels: LabelsConfig) -> SyncState:
    found = [
        label[len(labels.state_prefix):]
        for label in issue.labels
        if label.startswith(labels.state_prefix)
    ]
    if len(found) != 1:
        raise RecordDecodeError(
            issue.number, f"expected one state label, found {sorted(found) or 'none'}"
        )
    try:
        return SyncState(found[0].upper())
    except ValueError:
        raise RecordDecodeError(issue.number, f"unknown state label {found[0]!r}") from None


def decode_record(issue: IssueSnapshot, labels: LabelsConfig) -> SyncRecord:
    """Rebuild a SyncRecord from its tracking issue.

    Raises:
        RecordDecodeError: Missing or malformed record block or labels
    """
    payload = extract(RECORD_MARKER, issue.body)
    if payload is None:
        raise RecordDecodeError(issue.number, "no record block in issue body")

    state = state_from_labels(issue, labels)
    try:
        data = SyncRecord.model_validate_json(payload).model_dump()
    except ValidationError as e:
        raise RecordDecodeError(issue.number, f"invalid record JSON: {e}") from e

    # Labels win over the embedded JSON.
    if data["state"] != state:
        if not state.holds_conflicts and data["conflict_files"]:
            data["past_conflict_files"] |= data["conflict_files"]
            data["conflict_files"] = set()
        data["state"] = state
    data["human_required"] = labels.human_required in issue.labels
    data["tracking_issue"] = issue.number
    data["id"] = data["id"] or str(issue.number)

    try:
        return SyncRecord.model_validate(data)
    except ValidationError as e:
        raise RecordDecodeError(issue.number, f"labels contradict record: {e}") from e


def encode_escalation(event: EscalationEvent) -> str:
    readable = [
        f"## Escalation: {event.reason}",
        "",
        f"**Record:** `{event.record_id or 'n/a'}`",
        f"**State:** `{event.state or 'n/a'}`",
        f"**Level:** {event.level}",
        "",
        event.detail,
    ]
    return embed(ESCALATION_MARKER, "\n".join(readable), event.model_dump_json())


def decode_escalation(issue: IssueSnapshot) -> EscalationEvent:
    payload = extract(ESCALATION_MARKER, issue.body)
    if payload is None:
        raise RecordDecodeError(issue.number, "no escalation block in issue body")
    try:
        event = EscalationEvent.model_validate_json(payload)
    except ValidationError as e:
        raise RecordDecodeError(issue.number, f"invalid escalation JSON: {e}") from e
    return event.model_copy(update={"issue": issue.number})
