"""RecordStore backed by labelled issues on the hosting platform.

Each record is one tracking issue. The `cascade-state:*` label is the
authoritative state, the human-required label is the authoritative
flag, and the rest of the record lives as JSON in the issue body.
Every read lists or fetches issues again; the in-memory record is a
projection of the host, never a cache of it.
"""

from __future__ import annotations

from forkcascade.core.config import LabelsConfig
from forkcascade.core.errors import RecordDecodeError, RecordNotFound
from forkcascade.core.log import logger
from forkcascade.host.base import SourceControlHost
from forkcascade.model.record import EscalationEvent, SyncRecord, SyncState
from forkcascade.store import codec
from forkcascade.store.base import ScanResult


class IssueRecordStore:
    """Tracking issues as the record database."""

    def __init__(
        self,
        host: SourceControlHost,
        labels: LabelsConfig,
        max_body_chars: int = 50000,
    ):
        self.host = host
        self.labels = labels
        self.max_body_chars = max_body_chars

    def _state_labels(self) -> set[str]:
        return {self.labels.state_label(state) for state in SyncState}

    def _body(self, record: SyncRecord, summary: str) -> str:
        body = codec.encode_record(record, summary)
        overflow = len(body) - self.max_body_chars
        if overflow > 0 and summary:
            summary = summary[: max(0, len(summary) - overflow - 32)] + "\n\n_(truncated)_"
            body = codec.encode_record(record, summary)
        return body

    def create(self, record: SyncRecord) -> SyncRecord:
        """Open the tracking issue; its number becomes the record id."""
        labels = [self.labels.tracking, self.labels.state_label(record.state)]
        number = self.host.create_issue(
            codec.record_title(record),
            codec.encode_record(record),
            labels,
        )
        record = record.model_copy(update={"id": str(number), "tracking_issue": number})
        self.host.update_issue_body(number, self._body(record, ""))
        logger.debug(f"Created tracking issue #{number}", record_id=record.id)
        return record

    def get(self, record_id: str) -> SyncRecord:
        try:
            issue = self.host.get_issue(int(record_id))
        except ValueError:
            raise RecordNotFound(record_id) from None
        if self.labels.tracking not in issue.labels:
            raise RecordNotFound(record_id)
        return codec.decode_record(issue, self.labels)

    def save(self, record: SyncRecord, summary: str = "") -> None:
        """Write the body, then move labels to match the record."""
        number = record.tracking_issue
        if number is None:
            raise RecordNotFound(record.id)
        issue = self.host.get_issue(number)
        self.host.update_issue_body(number, self._body(record, summary))

        wanted = {self.labels.state_label(record.state)}
        if record.human_required:
            wanted.add(self.labels.human_required)
        if record.state == SyncState.FAILED:
            wanted.add(self.labels.failed)

        managed = self._state_labels() | {self.labels.human_required, self.labels.failed}
        stale = (issue.labels & managed) - wanted
        missing = wanted - issue.labels
        # Add before removing so the issue is never without a state label.
        if missing:
            self.host.add_labels(number, sorted(missing))
        if stale:
            self.host.remove_labels(number, sorted(stale))

    def scan(self, include_terminal: bool = False) -> ScanResult:
        """Decode every open tracking issue.

        Closing a tracking issue archives its record: promoted records
        are closed automatically, failed ones when a human is done.
        """
        result = ScanResult()
        for issue in self.host.list_issues([self.labels.tracking], state="open"):
            try:
                record = codec.decode_record(issue, self.labels)
            except RecordDecodeError as e:
                logger.warn(str(e), issue=issue.number)
                result.unreadable.append(e)
                continue
            if include_terminal or not record.is_terminal:
                result.records.append(record)
        return result

    def list(self, include_terminal: bool = False) -> list[SyncRecord]:
        return self.scan(include_terminal).records

    def append_escalation(self, event: EscalationEvent) -> EscalationEvent:
        title = f"Escalation ({event.reason}): " + (
            f"record {event.record_id} in {event.state}"
            if event.record_id
            else "cascade monitor"
        )
        labels = list(dict.fromkeys([self.labels.escalation, *event.labels]))
        number = self.host.create_issue(title, codec.encode_escalation(event), labels)
        return event.model_copy(update={"issue": number})

    def escalations(self, record_id: str | None = None) -> list[EscalationEvent]:
        events = []
        for issue in self.host.list_issues([self.labels.escalation], state="all"):
            try:
                event = codec.decode_escalation(issue)
            except RecordDecodeError as e:
                logger.debug(str(e), issue=issue.number)
                continue
            if record_id is None or event.record_id == record_id:
                events.append(event)
        return events
