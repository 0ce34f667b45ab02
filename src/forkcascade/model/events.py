"""Named events exchanged between triggers and consumers.

External payloads (webhook bodies, CLI arguments, monitor findings)
are parsed into this tagged union at the boundary; nothing deeper
in the orchestrator looks at raw text.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter

from forkcascade.model.record import SyncState


class _Event(BaseModel):
    @property
    def dedupe_key(self) -> str:
        raise NotImplementedError


class UpstreamChangeDetected(_Event):
    kind: Literal["upstream_change_detected"] = "upstream_change_detected"
    record_id: str

    @property
    def dedupe_key(self) -> str:
        return f"{self.kind}:{self.record_id}"


class ResolutionCompleted(_Event):
    kind: Literal["resolution_completed"] = "resolution_completed"
    record_id: str
    branch: str | None = None
    attempt: int = 0

    @property
    def dedupe_key(self) -> str:
        return f"{self.kind}:{self.record_id}:{self.branch}:{self.attempt}"


class PromotionSettled(_Event):
    kind: Literal["promotion_settled"] = "promotion_settled"
    record_id: str
    merged: bool
    reason: str | None = None

    @property
    def dedupe_key(self) -> str:
        return f"{self.kind}:{self.record_id}"


class PromotionRequested(_Event):
    kind: Literal["promotion_requested"] = "promotion_requested"
    record_id: str

    @property
    def dedupe_key(self) -> str:
        return f"{self.kind}:{self.record_id}"


class SlaBreached(_Event):
    kind: Literal["sla_breached"] = "sla_breached"
    record_id: str
    state: SyncState
    level: int

    @property
    def dedupe_key(self) -> str:
        return f"{self.kind}:{self.record_id}:{self.level}"


class MonitorDegraded(_Event):
    kind: Literal["monitor_degraded"] = "monitor_degraded"
    reason: str

    @property
    def dedupe_key(self) -> str:
        return f"{self.kind}:{self.reason}"


CascadeEvent = Annotated[
    UpstreamChangeDetected
    | ResolutionCompleted
    | PromotionSettled
    | PromotionRequested
    | SlaBreached
    | MonitorDegraded,
    Field(discriminator="kind"),
]

_adapter = TypeAdapter(CascadeEvent)


def parse_event(payload: dict | str | bytes) -> CascadeEvent:
    """Parse a JSON string or dict into a concrete event.

    Raises:
        pydantic.ValidationError: For unknown kinds or bad fields
    """
    if isinstance(payload, (str, bytes)):
        return _adapter.validate_json(payload)
    return _adapter.validate_python(payload)
