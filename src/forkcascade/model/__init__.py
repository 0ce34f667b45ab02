"""Records, triggers and events."""

from forkcascade.model.events import (
    CascadeEvent,
    MonitorDegraded,
    PromotionRequested,
    PromotionSettled,
    ResolutionCompleted,
    SlaBreached,
    UpstreamChangeDetected,
    parse_event,
)
from forkcascade.model.record import (
    AuditEntry,
    DiffStats,
    EscalationEvent,
    EscalationReason,
    SyncRecord,
    SyncState,
    Trigger,
)

__all__ = [
    "AuditEntry",
    "CascadeEvent",
    "DiffStats",
    "EscalationEvent",
    "EscalationReason",
    "MonitorDegraded",
    "PromotionRequested",
    "PromotionSettled",
    "ResolutionCompleted",
    "SlaBreached",
    "SyncRecord",
    "SyncState",
    "Trigger",
    "UpstreamChangeDetected",
    "parse_event",
]
