"""Health monitor: the periodic safety net over all open records.

A sweep re-derives everything from the record store and the host.
It never assumes a trigger was delivered: missed triggers are
re-published, stalled records are escalated, failed records a human
has released are retried, and a report summarizes pipeline health.
If the sweep itself cannot read state, that is escalated too.
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field

from forkcascade.core.config import Config
from forkcascade.core.errors import (
    CascadeError,
    HostError,
    MonitorDegradedError,
    RecordDecodeError,
    RetryExhausted,
)
from forkcascade.core.log import logger
from forkcascade.core.retry import retry_call
from forkcascade.engine.bus import EventBus
from forkcascade.engine.machine import BranchStateMachine
from forkcascade.host.base import PullRequestState, SourceControlHost
from forkcascade.model.events import (
    MonitorDegraded,
    PromotionRequested,
    PromotionSettled,
    ResolutionCompleted,
    SlaBreached,
    UpstreamChangeDetected,
)
from forkcascade.model.record import (
    EscalationEvent,
    EscalationReason,
    SyncRecord,
    SyncState,
)
from forkcascade.store.base import ScanResult


class HealthStatus(StrEnum):
    HEALTHY = "HEALTHY"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class HealthReport(BaseModel):
    """Pipeline health after one sweep."""

    status: HealthStatus = HealthStatus.HEALTHY
    generated_at: datetime
    counts: dict[str, int] = Field(default_factory=dict)
    blocked: list[str] = Field(default_factory=list)
    escalated: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    unreadable: list[str] = Field(default_factory=list)

    def to_markdown(self) -> str:
        lines = [
            f"## Cascade health: {self.status}",
            "",
            f"_Generated {self.generated_at.isoformat(timespec='seconds')}_",
            "",
            "| State | Records |",
            "|---|---|",
        ]
        lines.extend(f"| {state} | {count} |" for state, count in sorted(self.counts.items()))
        for title, ids in (
            ("Blocked on conflicts", self.blocked),
            ("Escalated", self.escalated),
            ("Failed, needs a human", self.failed),
            ("Unreadable tracking issues", self.unreadable),
        ):
            if ids:
                lines.extend(["", f"**{title}:** " + ", ".join(ids)])
        return "\n".join(lines)


class SweepResult(BaseModel):
    report: HealthReport
    escalations: list[EscalationEvent] = Field(default_factory=list)
    published: list[str] = Field(default_factory=list)
    retried: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class HealthMonitor:
    """Sweeps records for missed triggers and SLA breaches."""

    def __init__(
        self,
        machine: BranchStateMachine,
        host: SourceControlHost,
        bus: EventBus,
        config: Config,
        sleep=None,
    ):
        self.machine = machine
        self.store = machine.store
        self.host = host
        self.bus = bus
        self.config = config
        self.sleep = sleep

    @property
    def fallback_log(self) -> Path:
        """Where escalations go when the host cannot take them."""
        return self.config.log_root / "escalations.jsonl"

    def _retry(self, fn, *args, description: str):
        retry = self.config.retry
        kwargs = {"sleep": self.sleep} if self.sleep else {}
        return retry_call(
            fn,
            *args,
            attempts=retry.attempts,
            base_delay=retry.base_delay,
            factor=retry.factor,
            retry_on=(HostError,),
            description=description,
            **kwargs,
        )

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        """Run one monitoring pass.

        A failure on one record is noted on it and collected in
        SweepResult.errors; the remaining records are still swept.

        Raises:
            MonitorDegradedError: If records could not be listed even
                after retries; a monitor_degraded escalation is raised
                first.
        """
        now = now or self.machine.clock()
        with logger.span("health monitor sweep"):
            scan = await self._scan(now)

            result = SweepResult(report=HealthReport(generated_at=now))
            for error in scan.unreadable:
                try:
                    self._unreadable(error, result, now)
                except CascadeError as e:
                    self._failed_step(None, f"escalate unreadable issue {error.issue}", e, result)

            live = sorted(
                (record for record in scan.records if not record.is_terminal),
                key=lambda r: (r.promotion_queued_at or r.last_transition_at),
            )
            for record in live:
                record = await self._reconcile(record, result)
                if record.is_terminal:
                    continue
                try:
                    await self._check_sla(record, now, result)
                except CascadeError as e:
                    self._failed_step(record.id, "escalate", e, result)

            for record in scan.records:
                if not self._releasable(record):
                    continue
                try:
                    fresh = self.machine.open_retry(record.id)
                    if fresh is not None:
                        result.retried.append(fresh.id)
                        await self._publish(UpstreamChangeDetected(record_id=fresh.id), result)
                except CascadeError as e:
                    self._failed_step(record.id, "retry", e, result)

            final = await self._scan(now)
            result.report = self._report(now, final.records, result)
            logger.info(
                f"Sweep finished: {result.report.status}",
                records=len(scan.records),
                escalations=len(result.escalations),
                published=len(result.published),
                errors=len(result.errors),
            )
            return result

    # ------------------------------------------------------------------

    async def _scan(self, now: datetime) -> ScanResult:
        try:
            return self._retry(self.store.scan, True, description="list records")
        except RetryExhausted as e:
            await self._degraded(str(e), now)
            raise MonitorDegradedError(str(e)) from e

    def _failed_step(
        self, record_id: str | None, step: str, error: Exception, result: SweepResult
    ) -> None:
        """Note a failed sweep step on its record and carry on."""
        if record_id is None:
            message = f"Monitor could not {step}: {error}"
        else:
            message = f"Monitor could not {step} record {record_id}: {error}"
        logger.warn(message, record_id=record_id)
        result.errors.append(message)
        if record_id is None:
            return
        try:
            self.machine.note(record_id, message)
        except CascadeError as e:
            logger.warn(
                "Monitor error could not be noted on the record",
                record_id=record_id,
                error=str(e),
            )

    async def _publish(self, event, result: SweepResult) -> None:
        if await self.bus.publish(event):
            result.published.append(event.dedupe_key)

    async def _reconcile(self, record: SyncRecord, result: SweepResult) -> SyncRecord:
        """Compare the record with external state; re-publish missed triggers."""
        try:
            if record.state in (SyncState.CONFLICTED, SyncState.PROMOTING):
                record = self.machine.complete_entry(record.id)

            if record.state == SyncState.PROMOTING and record.promotion_pr is not None:
                pr = self.host.pull_request_state(record.promotion_pr)
                if pr == PullRequestState.MERGED:
                    await self._publish(PromotionSettled(record_id=record.id, merged=True), result)
                elif pr == PullRequestState.CLOSED:
                    await self._publish(
                        PromotionSettled(
                            record_id=record.id, merged=False, reason="promotion-pr-closed"
                        ),
                        result,
                    )

            elif record.state == SyncState.RESOLVING and record.resolution_pr is not None:
                pr = self.host.pull_request_state(record.resolution_pr)
                if pr == PullRequestState.MERGED:
                    await self._publish(
                        ResolutionCompleted(
                            record_id=record.id,
                            branch=record.target_ref,
                            attempt=record.validation_attempts,
                        ),
                        result,
                    )

            elif record.state in (SyncState.DETECTED, SyncState.STAGING) or (
                record.state == SyncState.CONFLICTED and record.resolution_pr is None
            ):
                await self._publish(UpstreamChangeDetected(record_id=record.id), result)

            elif record.state == SyncState.VALIDATED:
                if self.machine.gate_holder(record.production_ref) is None:
                    await self._publish(PromotionRequested(record_id=record.id), result)

        except CascadeError as e:
            self._failed_step(record.id, "reconcile", e, result)

        try:
            return self.store.get(record.id)
        except CascadeError as e:
            self._failed_step(record.id, "re-read", e, result)
            return record

    async def _check_sla(self, record: SyncRecord, now: datetime, result: SweepResult) -> None:
        limit = self.config.sla.limit_seconds(record.state)
        if limit is None:
            return
        age = record.age(now)
        if age <= limit * (record.escalation_level + 1):
            return

        hours = age / 3600
        event = self.machine.escalate(
            record.id,
            EscalationReason.SLA_BREACH,
            (
                f"Record has been {record.state} for {hours:.1f}h "
                f"(SLA {limit / 3600:g}h)."
            ),
        )
        result.escalations.append(event)
        await self._publish(
            SlaBreached(record_id=record.id, state=record.state, level=event.level),
            result,
        )

    def _releasable(self, record: SyncRecord) -> bool:
        """FAILED, the human-required flag cleared, never retried."""
        return (
            record.state == SyncState.FAILED
            and not record.human_required
            and record.retried_by is None
        )

    def _unreadable(self, error: RecordDecodeError, result: SweepResult, now: datetime) -> None:
        result.report.unreadable.append(f"#{error.issue}")
        prefix = f"issue {error.issue}:"
        known = any(
            event.reason == EscalationReason.RECORD_UNREADABLE and event.detail.startswith(prefix)
            for event in self.store.escalations()
        )
        if known:
            return
        labels = self.config.labels
        event = self.store.append_escalation(
            EscalationEvent(
                reason=EscalationReason.RECORD_UNREADABLE,
                labels=(labels.escalation, labels.escalated),
                detail=str(error),
                created_at=now,
            )
        )
        result.escalations.append(event)

    async def _degraded(self, reason: str, now: datetime) -> None:
        labels = self.config.labels
        event = EscalationEvent(
            reason=EscalationReason.MONITOR_DEGRADED,
            level=self.config.sla.high_priority_level,
            labels=(labels.escalation, labels.escalated, labels.high_priority),
            detail=f"Health monitor could not read pipeline state: {reason}",
            created_at=now,
        )
        logger.error(event.detail)
        try:
            self.store.append_escalation(event)
        except CascadeError as e:
            self._write_fallback(event, e)
        await self.bus.publish(MonitorDegraded(reason=reason))

    def _write_fallback(self, event: EscalationEvent, error: Exception) -> None:
        path = self.fallback_log
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event.model_dump(mode="json")) + "\n")
        logger.error(
            f"Escalation could not be filed on the host; appended to {path}",
            error=str(error),
        )

    def _report(
        self, now: datetime, records: list[SyncRecord], result: SweepResult
    ) -> HealthReport:
        report = result.report
        report.generated_at = now
        counts: dict[str, int] = {}
        for record in records:
            counts[str(record.state)] = counts.get(str(record.state), 0) + 1
            if record.state.holds_conflicts:
                report.blocked.append(record.id)
            if record.escalation_level and not record.is_terminal:
                report.escalated.append(record.id)
            if record.is_terminal and record.human_required:
                report.failed.append(record.id)
        report.counts = counts

        if report.escalated or report.unreadable or result.escalations:
            report.status = HealthStatus.CRITICAL
        elif report.blocked or report.failed or result.errors:
            report.status = HealthStatus.WARNING
        else:
            report.status = HealthStatus.HEALTHY
        return report
