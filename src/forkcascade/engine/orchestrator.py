"""Composition root: wires host, store and engine, runs the workflow."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from forkcascade.core.config import Config, State
from forkcascade.core.log import logger
from forkcascade.core.retry import retry_call
from forkcascade.engine.bus import EventBus
from forkcascade.engine.detector import SyncDetector
from forkcascade.engine.machine import BranchStateMachine
from forkcascade.engine.monitor import HealthMonitor, SweepResult
from forkcascade.engine.policy import PromotionPolicy
from forkcascade.engine.resolver import ConflictResolverCoordinator
from forkcascade.host.base import CIValidator, SourceControlHost, Summarizer
from forkcascade.model.events import (
    MonitorDegraded,
    PromotionRequested,
    PromotionSettled,
    ResolutionCompleted,
    SlaBreached,
    UpstreamChangeDetected,
)
from forkcascade.model.record import utcnow
from forkcascade.store.base import RecordStore


class Orchestrator:
    """Owns one instance of every component and the event wiring.

    Workflow nodes reach the components through
    state.runtime.cascade.orchestrator.
    """

    def __init__(
        self,
        state: State,
        host: SourceControlHost,
        ci: CIValidator,
        store: RecordStore,
        summarizer: Summarizer | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] | None = None,
    ):
        self.state = state
        self.config: Config = state.config
        self.host = host
        self.ci = ci
        self.store = store
        self.sleep = sleep

        self.machine = BranchStateMachine(store, host, self.config, summarizer, clock)
        self.policy = PromotionPolicy(self.config.policy.max_diff_lines)
        self.detector = SyncDetector(host, self.machine, self.config, sleep)
        self.resolver = ConflictResolverCoordinator(host, ci, self.machine, self.config, sleep)
        self.bus = EventBus()
        self.monitor = HealthMonitor(self.machine, host, self.bus, self.config, sleep)

        self.bus.subscribe(UpstreamChangeDetected, self._on_change_detected)
        self.bus.subscribe(ResolutionCompleted, self._on_resolution_completed)
        self.bus.subscribe(PromotionSettled, self._on_promotion_settled)
        self.bus.subscribe(PromotionRequested, self._on_promotion_requested)
        self.bus.subscribe(SlaBreached, self._on_sla_breached)
        self.bus.subscribe(MonitorDegraded, self._on_monitor_degraded)

        state.runtime.cascade.orchestrator = self

    @classmethod
    def from_state(cls, state: State) -> Orchestrator:
        """Production wiring: git/gh host, check commands, issue store."""
        from forkcascade.host.ci import CheckRunner, CommandValidator
        from forkcascade.host.github import GitHubHost
        from forkcascade.host.summary import create_summarizer
        from forkcascade.store.issues import IssueRecordStore

        config = state.config
        host = GitHubHost(
            config.commands,
            config.git,
            config.host,
            timeout=config.operation_timeout,
        )
        ci = CommandValidator(
            CheckRunner(config.git.workdir, config.check.output_dir),
            config.check.commands,
            config.check.timeout or config.operation_timeout,
            prepare=host.checkout,
        )
        store = IssueRecordStore(host, config.labels, config.host.max_body_chars)
        summarizer = create_summarizer(config.llm, config.prompts)
        return cls(state, host, ci, store, summarizer)

    def retry(self, fn, *args, description: str, **kwargs):
        """retry_call with the configured backoff."""
        retry = self.config.retry
        if self.sleep:
            kwargs["sleep"] = self.sleep
        return retry_call(
            fn,
            *args,
            attempts=retry.attempts,
            base_delay=retry.base_delay,
            factor=retry.factor,
            description=description,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # workflow runs
    # ------------------------------------------------------------------

    async def run(self, node, record_id: str | None = None) -> str:
        """Run the workflow graph from node; returns the outcome."""
        from pydantic_graph import BaseNode

        from forkcascade.workflow.graph import create_workflow

        cascade = self.state.runtime.cascade
        cascade.record_id = record_id
        cascade.visited = []

        workflow = create_workflow()
        async with workflow.iter(node, state=self.state) as run:
            async for next_node in run:
                if isinstance(next_node, BaseNode):
                    cascade.visited.append(type(next_node).__name__)

        cascade.outcome = run.result.output
        logger.info(
            f"Cascade run finished: {cascade.outcome}",
            record_id=cascade.record_id,
            nodes=cascade.visited,
        )
        return cascade.outcome

    async def sync(self) -> str:
        """Detect upstream changes and cascade them as far as possible."""
        from forkcascade.workflow.nodes.detect import Detect

        return await self.run(Detect())

    async def drive(self, record_id: str) -> str:
        """Continue a record from whatever state it is in."""
        from pydantic_graph import End

        from forkcascade.workflow.graph import resume_node

        node = resume_node(self.store.get(record_id))
        if isinstance(node, End):
            self.state.runtime.cascade.outcome = node.data
            return node.data
        return await self.run(node, record_id)

    async def resolve(self, record_id: str, branch: str | None = None) -> str:
        from forkcascade.workflow.nodes.resolution import ValidateResolution

        return await self.run(ValidateResolution(record_id, branch), record_id)

    async def settle(self, record_id: str, merged: bool, reason: str | None = None) -> str:
        from forkcascade.workflow.nodes.promote import SettlePromotion

        return await self.run(SettlePromotion(record_id, merged, reason), record_id)

    async def promote(self, record_id: str) -> str:
        from forkcascade.workflow.nodes.promote import Promote

        return await self.run(Promote(record_id), record_id)

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        return await self.monitor.sweep(now)

    # ------------------------------------------------------------------
    # event handlers
    # ------------------------------------------------------------------

    async def _on_change_detected(self, event: UpstreamChangeDetected) -> None:
        await self.drive(event.record_id)

    async def _on_resolution_completed(self, event: ResolutionCompleted) -> None:
        await self.resolve(event.record_id, event.branch)

    async def _on_promotion_settled(self, event: PromotionSettled) -> None:
        await self.settle(event.record_id, event.merged, event.reason)

    async def _on_promotion_requested(self, event: PromotionRequested) -> None:
        await self.promote(event.record_id)

    async def _on_sla_breached(self, event: SlaBreached) -> None:
        logger.warn(
            f"SLA breached for record {event.record_id} in {event.state}",
            record_id=event.record_id,
            level=event.level,
        )

    async def _on_monitor_degraded(self, event: MonitorDegraded) -> None:
        logger.error(f"Monitor degraded: {event.reason}")


def get_orchestrator(state: State) -> Orchestrator:
    """The orchestrator attached to state, wiring a production one if none is."""
    existing = state.runtime.cascade.orchestrator
    if existing is not None:
        return existing
    return Orchestrator.from_state(state)
