"""Resolution nodes - hand conflicts to a human and check the result."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_graph import BaseNode, End, GraphRunContext

from forkcascade.core.config import State
from forkcascade.model.record import SyncState


@dataclass
class BeginResolution(BaseNode[State, None, str]):
    """Open the isolation branch PR; the run ends until it is resolved."""

    record_id: str

    async def run(self, ctx: GraphRunContext[State]) -> End[str]:
        orch = ctx.state.runtime.cascade.orchestrator
        record = orch.machine.store.get(self.record_id)
        transition = orch.resolver.begin_resolution(record)
        if transition.record.state == SyncState.FAILED:
            return End("failed")
        return End("awaiting-resolution")


@dataclass
class ValidateResolution(BaseNode[State, None, str]):
    """Re-run the check contract on a human-resolved branch."""

    record_id: str
    branch: str | None = None

    async def run(self, ctx: GraphRunContext[State]) -> "Promote | End[str]":
        """Returns:
            Promote: The resolution passed and the record is VALIDATED
            End: "resolution-rejected" (try again), "abandoned" or "failed"
        """
        orch = ctx.state.runtime.cascade.orchestrator
        record = orch.machine.store.get(self.record_id)
        state = orch.resolver.validate_resolution(record, self.branch).record.state

        if state == SyncState.VALIDATED:
            from forkcascade.workflow.nodes.promote import Promote
            return Promote(self.record_id)
        if state == SyncState.RESOLVING:
            return End("resolution-rejected")
        if state == SyncState.ABANDONED:
            return End("abandoned")
        if state == SyncState.FAILED:
            return End("failed")
        from forkcascade.workflow.graph import WAITING
        return End(WAITING.get(state, state.value.lower()))
