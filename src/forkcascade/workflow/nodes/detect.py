"""Detect node - look for new upstream commits."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_graph import BaseNode, End, GraphRunContext

from forkcascade.core.config import State
from forkcascade.core.log import logger


@dataclass
class Detect(BaseNode[State, None, str]):
    """Fetch upstream and open a record if the mirror is behind."""

    async def run(self, ctx: GraphRunContext[State]) -> "Stage | End[str]":
        """Returns:
            Stage: A new DETECTED record exists
            End: "up-to-date", or "failed" if fetching kept failing
        """
        cascade = ctx.state.runtime.cascade
        record = cascade.orchestrator.detector.detect()

        if record is None:
            return End("up-to-date")

        cascade.record_id = record.id
        if record.is_terminal:
            logger.error(
                f"Detection failed: {record.failure_reason}", record_id=record.id
            )
            return End("failed")

        await cascade.orchestrator.machine.describe(record)

        from forkcascade.workflow.nodes.stage import Stage
        return Stage(record.id)
