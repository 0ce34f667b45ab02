"""Stage node - merge upstream into the staging branch."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_graph import BaseNode, End, GraphRunContext

from forkcascade.core.config import State
from forkcascade.core.errors import HostError, OperationTimeout, RetryExhausted
from forkcascade.core.log import logger
from forkcascade.model.record import SyncState, Trigger


@dataclass
class Stage(BaseNode[State, None, str]):
    """Merge the mirror (and first production) into staging."""

    record_id: str

    async def run(
        self, ctx: GraphRunContext[State]
    ) -> "Validate | BeginResolution | Stage | Promote | End[str]":
        """Attempt the merge.

        Returns:
            Validate: Clean merge, run the check contract
            BeginResolution: Conflicts, hand over to a human
            End: "failed" on timeout, host failure or a conflict
                between production and staging
        """
        orch = ctx.state.runtime.cascade.orchestrator
        config = ctx.state.config
        machine = orch.machine

        record = machine.fire(self.record_id, Trigger.ATTEMPT_MERGE).record
        if record.state != SyncState.STAGING:
            from forkcascade.workflow.graph import resume_node
            return resume_node(record)

        timeout = config.operation_timeout
        try:
            if config.policy.sync_production_first:
                outcome = orch.retry(
                    orch.host.merge,
                    record.target_ref,
                    record.production_ref,
                    message=f"Sync {record.production_ref} into {record.target_ref}",
                    timeout=timeout,
                    description="merge production into staging",
                )
                if not outcome.clean:
                    files = ", ".join(sorted(outcome.conflict_files))
                    machine.fire(
                        record.id,
                        Trigger.FATAL_ERROR,
                        reason="production-merge-conflict",
                        detail=f"Production conflicts with staging in: {files}",
                    )
                    return End("failed")

            outcome = orch.retry(
                orch.host.merge,
                record.target_ref,
                record.source_ref,
                message=f"Merge upstream {record.short_sha()} into {record.target_ref}",
                timeout=timeout,
                description="merge upstream into staging",
            )
        except OperationTimeout as e:
            machine.fire(record.id, Trigger.FATAL_ERROR, reason=e.reason)
            return End("failed")
        except (RetryExhausted, HostError) as e:
            machine.fire(record.id, Trigger.FATAL_ERROR, reason=f"merge-failed: {e}")
            return End("failed")

        if outcome.clean:
            logger.info("Upstream merged cleanly into staging", record_id=record.id)
            from forkcascade.workflow.nodes.validate import Validate
            return Validate(record.id)

        machine.fire(
            record.id, Trigger.MERGE_CONFLICT, conflict_files=outcome.conflict_files
        )
        from forkcascade.workflow.nodes.resolution import BeginResolution
        return BeginResolution(record.id)
