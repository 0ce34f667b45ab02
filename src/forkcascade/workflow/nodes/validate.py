"""Validate node - run the check contract on staging."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_graph import BaseNode, End, GraphRunContext

from forkcascade.core.config import State
from forkcascade.core.errors import HostError, OperationTimeout, RetryExhausted
from forkcascade.core.log import logger
from forkcascade.model.record import SyncState, Trigger


@dataclass
class Validate(BaseNode[State, None, str]):
    """Build and test the cleanly merged staging branch."""

    record_id: str

    async def run(
        self, ctx: GraphRunContext[State]
    ) -> "Promote | Stage | BeginResolution | End[str]":
        orch = ctx.state.runtime.cascade.orchestrator
        machine = orch.machine
        limit = ctx.state.config.policy.max_validation_attempts

        record = machine.store.get(self.record_id)
        if record.state != SyncState.STAGING:
            from forkcascade.workflow.graph import resume_node
            return resume_node(record)

        report = ""
        attempts = record.validation_attempts
        while attempts < limit:
            try:
                result = orch.retry(
                    orch.ci.validate,
                    record.target_ref,
                    description=f"validate {record.target_ref}",
                )
            except OperationTimeout:
                machine.fire(record.id, Trigger.FATAL_ERROR, reason="timeout:validation")
                return End("failed")
            except (RetryExhausted, HostError) as e:
                machine.fire(record.id, Trigger.FATAL_ERROR, reason=f"validation-error: {e}")
                return End("failed")
            if result.timed_out:
                machine.fire(
                    record.id,
                    Trigger.FATAL_ERROR,
                    reason="timeout:validation",
                    detail=result.report,
                )
                return End("failed")

            if result.passed:
                machine.fire(
                    record.id,
                    Trigger.MERGE_CLEAN,
                    detail=f"Validation passed on `{record.target_ref}`\n\n{result.report}",
                )
                from forkcascade.workflow.nodes.promote import Promote
                return Promote(record.id)

            report = result.report
            attempts = machine.record_validation_failure(record.id, report)

        logger.error(
            f"Validation failed {attempts} times", record_id=record.id
        )
        machine.fire(
            record.id,
            Trigger.FATAL_ERROR,
            reason="validation-failed",
            detail=report,
        )
        return End("failed")
