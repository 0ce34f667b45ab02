"""Settle command - a promotion pull request was merged or closed."""

from pydantic import BaseModel, Field

from forkcascade.command.sync import exit_code


class SettleCommand(BaseModel):
    """Record the outcome of a promotion pull request.

    Releases the production gate and promotes the next queued record.
    """

    record_id: str = Field(
        alias="record-id",
        description="Record whose promotion pull request settled",
    )
    merged: bool = Field(
        default=True,
        description="True if the pull request was merged, false if closed",
    )
    reason: str | None = Field(
        default=None,
        description="Failure reason recorded when not merged",
    )

    async def run_workflow(self, state: "State") -> int:
        from forkcascade.engine.orchestrator import get_orchestrator
        from forkcascade.model.events import PromotionSettled

        orchestrator = get_orchestrator(state)
        delivered = await orchestrator.bus.publish(
            PromotionSettled(
                record_id=self.record_id, merged=self.merged, reason=self.reason
            )
        )
        outcome = state.runtime.cascade.outcome if delivered else "unchanged"
        print(outcome)
        if not self.merged:
            return 0
        return exit_code(outcome)
