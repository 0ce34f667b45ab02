"""Resolve command - a conflict resolution is ready for validation."""

from pydantic import BaseModel, Field

from forkcascade.command.sync import exit_code


class ResolveCommand(BaseModel):
    """Validate a human conflict resolution and, if it passes, promote.

    Run this when the resolution branch has been pushed (or its pull
    request merged into staging). A failing validation counts as one
    attempt; the record is abandoned after the configured maximum.
    """

    record_id: str = Field(
        alias="record-id",
        description="Record whose conflicts were resolved",
    )
    branch: str | None = Field(
        default=None,
        description="Branch to validate (default: the record's isolation branch)",
    )

    async def run_workflow(self, state: "State") -> int:
        from forkcascade.engine.orchestrator import get_orchestrator
        from forkcascade.model.events import ResolutionCompleted

        orchestrator = get_orchestrator(state)
        record = orchestrator.store.get(self.record_id)
        await orchestrator.bus.publish(
            ResolutionCompleted(
                record_id=self.record_id,
                branch=self.branch,
                attempt=record.validation_attempts,
            )
        )
        outcome = state.runtime.cascade.outcome or "unchanged"
        print(outcome)
        return 0 if outcome == "resolution-rejected" else exit_code(outcome)
