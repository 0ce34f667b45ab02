"""Cascade command - continue one record from its current state."""

from pydantic import BaseModel, Field

from forkcascade.command.sync import exit_code


class CascadeCommand(BaseModel):
    """Drive an existing record as far as it can go without a human."""

    record_id: str = Field(
        alias="record-id",
        description="Record (tracking issue number) to continue",
    )

    async def run_workflow(self, state: "State") -> int:
        from forkcascade.engine.orchestrator import get_orchestrator

        outcome = await get_orchestrator(state).drive(self.record_id)
        print(outcome)
        return exit_code(outcome)
