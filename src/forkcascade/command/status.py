"""Status command - list open records."""

from pydantic import BaseModel, Field


def format_age(seconds: float) -> str:
    hours = seconds / 3600
    if hours < 48:
        return f"{hours:.1f}h"
    return f"{hours / 24:.1f}d"


class StatusCommand(BaseModel):
    """Show every open record with its state, age and promotion decision."""

    all: bool = Field(
        default=False,
        description="Include terminal records whose tracking issue is still open",
    )

    async def run_workflow(self, state: "State") -> int:
        from forkcascade.engine.orchestrator import get_orchestrator

        orchestrator = get_orchestrator(state)
        now = orchestrator.machine.clock()
        records = orchestrator.store.list(include_terminal=self.all)
        if not records:
            print("No open records.")
            return 0

        print(f"{'ID':<8} {'STATE':<11} {'AGE':>7} {'LINES':>7} {'DECISION':<8} DETAIL")
        for record in sorted(records, key=lambda r: r.detected_at):
            decision = orchestrator.policy.evaluate(record)
            detail = record.failure_reason or decision.rule
            if record.escalation_level:
                detail = f"[escalation {record.escalation_level}] {detail}"
            print(
                f"{record.id:<8} {record.state.value:<11} "
                f"{format_age(record.age(now)):>7} "
                f"{record.diff_stats.lines_changed:>7} "
                f"{decision.decision.value:<8} {detail}"
            )
        return 0
