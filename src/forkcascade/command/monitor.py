"""Monitor command - one health sweep over all open records."""

from pathlib import Path

from pydantic import BaseModel, Field

from forkcascade.core.errors import MonitorDegradedError
from forkcascade.core.log import logger

# Exit code when the sweep could not read pipeline state.
DEGRADED = 2


class MonitorCommand(BaseModel):
    """Sweep every open record: re-deliver missed triggers, escalate
    SLA breaches, retry released failures, and print a health report.

    Schedule this every sla.sweep_interval_hours hours.
    """

    report_file: Path | None = Field(
        default=None,
        alias="report-file",
        description="Also write the markdown health report to this file",
    )

    async def run_workflow(self, state: "State") -> int:
        from forkcascade.engine.orchestrator import get_orchestrator

        orchestrator = get_orchestrator(state)
        try:
            result = await orchestrator.sweep()
        except MonitorDegradedError as e:
            logger.error(f"Monitor degraded: {e}")
            return DEGRADED

        markdown = result.report.to_markdown()
        print(markdown)
        if self.report_file:
            self.report_file.parent.mkdir(parents=True, exist_ok=True)
            self.report_file.write_text(markdown + "\n")
        return 0
