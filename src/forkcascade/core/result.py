"""Result types for check execution and branch validation."""

from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field


class CheckResult(BaseModel):
    """Result of a single check command."""

    check_name: str
    success: bool
    log_file: Path
    returncode: int
    timestamp: datetime

    @property
    def timed_out(self) -> bool:
        return self.returncode == -1


class ValidationResult(BaseModel):
    """Outcome of validating one ref with the full check contract."""

    ref: str
    passed: bool
    timed_out: bool = False
    checks: list[CheckResult] = Field(default_factory=list)
    report: str = ""

    @classmethod
    def from_checks(cls, ref: str, checks: list[CheckResult]) -> "ValidationResult":
        """Aggregate check results; the first failure ends the run."""
        lines = []
        for check in checks:
            mark = "passed" if check.success else (
                "timed out" if check.timed_out else f"failed ({check.returncode})"
            )
            lines.append(f"- {check.check_name}: {mark}, log {check.log_file}")
        return cls(
            ref=ref,
            passed=all(check.success for check in checks),
            timed_out=any(check.timed_out for check in checks),
            checks=checks,
            report="\n".join(lines),
        )
