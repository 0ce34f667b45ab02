"""Build/test validation through configured check commands."""

from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from forkcascade.core.log import logger
from forkcascade.core.result import CheckResult, ValidationResult
from forkcascade.core.runner import Runner


class CheckRunner:
    """Execute check commands and manage log files."""

    def __init__(self, workdir: Path, output_dir: Path):
        """Initialize check runner.

        Args:
            workdir: Working directory for check commands
            output_dir: Directory for storing check logs
        """
        self.workdir = workdir
        self.output_dir = output_dir
        self.runner = Runner()

    def run(self, check_name: str, command: str, timeout: int | None) -> CheckResult:
        """Run check command and save output to timestamped log file.

        Args:
            check_name: Name of check (used in log filename)
            command: Check command to execute
            timeout: Timeout in seconds

        Returns:
            CheckResult with success status, log file path, returncode, and timestamp
        """
        timestamp = datetime.now()
        log_filename = f"{check_name}-{timestamp.strftime('%Y%m%d-%H%M%S')}.log"
        log_file = self.output_dir / log_filename

        self.output_dir.mkdir(parents=True, exist_ok=True)

        result = self.runner.execute(
            command,
            cwd=self.workdir,
            timeout=timeout,
            log_file=log_file,
            log_level="spew",
            check=False,
        )

        return CheckResult(
            check_name=check_name,
            success=(result.exited == 0),
            log_file=log_file,
            returncode=result.exited,
            timestamp=timestamp,
        )


class CommandValidator:
    """CIValidator that runs the configured checks against a ref.

    The same contract validates clean staging merges and resolution
    branches; the first failing check ends the run.
    """

    def __init__(
        self,
        checks: CheckRunner,
        commands: dict[str, str],
        timeout: int | None,
        prepare: Callable[[str], None] | None = None,
    ):
        self.checks = checks
        self.commands = commands
        self.timeout = timeout
        self.prepare = prepare

    def validate(self, ref: str) -> ValidationResult:
        if self.prepare:
            self.prepare(ref)

        results = []
        for name, command in self.commands.items():
            logger.info(f"Running check: {name}", ref=ref)
            result = self.checks.run(name, command, self.timeout)
            results.append(result)
            if not result.success:
                logger.warn(
                    f"Check '{name}' failed on {ref}",
                    returncode=result.returncode,
                    log_file=str(result.log_file),
                )
                break

        if not self.commands:
            logger.warn("No check commands configured; treating as passed", ref=ref)
        return ValidationResult.from_checks(ref, results)
