"""Subprocess execution for git, gh and check commands, via invoke."""

from io import StringIO
from pathlib import Path

from invoke import Context, Result
from invoke.exceptions import CommandTimedOut

from forkcascade.core.log import logger

# Exit code reported for commands killed by the timeout.
TIMED_OUT = -1

# Nothing we run may wait for a human at a terminal.
NON_INTERACTIVE_ENV = {
    "GIT_TERMINAL_PROMPT": "0",
    "GH_PROMPT_DISABLED": "1",
    "GIT_EDITOR": "true",
}


class Runner(Context):
    """invoke.Context with one execute() used for every command."""

    def execute(
        self,
        command: str,
        cwd: Path | None = None,
        timeout: int | None = None,
        stdin: str | None = None,
        log_file: Path | None = None,
        log_level: str | None = None,
        check: bool = True,
        env: dict[str, str] | None = None,
    ) -> Result:
        """Run command and return its invoke.Result.

        Args:
            command: Shell command line
            cwd: Directory to run in
            timeout: Seconds before the command is killed; a killed
                command returns a result with exited == TIMED_OUT
            stdin: Text fed to the command's standard input
            log_file: Where to write stdout followed by stderr
            log_level: Level at which each output line is echoed
            check: Raise invoke.UnexpectedExit on a non-zero exit
            env: Extra environment variables

        Raises:
            invoke.UnexpectedExit: Non-zero exit with check=True
        """
        kwargs = {
            "hide": True,
            "warn": not check,
            "in_stream": StringIO(stdin) if stdin is not None else False,
            "env": {**NON_INTERACTIVE_ENV, **(env or {})},
        }
        if timeout:
            kwargs["timeout"] = timeout

        logger.spew("Executing command", command=command, cwd=str(cwd or ""))
        try:
            if cwd:
                with self.cd(str(cwd)):
                    result = self.run(command, **kwargs)
            else:
                result = self.run(command, **kwargs)
        except CommandTimedOut as e:
            logger.warn("Command timed out", command=command, timeout=timeout)
            result = e.result
            result.exited = TIMED_OUT

        output = result.stdout + result.stderr
        if log_file:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            log_file.write_text(output)
        if log_level:
            for line in output.splitlines():
                logger.log(log_level, line.rstrip())
        return result
