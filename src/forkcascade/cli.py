#!/usr/bin/env python3
"""forkcascade CLI - upstream sync, conflict isolation and promotion."""

import asyncio

from pydantic_settings import CliApp, CliSubCommand, get_subcommand

from forkcascade.command.cascade import CascadeCommand
from forkcascade.command.event import EventCommand
from forkcascade.command.monitor import MonitorCommand
from forkcascade.command.resolve import ResolveCommand
from forkcascade.command.settle import SettleCommand
from forkcascade.command.status import StatusCommand
from forkcascade.command.sync import SyncCommand
from forkcascade.core.config import State
from forkcascade.core.log import logger


class CliState(State):
    """Keep a long-lived fork in step with its upstream.

    Upstream changes flow from a read-only mirror branch through a
    staging branch into production. Clean, small, non-breaking
    changes are promoted automatically; conflicts, large changes and
    breaking changes wait for a human. A periodic monitor escalates
    anything that stalls.

    Configuration sources (in priority order):
    1. Command-line arguments (--config.policy.max_diff_lines 500)
    2. --include FILE and ./forkcascade.yaml
    3. ~/.config/forkcascade/forkcascade.yaml
    4. .env file and environment variables
       (FORKCASCADE_CONFIG__GIT__PRODUCTION_BRANCH=release)
    """

    sync: CliSubCommand[SyncCommand]
    cascade: CliSubCommand[CascadeCommand]
    resolve: CliSubCommand[ResolveCommand]
    settle: CliSubCommand[SettleCommand]
    monitor: CliSubCommand[MonitorCommand]
    status: CliSubCommand[StatusCommand]
    event: CliSubCommand[EventCommand]

    def cli_cmd(self):
        """Dispatch to active subcommand, or show help if none
        provided."""
        subcommand = get_subcommand(self, is_required=False)

        if subcommand is None:
            import sys
            CliApp.run(CliState, cli_args=['--help'])
            sys.exit(1)

        # Use logger as context manager so sinks are flushed on exit
        with logger:
            exit_code = asyncio.run(subcommand.run_workflow(self))
            raise SystemExit(exit_code)


def main():
    """Main entry point for CLI."""
    CliApp.run(CliState)


if __name__ == "__main__":
    main()
