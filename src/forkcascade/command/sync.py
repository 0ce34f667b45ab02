"""Sync command - detect upstream changes and cascade them."""

from pydantic import BaseModel

from forkcascade.core.log import logger

# Outcomes that mean the run did not go wrong.
SUCCESS_OUTCOMES = {
    "up-to-date",
    "promoted",
    "queued",
    "awaiting-approval",
    "awaiting-resolution",
}


def exit_code(outcome: str) -> int:
    return 0 if outcome in SUCCESS_OUTCOMES else 1


class SyncCommand(BaseModel):
    """Fetch upstream, mirror it, and push new changes through staging
    towards production.

    Clean, small, non-breaking changes are promoted without a human.
    Conflicts get an isolation branch and a resolution pull request;
    everything else stops at a promotion pull request awaiting review.
    """

    async def run_workflow(self, state: "State") -> int:
        """Run detection and the cascade.

        Args:
            state: State instance with config loaded

        Returns:
            Exit code (0=success, 1=failure)
        """
        from forkcascade.engine.orchestrator import get_orchestrator

        git = state.config.git
        logger.info(
            f"Syncing {git.upstream_ref} -> {git.mirror_branch} -> "
            f"{git.staging_branch} -> {git.production_branch}"
        )
        outcome = await get_orchestrator(state).sync()
        print(outcome)
        return exit_code(outcome)
