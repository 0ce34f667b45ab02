"""Sync detector: notice upstream changes and open a record for them."""

from __future__ import annotations

from forkcascade.core.config import Config
from forkcascade.core.errors import HostError, OperationTimeout, RetryExhausted
from forkcascade.core.log import logger
from forkcascade.core.retry import retry_call
from forkcascade.engine.machine import BranchStateMachine
from forkcascade.engine.policy import is_breaking
from forkcascade.host.base import SourceControlHost
from forkcascade.model.record import DiffStats, SyncRecord, Trigger

MAX_SUBJECTS = 20

# Fetches retry every host failure, auth errors included; a revoked
# token or a flaky network both end as a FAILED record.
FETCH_RETRY_ON = (HostError, OperationTimeout)


class SyncDetector:
    """Compares the upstream source with the fork's mirror branch."""

    def __init__(
        self,
        host: SourceControlHost,
        machine: BranchStateMachine,
        config: Config,
        sleep=None,
    ):
        self.host = host
        self.machine = machine
        self.config = config
        self.sleep = sleep

    def _retry(self, fn, *args, description: str, **options):
        retry = self.config.retry
        if self.sleep:
            options["sleep"] = self.sleep
        return retry_call(
            fn,
            *args,
            attempts=retry.attempts,
            base_delay=retry.base_delay,
            factor=retry.factor,
            description=description,
            **options,
        )

    def detect(self, source: str | None = None, mirror: str | None = None) -> SyncRecord | None:
        """Open a DETECTED record if source has commits mirror lacks.

        The mirror is then hard-reset to source; it is a read-only
        cache of upstream and never receives commits of its own.

        Returns:
            The new record, or None when the mirror is up to date.
            A fetch, comparison or mirror update that fails yields a
            FAILED record whose reason names the step.
        """
        git = self.config.git
        source = source or git.upstream_ref
        mirror = mirror or git.mirror_branch

        with logger.span("detect upstream changes", source=source, mirror=mirror):
            try:
                for ref in (source, mirror):
                    self._retry(
                        self.host.fetch,
                        ref,
                        description=f"fetch {ref}",
                        retry_on=FETCH_RETRY_ON,
                    )
            except RetryExhausted as e:
                return self._detect_failed("fetch-failed", mirror, e)

            try:
                count = self.host.count_commits(mirror, source)
                if count == 0:
                    logger.info(f"{mirror} is up to date with {source}")
                    return None

                stats = self.host.diff_stats(mirror, source)
                stats = stats.model_copy(update={"commits": count})
                messages = self.host.commit_messages(mirror, source)
                sha = self.host.head_sha(source)
            except (HostError, OperationTimeout) as e:
                return self._detect_failed("compare-failed", mirror, e)

            breaking = any(is_breaking(message) for message in messages)
            subjects = [message.splitlines()[0] for message in messages[:MAX_SUBJECTS]]

            logger.info(
                f"Found {count} new upstream commits",
                commits=count,
                lines_changed=stats.lines_changed,
                breaking=breaking,
                sha=sha,
            )

            try:
                self._retry(
                    self.host.force_update, mirror, sha, description=f"update {mirror}"
                )
            except (RetryExhausted, HostError, OperationTimeout) as e:
                return self._detect_failed("mirror-update-failed", mirror, e, sha=sha)

            record = self.machine.open_record(
                SyncRecord(
                    source_ref=mirror,
                    target_ref=git.staging_branch,
                    production_ref=git.production_branch,
                    upstream_sha=sha,
                    diff_stats=stats,
                    breaking_change=breaking,
                    commit_subjects=subjects,
                    detected_at=self.machine.clock(),
                    last_transition_at=self.machine.clock(),
                )
            )
            return record

    def _detect_failed(
        self,
        step: str,
        mirror: str,
        error: Exception,
        sha: str = "",
    ) -> SyncRecord:
        """Record a detection that could not complete as a FAILED record."""
        if isinstance(error, RetryExhausted):
            error = error.last_error
        logger.error(f"Detection failed: {step}", error=str(error))

        git = self.config.git
        now = self.machine.clock()
        record = self.machine.open_record(
            SyncRecord(
                source_ref=mirror,
                target_ref=git.staging_branch,
                production_ref=git.production_branch,
                upstream_sha=sha,
                diff_stats=DiffStats(),
                detected_at=now,
                last_transition_at=now,
            )
        )
        return self.machine.fire(
            record.id,
            Trigger.FATAL_ERROR,
            reason=f"{step}: {error}",
        ).record
