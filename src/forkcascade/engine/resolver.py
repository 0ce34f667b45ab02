"""Conflict resolver coordinator: the human path for CONFLICTED records.

Each conflicted record gets its own isolation branch and resolution
pull request against staging, so one record's conflicts never hold
up another's. Only the final promotion is serialized.
"""

from __future__ import annotations

from forkcascade.core.config import Config
from forkcascade.core.errors import HostError, OperationTimeout, RetryExhausted
from forkcascade.core.log import logger
from forkcascade.core.retry import retry_call
from forkcascade.engine.machine import BranchStateMachine, Transition
from forkcascade.host.base import CIValidator, PullRequestState, SourceControlHost
from forkcascade.model.record import EscalationReason, SyncRecord, SyncState, Trigger


class ConflictResolverCoordinator:
    def __init__(
        self,
        host: SourceControlHost,
        ci: CIValidator,
        machine: BranchStateMachine,
        config: Config,
        sleep=None,
    ):
        self.host = host
        self.ci = ci
        self.machine = machine
        self.config = config
        self.sleep = sleep

    def _validate(self, branch: str):
        retry = self.config.retry
        kwargs = {"sleep": self.sleep} if self.sleep else {}
        return retry_call(
            self.ci.validate,
            branch,
            attempts=retry.attempts,
            base_delay=retry.base_delay,
            factor=retry.factor,
            description=f"validate {branch}",
            **kwargs,
        )

    def begin_resolution(self, record: SyncRecord) -> Transition:
        """Put the conflicting merge on the isolation branch and open a PR.

        The merge is committed with its conflict markers so whoever
        resolves it starts from exactly what failed on staging.
        """
        record = self.machine.complete_entry(record.id)
        if record.state != SyncState.CONFLICTED:
            return self.machine.fire(record.id, Trigger.RESOLUTION_STARTED)

        if record.resolution_pr is not None:
            return self.machine.fire(
                record.id, Trigger.RESOLUTION_STARTED, pull_request=record.resolution_pr
            )

        try:
            self.host.merge(
                record.isolation_branch,
                record.source_ref,
                keep_conflicts=True,
                message=f"Merge upstream {record.short_sha()} into {record.target_ref}",
                timeout=self.config.operation_timeout,
            )
        except OperationTimeout as e:
            return self.machine.fire(record.id, Trigger.FATAL_ERROR, reason=e.reason)

        files = "\n".join(f"- `{path}`" for path in sorted(record.conflict_files))
        number = self.host.create_pull_request(
            record.target_ref,
            record.isolation_branch,
            f"Resolve upstream conflicts ({record.short_sha() or record.id})",
            (
                f"Conflict markers for these files are committed on this branch:\n\n"
                f"{files}\n\nResolve them, push, and the cascade will re-run "
                f"validation. Closes #{record.conflict_issue}. "
                f"Tracking issue: #{record.tracking_issue}"
            ),
            [self.config.labels.conflict, self.config.labels.human_required],
        )
        logger.info(
            f"Resolution PR #{number} opened for record {record.id}",
            record_id=record.id,
            pr=number,
        )
        return self.machine.fire(record.id, Trigger.RESOLUTION_STARTED, pull_request=number)

    def validate_resolution(self, record: SyncRecord, branch: str | None = None) -> Transition:
        """Run the CI contract on a resolved branch.

        Passing merges the resolution into staging. Failing counts an
        attempt; the last allowed failure abandons the record and
        escalates.
        """
        branch = branch or record.isolation_branch
        record = self.machine.store.get(record.id)
        if record.state != SyncState.RESOLVING:
            return self.machine.fire(record.id, Trigger.RESOLUTION_VALIDATED)

        with logger.span("validate resolution", record_id=record.id, branch=branch):
            try:
                result = self._validate(branch)
            except OperationTimeout:
                return self.machine.fire(
                    record.id, Trigger.FATAL_ERROR, reason="timeout:validation"
                )
            except (RetryExhausted, HostError) as e:
                return self.machine.fire(
                    record.id, Trigger.FATAL_ERROR, reason=f"validation-error: {e}"
                )
            if result.timed_out:
                return self.machine.fire(
                    record.id, Trigger.FATAL_ERROR, reason="timeout:validation"
                )

            if result.passed:
                try:
                    return self._accept(record, branch)
                except OperationTimeout as e:
                    return self.machine.fire(record.id, Trigger.FATAL_ERROR, reason=e.reason)

            attempts = self.machine.record_validation_failure(record.id, result.report)
            limit = self.config.policy.max_validation_attempts
            if attempts < limit:
                return Transition(record=self.machine.store.get(record.id), applied=False)

            transition = self.machine.fire(
                record.id,
                Trigger.RESOLUTION_ABANDONED,
                detail=f"Resolution failed validation {attempts} times",
            )
            self.machine.escalate(
                record.id,
                EscalationReason.VALIDATION_EXHAUSTED,
                f"Resolution on `{branch}` failed validation {attempts} times.\n\n{result.report}",
            )
            return transition

    def _accept(self, record: SyncRecord, branch: str) -> Transition:
        if record.resolution_pr is not None:
            state = self.host.pull_request_state(record.resolution_pr)
            if state == PullRequestState.OPEN:
                self.host.merge_pull_request(
                    record.resolution_pr,
                    "merge",
                    timeout=self.config.operation_timeout,
                )
        if record.conflict_issue is not None:
            self.host.close_issue(
                record.conflict_issue,
                f"Resolution on `{branch}` passed validation and is merged into "
                f"`{record.target_ref}`.",
            )
        return self.machine.fire(
            record.id,
            Trigger.RESOLUTION_VALIDATED,
            detail=f"Resolution on `{branch}` passed validation",
        )
