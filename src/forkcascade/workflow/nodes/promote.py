"""Promotion nodes - move validated changes into production."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_graph import BaseNode, End, GraphRunContext

from forkcascade.core.config import State
from forkcascade.core.errors import HostError, OperationTimeout, RetryExhausted
from forkcascade.core.log import logger
from forkcascade.host.base import PullRequestState
from forkcascade.model.record import SyncState, Trigger


@dataclass
class Promote(BaseNode[State, None, str]):
    """Take the production gate, open the promotion PR, and merge it
    when the policy allows."""

    record_id: str

    async def run(
        self, ctx: GraphRunContext[State]
    ) -> "SettlePromotion | Stage | BeginResolution | Promote | End[str]":
        """Returns:
            SettlePromotion: The PR was merged (or the merge failed)
            End: "queued" behind another promotion, or
                "awaiting-approval" when a human must merge
        """
        orch = ctx.state.runtime.cascade.orchestrator
        config = ctx.state.config
        machine = orch.machine

        summary = ""
        record = machine.store.get(self.record_id)
        if record.state == SyncState.VALIDATED and machine.gate_holder(record.production_ref) is None:
            summary = await machine.change_summary(
                record, record.production_ref, record.target_ref
            )

        transition = machine.request_promotion(self.record_id, summary)
        if transition.queued:
            return End("queued")

        record = transition.record
        if record.state != SyncState.PROMOTING:
            from forkcascade.workflow.graph import resume_node
            return resume_node(record)

        if not transition.applied:
            # Redelivered: the PR may already be settled.
            pr_state = orch.host.pull_request_state(record.promotion_pr)
            if pr_state != PullRequestState.OPEN:
                return SettlePromotion(
                    record.id,
                    merged=pr_state == PullRequestState.MERGED,
                    reason="promotion-pr-closed",
                )

        decision = orch.policy.evaluate(record)
        if not decision.automatic:
            if transition.applied:
                orch.host.add_labels(
                    record.promotion_pr,
                    [config.labels.human_required],
                    pull_request=True,
                )
                orch.machine.note(
                    record.id,
                    f"Manual approval required for #{record.promotion_pr}: {decision.rule}",
                )
            return End("awaiting-approval")

        logger.info(
            f"Auto-promoting record {record.id}: {decision.rule}",
            record_id=record.id,
            pr=record.promotion_pr,
        )
        try:
            orch.retry(
                orch.host.merge_pull_request,
                record.promotion_pr,
                config.policy.merge_strategy,
                timeout=config.operation_timeout,
                description="merge promotion PR",
            )
        except OperationTimeout as e:
            return SettlePromotion(record.id, merged=False, reason=e.reason)
        except (RetryExhausted, HostError) as e:
            return SettlePromotion(
                record.id, merged=False, reason=f"promotion-merge-failed: {e}"
            )
        return SettlePromotion(record.id, merged=True)


@dataclass
class SettlePromotion(BaseNode[State, None, str]):
    """Finish a promotion and hand the gate to the next queued record."""

    record_id: str
    merged: bool
    reason: str | None = None

    async def run(self, ctx: GraphRunContext[State]) -> "Promote | End[str]":
        orch = ctx.state.runtime.cascade.orchestrator
        trigger = Trigger.PROMOTE_SUCCESS if self.merged else Trigger.PROMOTE_FAILURE
        reason = None if self.merged else (self.reason or "promotion-pr-closed")

        transition = orch.machine.fire(self.record_id, trigger, reason=reason)
        if transition.next_record_id:
            logger.info(
                f"Production gate released; promoting record {transition.next_record_id}",
                record_id=self.record_id,
            )
            return Promote(transition.next_record_id)

        state = transition.record.state
        if state == SyncState.PROMOTED:
            return End("promoted")
        if state == SyncState.PROMOTING:
            return End("awaiting-approval")
        return End("failed" if state == SyncState.FAILED else state.value.lower())
