"""Graph workflow definition."""

from pydantic_graph import End, Graph

from forkcascade.core.config import State
from forkcascade.core.log import logger
from forkcascade.model.record import SyncRecord, SyncState


def create_workflow():
    """Create the cascade workflow graph.

    Detect -> Stage -> Validate -> Promote -> SettlePromotion
    Stage -> BeginResolution (conflicts; a human takes over)
    ValidateResolution -> Promote (after the human resolution)
    SettlePromotion -> Promote (next record queued for the gate)

    Every run ends with a short status string such as "promoted",
    "queued" or "awaiting-resolution".

    Returns:
        Graph workflow with State as state_type
    """
    logger.debug("Building workflow graph")

    # Import nodes (lazy to avoid circular imports)
    from forkcascade.workflow.nodes.detect import Detect
    from forkcascade.workflow.nodes.promote import Promote, SettlePromotion
    from forkcascade.workflow.nodes.resolution import BeginResolution, ValidateResolution
    from forkcascade.workflow.nodes.stage import Stage
    from forkcascade.workflow.nodes.validate import Validate

    workflow = Graph(
        nodes=(
            Detect,
            Stage,
            Validate,
            BeginResolution,
            ValidateResolution,
            Promote,
            SettlePromotion,
        ),
        state_type=State,
    )

    return workflow


# Outcome reported for records that are waiting on someone else.
WAITING = {
    SyncState.RESOLVING: "awaiting-resolution",
    SyncState.PROMOTING: "awaiting-approval",
}


def resume_node(record: SyncRecord):
    """Node that continues a record from its persisted state.

    Returns End for records that are waiting on a human or finished.
    """
    from forkcascade.workflow.nodes.promote import Promote
    from forkcascade.workflow.nodes.resolution import BeginResolution
    from forkcascade.workflow.nodes.stage import Stage

    if record.state in (SyncState.DETECTED, SyncState.STAGING):
        return Stage(record.id)
    if record.state == SyncState.CONFLICTED:
        return BeginResolution(record.id)
    if record.state == SyncState.VALIDATED:
        return Promote(record.id)
    if record.state in WAITING:
        return End(WAITING[record.state])
    return End(record.state.value.lower())
