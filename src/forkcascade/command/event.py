"""Event command - deliver an external trigger event."""

from pydantic import BaseModel, Field, ValidationError

from forkcascade.core.log import logger


class EventCommand(BaseModel):
    """Publish a JSON event such as a webhook payload.

    Example:
        forkcascade event --payload '{"kind": "promotion_settled",
        "record_id": "42", "merged": true}'
    """

    payload: str = Field(description="JSON event with a 'kind' field")

    async def run_workflow(self, state: "State") -> int:
        from forkcascade.engine.orchestrator import get_orchestrator
        from forkcascade.model.events import parse_event

        try:
            event = parse_event(self.payload)
        except ValidationError as e:
            logger.error(f"Rejected event payload: {e}")
            return 1

        delivered = await get_orchestrator(state).bus.publish(event)
        print(state.runtime.cascade.outcome if delivered else "duplicate")
        return 0
