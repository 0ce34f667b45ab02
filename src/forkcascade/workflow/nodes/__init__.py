"""Workflow nodes for the cascade graph."""

from forkcascade.workflow.nodes.detect import Detect
from forkcascade.workflow.nodes.promote import Promote, SettlePromotion
from forkcascade.workflow.nodes.resolution import BeginResolution, ValidateResolution
from forkcascade.workflow.nodes.stage import Stage
from forkcascade.workflow.nodes.validate import Validate

__all__ = [
    "Detect",
    "Stage",
    "Validate",
    "BeginResolution",
    "ValidateResolution",
    "Promote",
    "SettlePromotion",
]
