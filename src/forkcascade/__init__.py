"""forkcascade - upstream sync cascade orchestrator for long-lived forks."""

__version__ = "0.1.0"
