"""CLI command modules for forkcascade."""

from forkcascade.command.cascade import CascadeCommand
from forkcascade.command.event import EventCommand
from forkcascade.command.monitor import MonitorCommand
from forkcascade.command.resolve import ResolveCommand
from forkcascade.command.settle import SettleCommand
from forkcascade.command.status import StatusCommand
from forkcascade.command.sync import SyncCommand

__all__ = [
    "CascadeCommand",
    "EventCommand",
    "MonitorCommand",
    "ResolveCommand",
    "SettleCommand",
    "StatusCommand",
    "SyncCommand",
]
