"""Record persistence."""

from forkcascade.store.base import RecordStore, ScanResult
from forkcascade.store.issues import IssueRecordStore
from forkcascade.store.memory import MemoryRecordStore

__all__ = ["IssueRecordStore", "MemoryRecordStore", "RecordStore", "ScanResult"]
