"""Contracts for the external collaborators.

The orchestrator never talks to git, the hosting platform, CI or a
language model directly; it goes through these narrow protocols so
the engine can be exercised against in-memory fakes.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from forkcascade.core.result import ValidationResult
from forkcascade.model.record import DiffStats


class MergeOutcome(BaseModel):
    """Result of merging one ref into a branch."""

    clean: bool
    conflict_files: set[str] = Field(default_factory=set)

    @classmethod
    def conflict(cls, files) -> "MergeOutcome":
        return cls(clean=False, conflict_files=set(files))


class PullRequestState(StrEnum):
    OPEN = "OPEN"
    MERGED = "MERGED"
    CLOSED = "CLOSED"


class IssueSnapshot(BaseModel):
    """An issue as returned by the host, before decoding."""

    number: int
    title: str = ""
    body: str = ""
    labels: set[str] = Field(default_factory=set)
    state: str = "OPEN"
    created_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.state.upper() == "OPEN"


@runtime_checkable
class SourceControlHost(Protocol):
    """git plus the hosting platform's issue/PR API."""

    def fetch(self, ref: str) -> None: ...

    def count_commits(self, base: str, head: str) -> int: ...

    def diff_stats(self, base: str, head: str) -> DiffStats: ...

    def commit_messages(self, base: str, head: str) -> list[str]: ...

    def diff_text(self, base: str, head: str) -> str: ...

    def head_sha(self, ref: str) -> str: ...

    def force_update(self, branch: str, to: str) -> None: ...

    def create_branch(self, name: str, from_ref: str) -> None: ...

    def merge(
        self,
        into: str,
        from_ref: str,
        *,
        keep_conflicts: bool = False,
        message: str | None = None,
        timeout: int | None = None,
    ) -> MergeOutcome: ...

    def create_pull_request(
        self, base: str, head: str, title: str, body: str, labels: list[str]
    ) -> int: ...

    def merge_pull_request(
        self, number: int, strategy: str, timeout: int | None = None
    ) -> None: ...

    def pull_request_state(self, number: int) -> PullRequestState: ...

    def create_issue(self, title: str, body: str, labels: list[str]) -> int: ...

    def get_issue(self, number: int) -> IssueSnapshot: ...

    def list_issues(self, labels: list[str], state: str = "open") -> list[IssueSnapshot]: ...

    def update_issue_body(self, number: int, body: str) -> None: ...

    def comment_issue(self, number: int, body: str) -> None: ...

    def close_issue(self, number: int, comment: str | None = None) -> None: ...

    def add_labels(self, number: int, labels: list[str], *, pull_request: bool = False) -> None: ...

    def remove_labels(self, number: int, labels: list[str]) -> None: ...


@runtime_checkable
class CIValidator(Protocol):
    """Build/test contract, identical for clean and resolved merges."""

    def validate(self, ref: str) -> ValidationResult: ...


@runtime_checkable
class Summarizer(Protocol):
    """Best-effort natural-language summary of a diff."""

    async def summarize(self, diff: str) -> str: ...
