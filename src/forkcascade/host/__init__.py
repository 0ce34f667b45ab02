"""External collaborators: source control host, CI and summaries."""

from forkcascade.host.base import (
    CIValidator,
    IssueSnapshot,
    MergeOutcome,
    PullRequestState,
    SourceControlHost,
    Summarizer,
)

__all__ = [
    "CIValidator",
    "IssueSnapshot",
    "MergeOutcome",
    "PullRequestState",
    "SourceControlHost",
    "Summarizer",
]
