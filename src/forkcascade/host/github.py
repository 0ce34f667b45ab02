"""SourceControlHost backed by the git and gh command line tools.

Every operation is a command template from the `commands` config
section, rendered with shell-quoted arguments and executed through
the invoke Runner in the configured working clone.
"""

from __future__ import annotations

import json
import os
import re
import shlex
import tempfile
from datetime import datetime
from pathlib import Path

from invoke import Result

from forkcascade.core.config import GitConfig, HostConfig
from forkcascade.core.errors import (
    HostError,
    OperationTimeout,
    TransientHostError,
)
from forkcascade.core.log import logger
from forkcascade.core.runner import TIMED_OUT, Runner
from forkcascade.host.base import IssueSnapshot, MergeOutcome, PullRequestState
from forkcascade.model.record import DiffStats

# stderr fragments that mark a failure as worth retrying
TRANSIENT_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"could not resolve host",
        r"connection (timed out|reset|refused)",
        r"operation timed out",
        r"rate limit",
        r"\b50[234]\b",
        r"unable to access",
        r"tls handshake timeout",
        r"temporary failure",
    )
]

SHA_PATTERN = re.compile(r"^[0-9a-f]{7,40}$")
NUMBER_PATTERN = re.compile(r"/(?:pull|issues)/(\d+)\s*$")
SHORTSTAT_PATTERN = re.compile(
    r"(?:(\d+) files? changed)?"
    r"(?:,?\s*(\d+) insertions?\(\+\))?"
    r"(?:,?\s*(\d+) deletions?\(-\))?"
)
RECORD_SEPARATOR = "\x1e"


def is_transient(stderr: str) -> bool:
    return any(pattern.search(stderr) for pattern in TRANSIENT_PATTERNS)


def parse_shortstat(text: str) -> tuple[int, int, int]:
    """Parse `git diff --shortstat` into (files, added, removed)."""
    match = SHORTSTAT_PATTERN.search(text.strip())
    if not match:
        return 0, 0, 0
    files, added, removed = (int(group or 0) for group in match.groups())
    return files, added, removed


def parse_number(output: str) -> int:
    """Extract the issue or PR number from the URL gh prints."""
    for line in reversed(output.strip().splitlines()):
        match = NUMBER_PATTERN.search(line.strip())
        if match:
            return int(match.group(1))
    raise HostError("parse", f"no issue or pull request URL in output: {output!r}")


def parse_issue(payload: dict) -> IssueSnapshot:
    labels = {
        label["name"] if isinstance(label, dict) else str(label)
        for label in payload.get("labels", [])
    }
    created = payload.get("createdAt")
    return IssueSnapshot(
        number=payload["number"],
        title=payload.get("title", ""),
        body=payload.get("body") or "",
        labels=labels,
        state=payload.get("state", "OPEN"),
        created_at=datetime.fromisoformat(created.replace("Z", "+00:00")) if created else None,
    )


class GitHubHost:
    """git + gh implementation of SourceControlHost."""

    def __init__(
        self,
        commands: dict[str, dict[str, str]],
        git: GitConfig,
        host: HostConfig,
        timeout: int | None = None,
        runner: Runner | None = None,
    ):
        """Initialize host adapter.

        Args:
            commands: Command templates with `git` and `gh` groups
            git: Branch layout and working clone
            host: Repository and body size limits
            timeout: Default timeout for every command in seconds
            runner: Command runner (a fresh Runner if omitted)
        """
        self.git_commands = commands.get("git", {})
        self.gh_commands = commands.get("gh", {})
        self.git = git
        self.host = host
        self.timeout = timeout
        self.runner = runner or Runner()

    # ------------------------------------------------------------------
    # command plumbing
    # ------------------------------------------------------------------

    def _render(self, template: str, raw: dict[str, str], params: dict) -> str:
        values = {key: shlex.quote(str(value)) for key, value in params.items()}
        values.update(raw)
        return template.format(**values).strip()

    def _execute(
        self,
        group: dict[str, str],
        name: str,
        operation: str | None = None,
        timeout: int | None = None,
        check: bool = True,
        raw: dict[str, str] | None = None,
        **params,
    ) -> Result:
        if name not in group:
            raise HostError(name, "no command template configured")
        raw = dict(raw or {})
        raw.setdefault("repo", self._repo_flag())
        command = self._render(group[name], raw, params)
        timeout = timeout or self.timeout
        operation = operation or name

        result = self.runner.execute(
            command, cwd=self.git.workdir, timeout=timeout, check=False
        )
        if result.exited == TIMED_OUT:
            raise OperationTimeout(operation, timeout)
        if check and result.exited != 0:
            stderr = (result.stderr or result.stdout or "").strip()
            error_cls = TransientHostError if is_transient(stderr) else HostError
            logger.debug(
                f"{operation} failed",
                command=command,
                returncode=result.exited,
                transient=error_cls is TransientHostError,
            )
            raise error_cls(operation, stderr, result.exited)
        return result

    def _git(self, name: str, **kwargs) -> Result:
        return self._execute(self.git_commands, name, **kwargs)

    def _gh(self, name: str, **kwargs) -> Result:
        return self._execute(self.gh_commands, name, **kwargs)

    def _gh_with_body(self, name: str, body: str, **kwargs) -> Result:
        """Run a gh command that takes --body-file."""
        body = self._truncate(body)
        fd, path = tempfile.mkstemp(prefix="forkcascade-", suffix=".md")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(body)
            return self._gh(name, body_file=path, **kwargs)
        finally:
            Path(path).unlink(missing_ok=True)

    def _repo_flag(self) -> str:
        if not self.host.repository:
            return ""
        return f"--repo {shlex.quote(self.host.repository)}"

    def _truncate(self, body: str) -> str:
        limit = self.host.max_body_chars
        if len(body) <= limit:
            return body
        marker = "\n\n_(truncated)_"
        return body[: limit - len(marker)] + marker

    @staticmethod
    def _label_flags(labels: list[str]) -> str:
        return " ".join(f"--label {shlex.quote(label)}" for label in labels)

    def qualify(self, ref: str) -> str:
        """Return ref as a remote-tracking name unless already qualified."""
        if SHA_PATTERN.match(ref) or ref == "HEAD":
            return ref
        for remote in self.git.remotes:
            if ref.startswith(f"{remote}/"):
                return ref
        return f"{self.git.remote}/{ref}"

    def _remote_of(self, ref: str) -> str:
        for remote in self.git.remotes:
            if ref == remote or ref.startswith(f"{remote}/"):
                return remote
        return self.git.remote

    # ------------------------------------------------------------------
    # git
    # ------------------------------------------------------------------

    def fetch(self, ref: str) -> None:
        remote = self._remote_of(ref)
        logger.debug(f"Fetching {remote}", ref=ref)
        self._git("fetch", operation="fetch", remote=remote)

    def count_commits(self, base: str, head: str) -> int:
        result = self._git("count", base=self.qualify(base), head=self.qualify(head))
        return int(result.stdout.strip() or 0)

    def diff_stats(self, base: str, head: str) -> DiffStats:
        result = self._git("shortstat", base=self.qualify(base), head=self.qualify(head))
        files, added, removed = parse_shortstat(result.stdout)
        return DiffStats(
            commits=self.count_commits(base, head),
            files_changed=files,
            lines_added=added,
            lines_removed=removed,
        )

    def commit_messages(self, base: str, head: str) -> list[str]:
        result = self._git(
            "log_messages", base=self.qualify(base), head=self.qualify(head)
        )
        return [
            message.strip()
            for message in result.stdout.split(RECORD_SEPARATOR)
            if message.strip()
        ]

    def diff_text(self, base: str, head: str) -> str:
        result = self._git("diff", base=self.qualify(base), head=self.qualify(head))
        return self._truncate(result.stdout)

    def head_sha(self, ref: str) -> str:
        return self._git("rev_parse", ref=self.qualify(ref)).stdout.strip()

    def force_update(self, branch: str, to: str) -> None:
        sha = self.head_sha(to)
        logger.info(f"Force-updating {branch} to {sha[:8]}", branch=branch, ref=to)
        self._git("force_push", operation="force_update", remote=self.git.remote, sha=sha, branch=branch)

    def create_branch(self, name: str, from_ref: str) -> None:
        sha = self.head_sha(from_ref)
        logger.info(f"Creating branch {name} at {sha[:8]}", branch=name, ref=from_ref)
        self._git("push_branch", operation="create_branch", remote=self.git.remote, sha=sha, branch=name)

    def checkout(self, ref: str) -> None:
        """Detach the working clone at ref, for validation runs."""
        self._git("fetch", operation="fetch", remote=self._remote_of(ref))
        self._git("checkout_detached", ref=self.qualify(ref))

    def merge(
        self,
        into: str,
        from_ref: str,
        *,
        keep_conflicts: bool = False,
        message: str | None = None,
        timeout: int | None = None,
    ) -> MergeOutcome:
        """Merge from_ref into the remote branch into and push the result.

        With keep_conflicts the conflicted tree, markers included, is
        committed and pushed instead of aborted.
        """
        message = message or f"Merge {from_ref} into {into}"
        self._git("fetch", operation="fetch", remote=self.git.remote)
        self._git("checkout_reset", branch=into, ref=self.qualify(into))

        try:
            result = self._git(
                "merge",
                operation="merge",
                timeout=timeout,
                check=False,
                message=message,
                ref=self.qualify(from_ref),
            )
        except OperationTimeout:
            self._git("merge_abort", check=False)
            raise

        if result.exited == 0:
            self._git("push_head", operation="push", remote=self.git.remote, branch=into)
            return MergeOutcome(clean=True)

        files = [
            line.strip()
            for line in self._git("conflicted_files").stdout.splitlines()
            if line.strip()
        ]
        if not files:
            self._git("merge_abort", check=False)
            raise HostError("merge", (result.stderr or result.stdout).strip(), result.exited)

        logger.info(
            f"Merge of {from_ref} into {into} conflicts in {len(files)} files",
            files=files,
        )
        if keep_conflicts:
            self._git("add_all")
            self._git("commit", message=f"{message} (unresolved conflicts)")
            self._git("push_head", operation="push", remote=self.git.remote, branch=into)
        else:
            self._git("merge_abort", check=False)
        return MergeOutcome.conflict(files)

    # ------------------------------------------------------------------
    # pull requests
    # ------------------------------------------------------------------

    def create_pull_request(
        self, base: str, head: str, title: str, body: str, labels: list[str]
    ) -> int:
        result = self._gh_with_body(
            "pr_create",
            body,
            raw={"label_flags": self._label_flags(labels)},
            base=base,
            head=head,
            title=title,
        )
        number = parse_number(result.stdout)
        logger.info(f"Opened PR #{number}: {head} -> {base}", pr=number)
        return number

    def merge_pull_request(
        self, number: int, strategy: str, timeout: int | None = None
    ) -> None:
        logger.info(f"Merging PR #{number} ({strategy})", pr=number)
        self._gh(
            "pr_merge",
            operation="promotion",
            timeout=timeout,
            raw={"strategy": strategy},
            number=number,
        )

    def pull_request_state(self, number: int) -> PullRequestState:
        payload = json.loads(self._gh("pr_view", number=number).stdout)
        return PullRequestState(payload["state"].upper())

    # ------------------------------------------------------------------
    # issues
    # ------------------------------------------------------------------

    def create_issue(self, title: str, body: str, labels: list[str]) -> int:
        result = self._gh_with_body(
            "issue_create",
            body,
            raw={"label_flags": self._label_flags(labels)},
            title=title,
        )
        number = parse_number(result.stdout)
        logger.info(f"Opened issue #{number}: {title}", issue=number)
        return number

    def get_issue(self, number: int) -> IssueSnapshot:
        return parse_issue(json.loads(self._gh("issue_view", number=number).stdout))

    def list_issues(self, labels: list[str], state: str = "open") -> list[IssueSnapshot]:
        result = self._gh(
            "issue_list",
            labels=",".join(labels),
            state=state,
            limit=500,
        )
        return [parse_issue(item) for item in json.loads(result.stdout or "[]")]

    def update_issue_body(self, number: int, body: str) -> None:
        self._gh_with_body("issue_edit_body", body, number=number)

    def comment_issue(self, number: int, body: str) -> None:
        self._gh_with_body("issue_comment", body, number=number)

    def close_issue(self, number: int, comment: str | None = None) -> None:
        if comment:
            self.comment_issue(number, comment)
        self._gh("issue_close", number=number)

    def add_labels(
        self, number: int, labels: list[str], *, pull_request: bool = False
    ) -> None:
        if not labels:
            return
        name = "pr_add_labels" if pull_request else "issue_add_labels"
        self._gh(name, number=number, labels=",".join(labels))

    def remove_labels(self, number: int, labels: list[str]) -> None:
        if not labels:
            return
        self._gh("issue_remove_labels", number=number, labels=",".join(labels))
