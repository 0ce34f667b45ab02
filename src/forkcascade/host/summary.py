"""Change summaries for tracking issues and promotion PRs.

The language-model summary is optional decoration. describe_change()
always returns usable text: any summarizer failure falls back to the
templated summary, and nothing here can block a transition.
"""

from contextlib import contextmanager

from pydantic_ai import Agent, providers

from forkcascade.core.config import LLMConfig
from forkcascade.core.log import logger
from forkcascade.model.record import SyncRecord

DEFAULT_SYSTEM_PROMPT = (
    "You summarise upstream changes being merged into a fork. "
    "Reply with a few short markdown bullet points."
)


@contextmanager
def inject_provider_params(llm_config: LLMConfig):
    """Temporarily patch pydantic-AI's provider lookup.

    Passes api_key and base_url from config to the provider
    constructor; restores the original lookup on exit.
    """
    kwargs = {}
    if llm_config.api_key:
        kwargs['api_key'] = llm_config.api_key
    if llm_config.base_url:
        kwargs['base_url'] = llm_config.base_url

    if not kwargs:
        yield
        return

    original_infer_provider = providers.infer_provider

    def patched_infer_provider(provider_name: str):
        provider_class = providers.infer_provider_class(provider_name)
        return provider_class(**kwargs)

    try:
        providers.infer_provider = patched_infer_provider
        yield
    finally:
        providers.infer_provider = original_infer_provider


class AgentSummarizer:
    """Summarizer backed by a pydantic-ai agent."""

    def __init__(self, llm_config: LLMConfig, system_prompt: str | None = None):
        self.llm_config = llm_config
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT

    def _create_agent(self) -> Agent:
        with inject_provider_params(self.llm_config):
            return Agent(self.llm_config.model, system_prompt=self.system_prompt)

    async def summarize(self, diff: str) -> str:
        logger.debug(
            f"Requesting summary from {self.llm_config.model}",
            diff_chars=len(diff),
        )
        agent = self._create_agent()
        result = await agent.run(f"Summarise this upstream change set:\n\n{diff}")
        return str(result.output).strip()


class TemplateSummarizer:
    """Deterministic summary with no external dependency."""

    async def summarize(self, diff: str) -> str:
        files = [
            line[len("diff --git "):].split(" b/")[0].removeprefix("a/")
            for line in diff.splitlines()
            if line.startswith("diff --git ")
        ]
        if not files:
            return "_No file-level changes listed._"
        shown = "\n".join(f"- `{path}`" for path in files[:20])
        more = f"\n- ... and {len(files) - 20} more" if len(files) > 20 else ""
        return f"Files touched:\n{shown}{more}"


def create_summarizer(llm_config: LLMConfig, prompts: dict) -> AgentSummarizer | TemplateSummarizer:
    """Agent summarizer when a model is configured, template otherwise."""
    if not llm_config.model:
        return TemplateSummarizer()
    system_prompt = prompts.get("summary", {}).get("system")
    return AgentSummarizer(llm_config, system_prompt)


def template_summary(record: SyncRecord) -> str:
    """Markdown facts about a record, used in every body we write."""
    stats = record.diff_stats
    lines = [
        f"**Upstream:** `{record.source_ref}` at `{record.short_sha() or 'unknown'}`",
        f"**Target:** `{record.target_ref}` -> `{record.production_ref}`",
        (
            f"**Size:** {stats.commits} commits, {stats.files_changed} files, "
            f"+{stats.lines_added}/-{stats.lines_removed} lines"
        ),
        f"**Breaking change marker:** {'yes' if record.breaking_change else 'no'}",
    ]
    if record.was_conflicted:
        files = sorted(record.conflict_files or record.past_conflict_files)
        lines.append(f"**Conflicted files:** {', '.join(f'`{f}`' for f in files)}")
    if record.commit_subjects:
        lines.append("")
        lines.append("**Commits:**")
        lines.extend(f"- {subject}" for subject in record.commit_subjects)
    return "\n".join(lines)


async def describe_change(summarizer, record: SyncRecord, diff: str) -> str:
    """Summary text for a record; never raises."""
    facts = template_summary(record)
    if summarizer is None:
        return facts
    try:
        text = await summarizer.summarize(diff)
    except Exception as e:
        logger.warn(
            "Summary generation failed; using templated summary",
            record_id=record.id,
            error=str(e),
        )
        return facts
    if not text:
        return facts
    return f"{text}\n\n{facts}"
