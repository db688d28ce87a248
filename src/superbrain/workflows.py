"""
Built-in workflows.

Each workflow strings several engine operations together and reports the
outcome as a WorkflowResult, so a caller can run any of them by name:

    result = await run_workflow(brain, "search_and_remember", query="tax deadline")
"""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from superbrain.core.errors import InputError, SuperBrainError
from superbrain.core.logging import get_logger
from superbrain.core.types import MemoryType

if TYPE_CHECKING:
    from superbrain.context import BrainContext

logger = get_logger("workflows")

FILE_MEMORY_IMPORTANCE = 0.6


class WorkflowAction(Enum):
    SUMMARIZE_RECENT = "summarize_recent"
    LEARNING_DIGEST = "learning_digest"
    SEARCH_AND_REMEMBER = "search_and_remember"


@dataclass
class WorkflowResult:
    action: str
    success: bool
    message: str
    data: dict[str, Any] | None = None


def summarize_recent(brain: "BrainContext", limit: int = 5) -> WorkflowResult:
    """Status, counts, learning trend and the latest thoughts in one message."""
    engine = brain.engine
    status = engine.status()
    stats = engine.stats()
    thoughts = engine.get_thoughts(limit) if engine.thought_count else []

    lines = [
        f"Brain status: {'indexing' if brain.indexer.is_indexing else 'ready'}",
        f"Memories: {status.memory_count}, thoughts: {status.thought_count}, "
        f"experiences: {stats.learning.buffer_size}",
        f"Learning trend: {status.learning_trend}",
        f"Active goals: {status.active_goals}",
        "Recent thoughts:",
    ]
    lines.extend(f"  - [{t.strategy}] {t.input[:80]}" for t in thoughts)
    if not thoughts:
        lines.append("  (none yet)")

    return WorkflowResult(
        action=WorkflowAction.SUMMARIZE_RECENT.value,
        success=True,
        message="\n".join(lines),
        data={
            "memories": status.memory_count,
            "thoughts": status.thought_count,
            "trend": status.learning_trend,
        },
    )


def learning_digest(brain: "BrainContext") -> WorkflowResult:
    """Run one evolution pass and report what the learner did."""
    before = brain.engine.stats()
    evolution = brain.engine.evolve()

    adaptations = ", ".join(evolution.adaptations) if evolution.adaptations else "None needed"
    message = "\n".join([
        "Learning digest:",
        f"- Total memories stored: {before.memory.count}",
        f"- Average reward: {before.learning.average_reward:.3f}",
        f"- Learning trend: {evolution.trend_label} ({evolution.trend:+.3f})",
        f"- Exploration: {evolution.exploration_before:.3f} -> {evolution.exploration_after:.3f}",
        f"- Adaptations: {adaptations}",
    ])
    return WorkflowResult(
        action=WorkflowAction.LEARNING_DIGEST.value,
        success=True,
        message=message,
        data={
            "trend": evolution.trend,
            "trend_label": evolution.trend_label,
            "exploration_rate": evolution.exploration_after,
            "adaptations": list(evolution.adaptations),
        },
    )


async def search_and_remember(brain: "BrainContext", query: str, limit: int = 5) -> WorkflowResult:
    """Search indexed files and keep the matching passages as memories.

    A passage already held verbatim is not stored twice. The result reports
    what memory now recalls for the query.
    """
    if not query or not query.strip():
        raise InputError("Query must not be empty")

    hits = await brain.search_files(query, limit)
    known = {m.content for m in brain.engine.memory.all()}
    stored: list[str] = []
    for hit in hits:
        content = f"From {hit.name}: {hit.chunk.strip()}"
        if content in known:
            continue
        stored.append(await brain.remember(content, MemoryType.SEMANTIC, FILE_MEMORY_IMPORTANCE))
        known.add(content)

    recalled = await brain.recall(query, limit)
    if not recalled:
        return WorkflowResult(
            action=WorkflowAction.SEARCH_AND_REMEMBER.value,
            success=True,
            message=f"No results found for '{query}'",
        )

    logger.info(f"search_and_remember: {len(hits)} file hits, {len(stored)} new memories")
    return WorkflowResult(
        action=WorkflowAction.SEARCH_AND_REMEMBER.value,
        success=True,
        message=(
            f"Found {len(recalled)} relevant memories for '{query}' "
            f"({len(stored)} new from files)"
        ),
        data={
            "count": len(recalled),
            "stored": stored,
            "top_result": recalled[0].content,
        },
    )


async def run_workflow(
    brain: "BrainContext",
    action: WorkflowAction | str,
    **params: Any,
) -> WorkflowResult:
    """Run a workflow by name; engine errors become an unsuccessful result."""
    try:
        action = WorkflowAction(action)
    except ValueError:
        names = ", ".join(a.value for a in WorkflowAction)
        raise InputError(f"Unknown workflow {action!r} (expected one of: {names})") from None

    logger.info(f"Running workflow {action.value}")
    try:
        if action is WorkflowAction.SUMMARIZE_RECENT:
            return summarize_recent(brain, **params)
        if action is WorkflowAction.LEARNING_DIGEST:
            return learning_digest(brain)
        return await search_and_remember(brain, **params)
    except SuperBrainError as e:
        logger.error(f"Workflow {action.value} failed: {e}")
        return WorkflowResult(action=action.value, success=False, message=str(e))
