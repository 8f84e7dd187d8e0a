"""
Workflow runner - drives the agent through a multi-task job.

A workflow is a list of setup tasks, a task repeated in chunks until a
completion check passes, and a cleanup task (typically logging out). The
wall-clock deadline is checked between chunks, never mid-call, so an
expired deadline still ends with the cleanup task.

Workflows are described in YAML:

    system_instructions: You are a careful assistant.
    setup_tasks:
      - Visit https://example.com and log in.
    chunk_task: |
      Chunk {chunk} of {max_chunks}. Answer three questions as:
      {persona}
    max_chunks: 35
    completion_criteria: a thank-you page
    cleanup_task: Log out.
    persona_file: personas/alex.json
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from browsepilot.agent_loop import (
    DEFAULT_COMPLETION_CRITERIA,
    DEFAULT_SYSTEM_INSTRUCTIONS,
    AgentLoop,
)
from browsepilot.persona import format_persona, load_persona
from browsepilot.types import TokenUsage

logger = logging.getLogger(__name__)


class Deadline:
    """A wall-clock budget. Zero or negative seconds means no deadline."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.seconds = seconds
        self._clock = clock
        self._start = clock()

    @property
    def enabled(self) -> bool:
        return self.seconds > 0

    @property
    def expired(self) -> bool:
        return self.enabled and self._clock() - self._start >= self.seconds

    def remaining(self) -> float | None:
        if not self.enabled:
            return None
        return max(0.0, self.seconds - (self._clock() - self._start))


class WorkflowStatus(Enum):
    """How a workflow ended."""
    COMPLETED = "completed"
    DEADLINE = "deadline"
    EXHAUSTED = "exhausted"

    @property
    def exit_code(self) -> int:
        return 1 if self is WorkflowStatus.EXHAUSTED else 0


@dataclass
class WorkflowSpec:
    """A workflow definition."""
    chunk_task: str
    setup_tasks: list[str] = field(default_factory=list)
    max_chunks: int = 35
    system_instructions: str = DEFAULT_SYSTEM_INSTRUCTIONS
    completion_criteria: str = DEFAULT_COMPLETION_CRITERIA
    cleanup_task: str | None = None
    persona: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Path | None = None) -> "WorkflowSpec":
        if not isinstance(data, dict) or not data.get("chunk_task"):
            raise ValueError("workflow must define chunk_task")
        persona = data.get("persona")
        persona_file = data.get("persona_file")
        if persona_file:
            path = Path(persona_file)
            if base_dir is not None and not path.is_absolute():
                path = base_dir / path
            persona = load_persona(path)
        max_chunks = int(data.get("max_chunks", 35))
        if max_chunks < 1:
            raise ValueError("max_chunks must be at least 1")
        spec = cls(
            chunk_task=data["chunk_task"],
            setup_tasks=list(data.get("setup_tasks") or []),
            max_chunks=max_chunks,
            system_instructions=data.get("system_instructions") or DEFAULT_SYSTEM_INSTRUCTIONS,
            completion_criteria=data.get("completion_criteria") or DEFAULT_COMPLETION_CRITERIA,
            cleanup_task=data.get("cleanup_task"),
            persona=persona,
        )
        try:
            spec.render_chunk(1)
        except (KeyError, IndexError, ValueError) as e:
            raise ValueError(
                f"chunk_task is not a valid template ({e!r}); "
                "write literal braces as {{ and }}"
            ) from e
        return spec

    @classmethod
    def from_yaml(cls, path: str | Path) -> "WorkflowSpec":
        path = Path(path)
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data, base_dir=path.parent)

    def render_chunk(self, chunk: int) -> str:
        persona = format_persona(self.persona) if self.persona else ""
        return self.chunk_task.format(
            chunk=chunk,
            max_chunks=self.max_chunks,
            persona=persona,
        )


@dataclass
class WorkflowResult:
    """Outcome of a workflow run."""
    status: WorkflowStatus
    chunks_run: int
    usage: TokenUsage


class WorkflowRunner:
    """Runs a WorkflowSpec against one AgentLoop."""

    def __init__(
        self,
        agent: AgentLoop,
        spec: WorkflowSpec,
        deadline: Deadline | None = None,
    ) -> None:
        self.agent = agent
        self.spec = spec
        self.deadline = deadline or Deadline(0)

    async def _run(self, task: str) -> str:
        return await self.agent.run_task(task, self.spec.system_instructions)

    async def run(self) -> WorkflowResult:
        """
        Run setup, chunks and cleanup.

        Setup failures propagate without cleanup. Chunk failures are retried
        once and then left to the completion check; anything else raised in
        the chunk phase still runs cleanup before propagating.
        """
        if self.deadline.enabled:
            logger.info(f"Workflow will stop after {self.deadline.seconds / 60:.1f} minutes")

        for task in self.spec.setup_tasks:
            await self._run(task)

        status = WorkflowStatus.EXHAUSTED
        chunks_run = 0
        try:
            for chunk in range(1, self.spec.max_chunks + 1):
                if self.deadline.expired:
                    logger.info("Deadline reached, leaving the chunk loop")
                    status = WorkflowStatus.DEADLINE
                    break

                logger.info(f"--- Chunk {chunk} / {self.spec.max_chunks} ---")
                chunks_run += 1
                await self._run_chunk(chunk)

                if await self.agent.check_if_complete(self.spec.completion_criteria):
                    logger.info("Workflow task complete, closing browser tabs")
                    await self.agent.governor.close_all_tabs()
                    status = WorkflowStatus.COMPLETED
                    break
                logger.info("Not complete yet, continuing")
        finally:
            await self.cleanup()

        usage = self.agent.token_usage
        logger.info(
            f"Token usage: total={usage.total_tokens} "
            f"prompt={usage.prompt_tokens} completion={usage.completion_tokens}"
        )
        return WorkflowResult(status=status, chunks_run=chunks_run, usage=usage)

    async def _run_chunk(self, chunk: int) -> None:
        task = self.spec.render_chunk(chunk)
        try:
            await self._run(task)
        except Exception as e:
            logger.error(f"Error in chunk {chunk}: {e}. Retrying once")
            try:
                await self._run(task)
            except Exception as retry_error:
                logger.error(f"Retry failed for chunk {chunk}: {retry_error}")

    async def cleanup(self) -> None:
        if not self.spec.cleanup_task:
            return
        logger.info("Running cleanup task")
        try:
            await self._run(self.spec.cleanup_task)
        except Exception as e:
            logger.error(f"Cleanup task failed: {e}")
