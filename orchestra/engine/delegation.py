"""Agent delegation: run tasks in child interactions of an orchestrator.

Each task gets its own child interaction (parent_id = the orchestrator)
with an agent system framing and the delegation tools removed, so agents
cannot delegate recursively. The child runs one statement through the
TurnEngine with a smaller turn budget.

execute_tasks() runs a batch either in input order (sync), consulting
the ErrorHandler after each failure, or concurrently (async), where
every task's outcome is independent and failures become failed
CompletedTasks.
"""

from __future__ import annotations

import asyncio
import logging

from orchestra.collaborations.registry import CollaborationRegistry
from orchestra.config import Settings
from orchestra.engine.failures import (
    ErrorHandler,
    ErrorHandlingConfig,
    ErrorStrategy,
    FailureAction,
    FailureDecision,
)
from orchestra.engine.tasks import CompletedTask, ExecutionMode, Task
from orchestra.engine.turns import StatementOptions, TurnEngine
from orchestra.errors import EmptyPromptError, error_info
from orchestra.interactions.interaction import Interaction
from orchestra.llm.prompts import PromptRenderer
from orchestra.tools.dispatch import ToolDispatchPort

logger = logging.getLogger(__name__)

DELEGATION_TOOL_NAMES = frozenset({"delegate_tasks"})


class AgentDelegationEngine:
    def __init__(
        self,
        settings: Settings,
        turns: TurnEngine,
        registry: CollaborationRegistry,
        dispatcher: ToolDispatchPort,
        renderer: PromptRenderer,
    ) -> None:
        self._settings = settings
        self._turns = turns
        self._registry = registry
        self._dispatcher = dispatcher
        self._renderer = renderer

    def default_error_config(self) -> ErrorHandlingConfig:
        return ErrorHandlingConfig(
            strategy=self._settings.delegation_strategy,
            max_retries=self._settings.delegation_max_retries,
            continue_on_error_threshold=self._settings.delegation_continue_threshold,
        )

    async def create_agent_interaction(
        self,
        parent: Interaction,
        title: str,
        background: str | None = None,
    ) -> Interaction:
        """Create a child interaction scoped to ``parent`` with restricted tools."""
        allowed = parent.tool_names if parent.tool_names is not None else self._dispatcher.tool_names
        tool_names = [name for name in allowed if name not in DELEGATION_TOOL_NAMES]
        system = self._renderer.render("agent_system", {
            "title": title,
            "background": background or "",
            "tool_names": tool_names,
        })

        model = ""
        collaboration = (
            self._registry.get_collaboration(parent.collaboration_id) if parent.collaboration_id else None
        )
        if collaboration is not None and collaboration.params.agent.model:
            model = collaboration.params.agent.model

        child = Interaction(
            parent_id=parent.id,
            collaboration_id=parent.collaboration_id,
            title=title,
            model=model,
            base_system=system,
            tool_names=tool_names,
        )
        if collaboration is not None:
            collaboration.add_interaction(child)
        logger.info("Created agent interaction %s for '%s' (parent %s)", child.id, title, parent.id)
        return child

    async def execute_task(self, parent: Interaction, task: Task) -> CompletedTask:
        """Run one task in a fresh child interaction. Raises on failure."""
        if not task.instructions or not task.instructions.strip():
            raise EmptyPromptError(f"Task '{task.title}' has no instructions", task=task.title)

        child = await self.create_agent_interaction(parent, task.title, task.background)
        response = await self._turns.run_statement(
            child,
            task.statement(),
            StatementOptions(max_turns=self._settings.agent_max_turns),
        )
        logger.info("Task '%s' completed in interaction %s (%s)", task.title, child.id, response.termination)
        return CompletedTask(
            title=task.title,
            status="completed",
            result=response.answer,
            interaction_id=child.id,
        )

    async def execute_tasks(
        self,
        parent: Interaction,
        tasks: list[Task],
        mode: ExecutionMode = ExecutionMode.SYNC,
        error_config: ErrorHandlingConfig | None = None,
    ) -> list[CompletedTask]:
        handler = ErrorHandler(error_config or self.default_error_config())
        logger.info(
            "Executing %d tasks for %s (mode=%s, strategy=%s)",
            len(tasks), parent.id, mode, handler.config.strategy,
        )
        if ExecutionMode(mode) is ExecutionMode.ASYNC:
            return list(await asyncio.gather(*(self._run_independent(parent, t, handler) for t in tasks)))
        return await self._run_sequential(parent, tasks, handler)

    async def _run_sequential(
        self,
        parent: Interaction,
        tasks: list[Task],
        handler: ErrorHandler,
    ) -> list[CompletedTask]:
        results: list[CompletedTask] = []
        failures = 0
        for task in tasks:
            retry_count = 0
            while True:
                try:
                    results.append(await self.execute_task(parent, task))
                    break
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    count = failures if handler.config.strategy is ErrorStrategy.CONTINUE_ON_ERROR else retry_count
                    decision = self._decide(handler, e, task, count)
                    if decision.action is FailureAction.RETRY:
                        retry_count += 1
                        continue
                    if decision.action is FailureAction.STOP:
                        if decision.error is e:
                            raise
                        raise decision.error from e
                    failures += 1
                    results.append(self._failed(task, e))
                    break
        return results

    async def _run_independent(self, parent: Interaction, task: Task, handler: ErrorHandler) -> CompletedTask:
        retry_count = 0
        while True:
            try:
                return await self.execute_task(parent, task)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if handler.config.strategy is not ErrorStrategy.RETRY:
                    return self._failed(task, e)
                decision = self._decide(handler, e, task, retry_count)
                if decision.action is FailureAction.RETRY:
                    retry_count += 1
                    continue
                return self._failed(task, decision.error)

    @staticmethod
    def _decide(handler: ErrorHandler, error: Exception, task: Task, count: int) -> FailureDecision:
        decision = handler.handle_error(error, task, count)
        # A task without instructions fails the same way every time
        if decision.action is FailureAction.RETRY and isinstance(error, EmptyPromptError):
            return FailureDecision(FailureAction.CONTINUE, error)
        return decision

    @staticmethod
    def _failed(task: Task, error: Exception) -> CompletedTask:
        info = error_info(error)
        return CompletedTask(
            title=task.title,
            status="failed",
            error=info["message"],
            error_code=info["code"],
        )
