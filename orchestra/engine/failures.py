"""Failure strategies for delegated task batches.

ErrorHandler.handle_error() returns an explicit decision instead of an
error value: RETRY the task, CONTINUE with the next one, or STOP the
batch with the decision's error. It does no I/O apart from logging.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from orchestra.errors import MaxRetriesExceededError, ThresholdExceededError

if TYPE_CHECKING:
    from orchestra.engine.tasks import Task

logger = logging.getLogger(__name__)


class ErrorStrategy(StrEnum):
    FAIL_FAST = "fail_fast"
    CONTINUE_ON_ERROR = "continue_on_error"
    RETRY = "retry"


class ErrorHandlingConfig(BaseModel):
    """Failure policy for one execute_tasks call. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    strategy: ErrorStrategy = ErrorStrategy.RETRY
    max_retries: int = Field(3, ge=0)
    continue_on_error_threshold: int = Field(50, ge=0)


class FailureAction(StrEnum):
    CONTINUE = "continue"
    RETRY = "retry"
    STOP = "stop"


@dataclass(frozen=True)
class FailureDecision:
    action: FailureAction
    error: Exception

    @property
    def should_stop(self) -> bool:
        return self.action is FailureAction.STOP


class ErrorHandler:
    def __init__(self, config: ErrorHandlingConfig) -> None:
        self.config = config

    def handle_error(self, error: Exception, task: Task, retry_count: int) -> FailureDecision:
        """Decide what to do after ``task`` failed with ``error``.

        ``retry_count`` is the number of retries already spent on the task
        (retry strategy) or the failures so far in the batch
        (continue_on_error strategy).
        """
        strategy = self.config.strategy
        if strategy is ErrorStrategy.FAIL_FAST:
            logger.error("Task '%s' failed (fail_fast): %s", task.title, error)
            return FailureDecision(FailureAction.STOP, error)

        if strategy is ErrorStrategy.CONTINUE_ON_ERROR:
            if retry_count >= self.config.continue_on_error_threshold:
                logger.error(
                    "Task '%s' failed, error threshold %d reached: %s",
                    task.title, self.config.continue_on_error_threshold, error,
                )
                return FailureDecision(
                    FailureAction.STOP,
                    ThresholdExceededError(
                        f"Error threshold exceeded after {retry_count} failures: {error}",
                        task=task.title,
                        threshold=self.config.continue_on_error_threshold,
                    ),
                )
            logger.warning("Task '%s' failed, continuing: %s", task.title, error)
            return FailureDecision(FailureAction.CONTINUE, error)

        if retry_count < self.config.max_retries:
            logger.warning(
                "Task '%s' failed, retrying (%d/%d): %s",
                task.title, retry_count + 1, self.config.max_retries, error,
            )
            return FailureDecision(FailureAction.RETRY, error)
        logger.error("Task '%s' failed after %d retries: %s", task.title, retry_count, error)
        return FailureDecision(
            FailureAction.STOP,
            MaxRetriesExceededError(
                f"Max retries ({self.config.max_retries}) exceeded: {error}",
                task=task.title,
                max_retries=self.config.max_retries,
            ),
        )
