"""Turn loop, forced summaries and agent delegation."""

from orchestra.engine.compaction import ConversationCompactor, SummaryResult, summary_budget
from orchestra.engine.delegation import AgentDelegationEngine
from orchestra.engine.failures import ErrorHandler, ErrorHandlingConfig, ErrorStrategy, FailureAction
from orchestra.engine.tasks import CompletedTask, ExecutionMode, Task
from orchestra.engine.turns import EngineCapabilities, StatementOptions, TurnEngine

__all__ = [
    "AgentDelegationEngine",
    "CompletedTask",
    "ConversationCompactor",
    "EngineCapabilities",
    "ErrorHandler",
    "ErrorHandlingConfig",
    "ErrorStrategy",
    "ExecutionMode",
    "FailureAction",
    "StatementOptions",
    "SummaryResult",
    "Task",
    "TurnEngine",
    "summary_budget",
]
