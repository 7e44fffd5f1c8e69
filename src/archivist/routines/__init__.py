from archivist.routines.base import (
    DEFAULT_ROUTINES,
    Outcome,
    RoutineDefinition,
    RoutineKind,
    build_routine_table,
)
from archivist.routines.invoker import InvocationResult, RoutineInvoker
from archivist.routines.retry import RetryDecision, RetryPolicy

__all__ = [
    "DEFAULT_ROUTINES",
    "InvocationResult",
    "Outcome",
    "RetryDecision",
    "RetryPolicy",
    "RoutineDefinition",
    "RoutineInvoker",
    "RoutineKind",
    "build_routine_table",
]
