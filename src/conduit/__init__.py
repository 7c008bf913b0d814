"""
Conduit - workflow execution and resilience core.

Turns configured triggers into running, observable, fault-tolerant
workflow executions: trigger evaluation, the execution state machine,
retry/backoff and circuit breakers, dead-letter handling with
compensating rollback, and live monitoring with alert rules.

Architecture::

    conduit.core            errors, logging, settings, events, store, scheduling
    conduit.orchestration   Workflow / Step definitions and the registry
    conduit.triggers        trigger configs, evaluator, trigger service
    conduit.execution       ExecutionEngine, StepContext, StepExecutor port
    conduit.resilience      classifier, backoff, circuit breakers, ResilienceManager
    conduit.deadletter      DeadLetterStore, CompensationManager
    conduit.monitoring      ExecutionMonitor, AlertEvaluator
    conduit.runtime         ConduitRuntime (composition root)
    conduit.api / .cli      FastAPI surface and Typer CLI
"""

from typing import Any

__version__ = "0.1.0"


def __getattr__(name: str) -> Any:
    if name == "ConduitRuntime":
        from conduit.runtime import ConduitRuntime

        return ConduitRuntime
    raise AttributeError(f"module 'conduit' has no attribute {name!r}")


__all__ = ["ConduitRuntime", "__version__"]
