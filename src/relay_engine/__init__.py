"""Relay-Engine: ordered webhook automations with durable execution records."""

from relay_engine.automations.conditions import ConditionEvaluator
from relay_engine.executions.engine import ExecutionEngine, ExecutionSummary
from relay_engine.webhooks.dispatcher import RetryPolicy, WebhookDispatcher, WebhookSpec
from relay_engine.webhooks.renderer import PayloadRenderer

__all__ = [
    "ConditionEvaluator",
    "ExecutionEngine",
    "ExecutionSummary",
    "PayloadRenderer",
    "RetryPolicy",
    "WebhookDispatcher",
    "WebhookSpec",
]
__version__ = "0.1.0"
