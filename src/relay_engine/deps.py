"""Dependency injection singletons for Relay-Engine."""

from relay_engine.common.config import get_settings
from relay_engine.common.database import DatabaseManager
from relay_engine.automations.conditions import ConditionEvaluator
from relay_engine.automations.service import AutomationStore
from relay_engine.executions.engine import ExecutionEngine
from relay_engine.executions.recorder import ExecutionRecorder
from relay_engine.webhooks.dispatcher import WebhookDispatcher
from relay_engine.webhooks.renderer import PayloadRenderer
from relay_engine.webhooks.service import WebhookRegistry

_db: DatabaseManager | None = None
_registry: WebhookRegistry | None = None
_dispatcher: WebhookDispatcher | None = None
_renderer: PayloadRenderer | None = None
_evaluator: ConditionEvaluator | None = None
_store: AutomationStore | None = None
_recorder: ExecutionRecorder | None = None
_engine: ExecutionEngine | None = None


def get_db() -> DatabaseManager:
    global _db
    if _db is None:
        _db = DatabaseManager(get_settings())
    return _db


def get_webhook_registry() -> WebhookRegistry:
    global _registry
    if _registry is None:
        _registry = WebhookRegistry(get_settings())
    return _registry


def get_webhook_dispatcher() -> WebhookDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = WebhookDispatcher(get_settings())
    return _dispatcher


def get_payload_renderer() -> PayloadRenderer:
    global _renderer
    if _renderer is None:
        _renderer = PayloadRenderer()
    return _renderer


def get_condition_evaluator() -> ConditionEvaluator:
    global _evaluator
    if _evaluator is None:
        _evaluator = ConditionEvaluator()
    return _evaluator


def get_automation_store() -> AutomationStore:
    global _store
    if _store is None:
        _store = AutomationStore(get_settings())
    return _store


def get_execution_recorder() -> ExecutionRecorder:
    global _recorder
    if _recorder is None:
        _recorder = ExecutionRecorder(get_settings(), get_db())
    return _recorder


def get_execution_engine() -> ExecutionEngine:
    global _engine
    if _engine is None:
        _engine = ExecutionEngine(
            get_settings(),
            get_db(),
            store=get_automation_store(),
            registry=get_webhook_registry(),
            dispatcher=get_webhook_dispatcher(),
            recorder=get_execution_recorder(),
            renderer=get_payload_renderer(),
            evaluator=get_condition_evaluator(),
        )
    return _engine


def reset_singletons() -> None:
    """Reset all singletons (for testing)."""
    global _db, _registry, _dispatcher, _renderer, _evaluator, _store, _recorder, _engine
    _db = None
    _registry = None
    _dispatcher = None
    _renderer = None
    _evaluator = None
    _store = None
    _recorder = None
    _engine = None
