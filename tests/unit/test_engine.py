"""Tests for the execution engine — ordering, guards, delays, retries, aborts."""

import asyncio
import json
import time

from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from relay_engine.automations.schemas import FormSubmissionTrigger
from relay_engine.automations.service import AutomationStore
from relay_engine.common.exceptions import (
    AutomationInactiveError,
    AutomationNotFoundError,
    PersistenceError,
)
from relay_engine.executions import recorder as recorder_module
from relay_engine.executions.engine import ExecutionEngine
from relay_engine.executions.recorder import ExecutionRecorder
from relay_engine.webhooks.dispatcher import WebhookDispatcher
from relay_engine.webhooks.service import WebhookRegistry
from tests.conftest import make_settings, mock_client


class Harness:
    """An engine wired to a mock upstream; requests are routed by URL path."""

    def __init__(self, db):
        self.db = db
        self.settings = make_settings(shutdown_grace_seconds=1.0)
        self.routes: dict[str, object] = {}
        client, self.transport = mock_client(self._handle)
        self.registry = WebhookRegistry(self.settings)
        self.store = AutomationStore(self.settings)
        self.recorder = ExecutionRecorder(self.settings, db)
        self.engine = ExecutionEngine(
            self.settings,
            db,
            store=self.store,
            registry=self.registry,
            dispatcher=WebhookDispatcher(self.settings, http_client=client),
            recorder=self.recorder,
        )

    def _handle(self, request: httpx.Request) -> httpx.Response:
        route = self.routes.get(request.url.path, 200)
        if callable(route):
            return route(request)
        return httpx.Response(route, text=f"status {route}")

    def paths(self) -> list[str]:
        return [r.url.path for r in self.transport.requests]

    async def webhook(self, path: str, **kwargs) -> str:
        kwargs.setdefault("retry_count", 0)
        kwargs.setdefault("retry_delay_seconds", 0)
        async with self.db.get_session() as session:
            webhook = await self.registry.create_webhook(
                session, name=path.strip("/"), url=f"https://hooks.example.com{path}", **kwargs,
            )
            return webhook.id

    async def automation(self, steps: list[dict], **kwargs) -> str:
        async with self.db.get_session() as session:
            automation = await self.store.create_automation(
                session, name=kwargs.pop("name", "flow"), steps=steps, **kwargs,
            )
            return automation.id

    async def steps_of(self, execution_id: str):
        async with self.db.get_session() as session:
            return await self.recorder.get_steps(session, execution_id)

    async def execution(self, execution_id: str):
        async with self.db.get_session() as session:
            return await self.recorder.get(session, execution_id)

    async def wait_for_steps(self, execution_id: str, count: int, timeout: float = 5.0):
        deadline = time.monotonic() + timeout
        while len(await self.steps_of(execution_id)) < count:
            if time.monotonic() > deadline:
                raise AssertionError(f"{count} step(s) not recorded within {timeout}s")
            await asyncio.sleep(0.02)


@pytest.fixture
async def harness(file_db):
    h = Harness(file_db)
    yield h
    await h.engine.shutdown()
    await h.engine.dispatcher.close()


class TestOrdering:
    async def test_runs_by_step_order_not_insertion(self, harness):
        a = await harness.webhook("/a")
        b = await harness.webhook("/b")
        c = await harness.webhook("/c")
        automation_id = await harness.automation([
            {"webhook_id": a, "step_order": 30},
            {"webhook_id": b, "step_order": 10},
            {"webhook_id": c, "step_order": 20},
        ])
        summary = await harness.engine.execute_and_wait(automation_id)
        assert summary.success
        assert summary.status == "completed"
        assert summary.completed_steps == 3
        assert summary.total_steps == 3
        assert harness.paths() == ["/b", "/c", "/a"]

    async def test_step_records_in_order(self, harness):
        a = await harness.webhook("/a")
        b = await harness.webhook("/b")
        automation_id = await harness.automation([{"webhook_id": a}, {"webhook_id": b}])
        summary = await harness.engine.execute_and_wait(automation_id)
        steps = await harness.steps_of(summary.execution_id)
        assert [s.step_order for s in steps] == [1, 2]
        assert all(s.status == "succeeded" for s in steps)
        assert all(s.http_status == 200 for s in steps)

    async def test_empty_automation_completes(self, harness):
        automation_id = await harness.automation([])
        summary = await harness.engine.execute_and_wait(automation_id)
        assert summary.status == "completed"
        assert summary.total_steps == 0


class TestFailureHandling:
    async def test_failed_step_aborts_execution(self, harness):
        ok = await harness.webhook("/ok")
        broken = await harness.webhook("/broken", retry_count=1)
        harness.routes["/broken"] = 500
        automation_id = await harness.automation([
            {"webhook_id": ok},
            {"webhook_id": broken, "continue_on_failure": False},
        ])

        summary = await harness.engine.execute_and_wait(automation_id)

        assert summary.success is False
        assert summary.status == "failed"
        assert summary.completed_steps == 1
        assert summary.total_steps == 2
        assert "Step 2" in summary.error_message
        steps = await harness.steps_of(summary.execution_id)
        assert steps[1].status == "failed"
        assert steps[1].attempt_count == 2
        assert steps[1].http_status == 500
        assert harness.paths() == ["/ok", "/broken", "/broken"]

    async def test_no_later_step_dispatched_after_abort(self, harness):
        first = await harness.webhook("/first")
        later = await harness.webhook("/later")
        harness.routes["/first"] = 404
        automation_id = await harness.automation([{"webhook_id": first}, {"webhook_id": later}])
        summary = await harness.engine.execute_and_wait(automation_id)
        assert summary.status == "failed"
        assert "/later" not in harness.paths()
        assert len(await harness.steps_of(summary.execution_id)) == 1

    async def test_continue_on_failure(self, harness):
        flaky = await harness.webhook("/flaky")
        after = await harness.webhook("/after")
        harness.routes["/flaky"] = 503
        automation_id = await harness.automation([
            {"webhook_id": flaky, "continue_on_failure": True},
            {"webhook_id": after},
        ])
        summary = await harness.engine.execute_and_wait(automation_id)
        assert summary.status == "completed"
        assert summary.completed_steps == 1
        assert harness.paths() == ["/flaky", "/after"]

    async def test_step_retry_gate(self, harness):
        hook = await harness.webhook("/down", retry_count=3)
        harness.routes["/down"] = 500
        automation_id = await harness.automation([
            {"webhook_id": hook, "retry_on_failure": False},
        ])
        summary = await harness.engine.execute_and_wait(automation_id)
        steps = await harness.steps_of(summary.execution_id)
        assert steps[0].attempt_count == 1
        assert len(harness.transport.requests) == 1

    async def test_retries_until_success(self, harness):
        responses = iter([500, 502, 200])
        hook = await harness.webhook("/eventually", retry_count=3)
        harness.routes["/eventually"] = lambda r: httpx.Response(next(responses))
        automation_id = await harness.automation([{"webhook_id": hook}])
        summary = await harness.engine.execute_and_wait(automation_id)
        steps = await harness.steps_of(summary.execution_id)
        assert summary.status == "completed"
        assert steps[0].attempt_count == 3

    async def test_inactive_webhook_fails_without_dispatch(self, harness):
        hook = await harness.webhook("/off", is_active=False, retry_count=3)
        automation_id = await harness.automation([{"webhook_id": hook}])
        summary = await harness.engine.execute_and_wait(automation_id)
        steps = await harness.steps_of(summary.execution_id)
        assert summary.status == "failed"
        assert steps[0].status == "failed"
        assert steps[0].attempt_count == 0
        assert "inactive" in steps[0].error
        assert harness.transport.requests == []

    async def test_network_error_recorded(self, harness):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        hook = await harness.webhook("/gone")
        harness.routes["/gone"] = refuse
        automation_id = await harness.automation([{"webhook_id": hook}])
        summary = await harness.engine.execute_and_wait(automation_id)
        steps = await harness.steps_of(summary.execution_id)
        assert steps[0].status == "failed"
        assert steps[0].http_status is None
        assert "connection refused" in steps[0].error


class TestConditions:
    async def test_missing_field_skips_step(self, harness):
        guarded = await harness.webhook("/guarded")
        always = await harness.webhook("/always")
        automation_id = await harness.automation([
            {
                "webhook_id": guarded,
                "is_conditional": True,
                "condition_config": {
                    "version": 1,
                    "rules": [{"field": "plan", "operator": "equals", "value": "pro"}],
                },
            },
            {"webhook_id": always},
        ])
        summary = await harness.engine.execute_and_wait(automation_id, {"email": "a@b.co"})
        steps = await harness.steps_of(summary.execution_id)
        assert summary.status == "completed"
        assert steps[0].status == "skipped"
        assert steps[0].attempt_count == 0
        assert harness.paths() == ["/always"]

    async def test_condition_on_previous_step(self, harness):
        first = await harness.webhook("/first")
        follow_up = await harness.webhook("/follow-up")
        harness.routes["/first"] = lambda r: httpx.Response(200, json={"tier": "gold"})
        automation_id = await harness.automation([
            {"webhook_id": first},
            {
                "webhook_id": follow_up,
                "is_conditional": True,
                "condition_config": {
                    "version": 1,
                    "rules": [{"field": "steps.1.json.tier", "operator": "equals", "value": "gold"}],
                },
            },
        ])
        summary = await harness.engine.execute_and_wait(automation_id)
        assert summary.completed_steps == 2
        assert harness.paths() == ["/first", "/follow-up"]

    async def test_malformed_condition_skips(self, harness):
        hook = await harness.webhook("/never")
        automation_id = await harness.automation([
            {"webhook_id": hook, "is_conditional": True, "condition_config": {"plan": "pro"}},
        ])
        summary = await harness.engine.execute_and_wait(automation_id, {"plan": "pro"})
        steps = await harness.steps_of(summary.execution_id)
        assert steps[0].status == "skipped"
        assert harness.transport.requests == []


class TestPayloads:
    async def test_template_rendered_with_trigger_data(self, harness):
        hook = await harness.webhook("/crm", payload_template='{"contact": "{{email}}"}')
        automation_id = await harness.automation([{"webhook_id": hook}])
        await harness.engine.execute_and_wait(automation_id, {"email": "a@b.co"})
        assert json.loads(harness.transport.bodies()[0]) == {"contact": "a@b.co"}

    async def test_blank_template_forwards_trigger_data(self, harness):
        hook = await harness.webhook("/raw")
        automation_id = await harness.automation([{"webhook_id": hook}])
        await harness.engine.execute_and_wait(automation_id, {"email": "a@b.co", "n": 2})
        assert json.loads(harness.transport.bodies()[0]) == {"email": "a@b.co", "n": 2}

    async def test_previous_step_output_available(self, harness):
        create = await harness.webhook("/create")
        notify = await harness.webhook(
            "/notify", payload_template='{"code": "{{steps.1.status_code}}"}',
        )
        harness.routes["/create"] = 201
        automation_id = await harness.automation([{"webhook_id": create}, {"webhook_id": notify}])
        await harness.engine.execute_and_wait(automation_id)
        assert json.loads(harness.transport.bodies()[1]) == {"code": "201"}

    async def test_malformed_dynamic_rules_skip_step(self, harness):
        hook = await harness.webhook("/dyn", payload_type="dynamic", payload_template="{oops")
        automation_id = await harness.automation([{"webhook_id": hook}])
        summary = await harness.engine.execute_and_wait(automation_id)
        steps = await harness.steps_of(summary.execution_id)
        assert steps[0].status == "skipped"
        assert "not valid JSON" in steps[0].error
        assert harness.transport.requests == []

    async def test_non_string_rule_field_skips_step_and_continues(self, harness):
        rules = json.dumps({"rules": [{"when": {"field": ["kind"], "equals": "x"}, "template": "{}"}]})
        dynamic = await harness.webhook("/dyn", payload_type="dynamic", payload_template=rules)
        plain = await harness.webhook("/plain")
        automation_id = await harness.automation([
            {"webhook_id": dynamic, "continue_on_failure": True},
            {"webhook_id": plain},
        ])
        summary = await harness.engine.execute_and_wait(automation_id)
        steps = await harness.steps_of(summary.execution_id)
        assert summary.status == "completed"
        assert [s.status for s in steps] == ["skipped", "succeeded"]
        assert "must be a string" in steps[0].error
        assert harness.paths() == ["/plain"]

    async def test_unexpected_render_error_recorded_as_step_failure(self, harness):
        broken = await harness.webhook("/broken")
        after = await harness.webhook("/after")
        automation_id = await harness.automation([
            {"webhook_id": broken, "continue_on_failure": True},
            {"webhook_id": after},
        ])
        calls = []

        def render(webhook, context, raw_data):
            calls.append(webhook.url)
            if webhook.url.endswith("/broken"):
                raise RuntimeError("renderer exploded")
            return "{}"

        with patch.object(harness.engine.renderer, "render_webhook", side_effect=render):
            summary = await harness.engine.execute_and_wait(automation_id)

        steps = await harness.steps_of(summary.execution_id)
        assert summary.status == "completed"
        assert [s.status for s in steps] == ["failed", "succeeded"]
        assert "renderer exploded" in steps[0].error
        assert harness.paths() == ["/after"]


class TestDelays:
    async def test_delay_before_dispatch(self, harness):
        arrivals: list[float] = []

        def stamp(request):
            arrivals.append(time.monotonic())
            return httpx.Response(200)

        a = await harness.webhook("/a")
        b = await harness.webhook("/b")
        harness.routes["/a"] = stamp
        harness.routes["/b"] = stamp
        automation_id = await harness.automation([
            {"webhook_id": a},
            {"webhook_id": b, "delay_seconds": 1},
        ])
        await harness.engine.execute_and_wait(automation_id)
        assert arrivals[1] - arrivals[0] >= 1.0


class TestLifecycle:
    async def test_unknown_automation(self, harness):
        with pytest.raises(AutomationNotFoundError):
            await harness.engine.execute("missing")

    async def test_inactive_automation_creates_no_record(self, harness):
        automation_id = await harness.automation([], is_active=False)
        with pytest.raises(AutomationInactiveError):
            await harness.engine.execute(automation_id)
        async with harness.db.get_session() as session:
            assert await harness.recorder.list_executions(session, automation_id) == []

    async def test_trigger_data_captured(self, harness):
        automation_id = await harness.automation([])
        summary = await harness.engine.execute_and_wait(automation_id, {"form": "signup"})
        execution = await harness.execution(summary.execution_id)
        assert execution.trigger_data == {"form": "signup"}
        assert execution.completed_at is not None

    async def test_execute_returns_before_completion(self, harness):
        hook = await harness.webhook("/slow")
        automation_id = await harness.automation([{"webhook_id": hook, "delay_seconds": 30}])
        execution_id = await harness.engine.execute(automation_id)
        assert harness.engine.is_running(execution_id)
        execution = await harness.execution(execution_id)
        assert execution.status == "running"
        harness.engine.cancel(execution_id)
        await harness.engine.wait(execution_id)

    async def test_cancel_during_delay(self, harness):
        first = await harness.webhook("/first")
        slow = await harness.webhook("/slow")
        automation_id = await harness.automation([
            {"webhook_id": first},
            {"webhook_id": slow, "delay_seconds": 30},
        ])
        execution_id = await harness.engine.execute(automation_id)
        await harness.wait_for_steps(execution_id, 1)
        assert harness.engine.cancel(execution_id, "cancelled by user") is True
        await harness.engine.wait(execution_id)

        execution = await harness.execution(execution_id)
        assert execution.status == "failed"
        assert "cancelled" in execution.error_message
        assert execution.completed_steps == 1
        assert harness.paths() == ["/first"]
        assert not harness.engine.is_running(execution_id)

    async def test_cancel_unknown_execution(self, harness):
        assert harness.engine.cancel("missing") is False

    async def test_shutdown_marks_live_runs_failed(self, harness):
        hook = await harness.webhook("/later")
        automation_id = await harness.automation([{"webhook_id": hook, "delay_seconds": 30}])
        execution_id = await harness.engine.execute(automation_id)
        await harness.engine.shutdown()
        execution = await harness.execution(execution_id)
        assert execution.status == "failed"
        assert "shutting down" in execution.error_message

    async def test_concurrent_runs_are_independent(self, harness):
        a = await harness.webhook("/a")
        b = await harness.webhook("/b")
        harness.routes["/b"] = 500
        ok_id = await harness.automation([{"webhook_id": a}], name="ok")
        bad_id = await harness.automation([{"webhook_id": b}], name="bad")

        ok, bad = await asyncio.gather(
            harness.engine.execute_and_wait(ok_id),
            harness.engine.execute_and_wait(bad_id),
        )
        assert ok.status == "completed"
        assert bad.status == "failed"
        assert ok.execution_id != bad.execution_id


class TestFormSubmission:
    async def test_starts_matching_automations(self, harness):
        hook = await harness.webhook("/signup")
        await harness.automation(
            [{"webhook_id": hook}], name="signup",
            trigger=FormSubmissionTrigger(form_id="signup"),
        )
        await harness.automation(
            [{"webhook_id": hook}], name="contact",
            trigger=FormSubmissionTrigger(form_id="contact"),
        )

        execution_ids = await harness.engine.trigger_form_submission("signup", {"email": "a@b.co"})
        assert len(execution_ids) == 1
        await harness.engine.wait(execution_ids[0])
        execution = await harness.execution(execution_ids[0])
        assert execution.status == "completed"
        assert execution.trigger_data == {"form_id": "signup", "email": "a@b.co"}

    async def test_submitted_form_id_cannot_override_route(self, harness):
        hook = await harness.webhook("/signup")
        await harness.automation(
            [{"webhook_id": hook}], name="signup",
            trigger=FormSubmissionTrigger(form_id="signup"),
        )
        execution_ids = await harness.engine.trigger_form_submission(
            "signup", {"form_id": "spoofed", "email": "a@b.co"},
        )
        await harness.engine.wait(execution_ids[0])
        execution = await harness.execution(execution_ids[0])
        assert execution.trigger_data["form_id"] == "signup"


class TestPersistenceFailures:
    async def test_step_write_failure_keeps_partial_history(self, harness):
        a = await harness.webhook("/a")
        b = await harness.webhook("/b")
        automation_id = await harness.automation([{"webhook_id": a}, {"webhook_id": b}])
        real_model = recorder_module.StepExecutionModel

        def build_row(**fields):
            if fields["step_order"] == 2:
                raise OperationalError("INSERT INTO automation_step_executions", {}, Exception("disk I/O error"))
            return real_model(**fields)

        with patch.object(recorder_module, "StepExecutionModel", side_effect=build_row):
            summary = await harness.engine.execute_and_wait(automation_id)

        assert summary.status == "failed"
        assert "Could not record step 2" in summary.error_message
        assert "disk I/O error" in summary.error_message
        steps = await harness.steps_of(summary.execution_id)
        assert [(s.step_order, s.status) for s in steps] == [(1, "succeeded")]
        execution = await harness.execution(summary.execution_id)
        assert execution.completed_steps == 1
        assert execution.completed_at is not None

    async def test_mark_running_failure_does_not_leave_pending(self, harness):
        automation_id = await harness.automation([])
        failing = AsyncMock(side_effect=PersistenceError("Could not start execution: locked"))
        with patch.object(harness.recorder, "mark_running", failing):
            with pytest.raises(PersistenceError):
                await harness.engine.execute(automation_id)

        async with harness.db.get_session() as session:
            executions = await harness.recorder.list_executions(session, automation_id)
        assert len(executions) == 1
        assert executions[0].status == "failed"
        assert executions[0].error_message == "Could not start execution: locked"
