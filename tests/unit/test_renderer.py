"""Tests for payload rendering — token substitution and dynamic rules."""

import json

import pytest

from relay_engine.common.exceptions import ValidationError
from relay_engine.webhooks.dispatcher import WebhookSpec
from relay_engine.webhooks.renderer import PayloadRenderer, find_tokens, flatten_context


@pytest.fixture
def renderer():
    return PayloadRenderer()


class TestFlattenContext:
    def test_nested_keys_become_dotted(self):
        flat = flatten_context({"user": {"name": "Ada", "address": {"city": "Paris"}}})
        assert flat["user.name"] == "Ada"
        assert flat["user.address.city"] == "Paris"
        assert flat["user"] == {"name": "Ada", "address": {"city": "Paris"}}

    def test_flat_context_unchanged(self):
        assert flatten_context({"a": 1, "b": "x"}) == {"a": 1, "b": "x"}


class TestFindTokens:
    def test_distinct_in_order(self):
        template = '{"a": "{{first}}", "b": "{{ second }}", "c": "{{first}}"}'
        assert find_tokens(template) == ["first", "second"]

    def test_empty_template(self):
        assert find_tokens("") == []


class TestSubstitute:
    def test_replaces_tokens(self, renderer):
        out = renderer.substitute('{"email": "{{email}}"}', {"email": "a@b.co"})
        assert out == '{"email": "a@b.co"}'

    def test_whitespace_inside_braces(self, renderer):
        assert renderer.substitute("{{  name  }}", {"name": "Ada"}) == "Ada"

    def test_nested_path(self, renderer):
        context = {"steps": {"1": {"status_code": 201}}}
        assert renderer.substitute("code={{steps.1.status_code}}", context) == "code=201"

    def test_missing_token_renders_empty(self, renderer):
        assert renderer.substitute("hello {{missing}}!", {}) == "hello !"

    def test_text_without_tokens_unchanged(self, renderer):
        template = '{"literal": "{not a token}", "n": 1}'
        assert renderer.substitute(template, {"not a token": "x"}) == template

    def test_value_types(self, renderer):
        context = {"flag": True, "none": None, "items": [1, 2], "n": 3.5}
        out = renderer.substitute("{{flag}}|{{none}}|{{items}}|{{n}}", context)
        assert out == "true||[1, 2]|3.5"


class TestRender:
    def test_json_template(self, renderer):
        out = renderer.render('{"id": "{{id}}"}', "json", {"id": "42"})
        assert json.loads(out) == {"id": "42"}

    def test_pdf_template(self, renderer):
        out = renderer.render("<h1>{{title}}</h1>", "pdf", {"title": "Invoice"})
        assert out == "<h1>Invoice</h1>"

    def test_unknown_payload_type(self, renderer):
        with pytest.raises(ValidationError):
            renderer.render("x", "xml", {})


class TestDynamicRules:
    RULES = json.dumps({
        "rules": [
            {
                "when": {"field": "event_type", "equals": "order"},
                "payload_type": "pdf",
                "template": "<p>Order {{order_id}}</p>",
            },
            {
                "condition": "{{event_type}} == 'notification'",
                "payload_type": "json",
                "template": {"message": "{{message}}"},
            },
        ],
        "default": {"payload_type": "json", "template": '{"fallback": true}'},
    })

    def test_first_matching_rule(self, renderer):
        rendered = renderer.render_payload(
            self.RULES, "dynamic", {"event_type": "order", "order_id": "7"},
        )
        assert rendered.payload_type == "pdf"
        assert rendered.body == "<p>Order 7</p>"

    def test_legacy_condition_rule(self, renderer):
        rendered = renderer.render_payload(
            self.RULES, "dynamic", {"event_type": "notification", "message": "hi"},
        )
        assert rendered.payload_type == "json"
        assert json.loads(rendered.body) == {"message": "hi"}

    def test_default_branch(self, renderer):
        rendered = renderer.render_payload(self.RULES, "dynamic", {"event_type": "other"})
        assert json.loads(rendered.body) == {"fallback": True}

    def test_no_match_no_default_is_empty(self, renderer):
        rules = json.dumps({"rules": [{"when": {"field": "x", "equals": 1}, "template": "{}"}]})
        assert renderer.render(rules, "dynamic", {"x": 2}) == ""

    def test_not_equals(self, renderer):
        rules = json.dumps({
            "rules": [{"when": {"field": "tier", "not_equals": "free"}, "template": "paid"}],
        })
        assert renderer.render(rules, "dynamic", {"tier": "pro"}) == "paid"
        assert renderer.render(rules, "dynamic", {"tier": "free"}) == ""

    def test_invalid_json_rejected(self, renderer):
        with pytest.raises(ValidationError):
            renderer.render("{not json", "dynamic", {})

    def test_rules_must_be_list(self, renderer):
        with pytest.raises(ValidationError):
            renderer.render('{"rules": {}}', "dynamic", {})

    def test_unparseable_condition_rejected(self, renderer):
        rules = json.dumps({"rules": [{"condition": "{{a}} > 3", "template": "x"}]})
        with pytest.raises(ValidationError):
            renderer.render(rules, "dynamic", {"a": 5})

    def test_non_string_when_field_rejected(self, renderer):
        rules = json.dumps({"rules": [{"when": {"field": ["kind"], "equals": "x"}, "template": "{}"}]})
        with pytest.raises(ValidationError, match="must be a string"):
            renderer.render(rules, "dynamic", {"kind": "x"})


class TestRenderWebhook:
    def test_blank_json_template_forwards_raw_data(self, renderer):
        webhook = WebhookSpec(id="w1", name="hook", url="https://example.com", payload_template="")
        out = renderer.render_webhook(webhook, {"steps": {}}, {"email": "a@b.co"})
        assert json.loads(out) == {"email": "a@b.co"}

    def test_template_rendered_against_context(self, renderer):
        webhook = WebhookSpec(
            id="w1", name="hook", url="https://example.com",
            payload_template='{"to": "{{email}}"}',
        )
        out = renderer.render_webhook(webhook, {"email": "a@b.co"}, {})
        assert json.loads(out) == {"to": "a@b.co"}
