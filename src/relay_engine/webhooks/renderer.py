"""Payload rendering: ``{{token}}`` substitution and dynamic rule selection.

Templates are rendered fail-soft: a token with no value in the context
renders as the empty string, so a template previewed in the editor with
unbound variables still produces a payload. Only the ``{{...}}`` tokens are
touched; every other character of the template is emitted unchanged.

``dynamic`` templates are a JSON rule document::

    {
      "rules": [
        {"when": {"field": "event_type", "equals": "order"},
         "payload_type": "pdf", "template": "<h1>{{order_id}}</h1>"},
        {"condition": "{{event_type}} == 'notification'",
         "payload_type": "json", "template": {"message": "{{message}}"}}
      ],
      "default": {"payload_type": "json", "template": "{}"}
    }

The first rule whose equality test holds is rendered; with no match and no
default the payload is empty.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping

from relay_engine.common.exceptions import ValidationError

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

# "{{field}} == 'value'" / "{{field}} === \"value\"" / "!=" variants
_LEGACY_CONDITION = re.compile(
    r"""^\s*\{\{\s*(?P<field>[^{}]+?)\s*\}\}\s*(?P<op>===|==|!==|!=)\s*
        (?P<quote>['"]?)(?P<value>.*?)(?P=quote)\s*$""",
    re.VERBOSE,
)


@dataclass(frozen=True)
class RenderedPayload:
    body: str
    payload_type: str


def flatten_context(data: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested mappings into dotted keys, keeping the top-level keys too.

    ``{"user": {"name": "x"}}`` yields ``{"user": {...}, "user.name": "x"}``.
    """
    flat: dict[str, Any] = {}
    for key, value in data.items():
        full_key = f"{prefix}{key}"
        flat[full_key] = value
        if isinstance(value, Mapping):
            flat.update(flatten_context(value, prefix=f"{full_key}."))
    return flat


def find_tokens(template: str) -> list[str]:
    """All distinct token names in order of first appearance."""
    seen: list[str] = []
    for match in TOKEN_PATTERN.finditer(template or ""):
        name = match.group(1)
        if name not in seen:
            seen.append(name)
    return seen


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


class PayloadRenderer:
    """Renders webhook payload templates against a flattened context."""

    def substitute(self, template: str, context: Mapping[str, Any]) -> str:
        if not template:
            return ""
        flat = flatten_context(context)

        def _replace(match: re.Match) -> str:
            return _stringify(flat.get(match.group(1)))

        return TOKEN_PATTERN.sub(_replace, template)

    def render(self, template: str, payload_type: str, context: Mapping[str, Any]) -> str:
        return self.render_payload(template, payload_type, context).body

    def render_webhook(
        self, webhook: Any, context: Mapping[str, Any], raw_data: Mapping[str, Any],
    ) -> str:
        """Render a webhook's template; a JSON webhook without one forwards ``raw_data``."""
        if webhook.payload_type == "json" and not (webhook.payload_template or "").strip():
            return json.dumps(dict(raw_data), default=str)
        return self.render(webhook.payload_template, webhook.payload_type, context)

    def render_payload(
        self, template: str, payload_type: str, context: Mapping[str, Any],
    ) -> RenderedPayload:
        """Render and report the effective payload type.

        For ``dynamic`` the effective type is the one of the selected rule.
        Raises ValidationError when a dynamic rule document is malformed.
        """
        if payload_type == "dynamic":
            return self._render_dynamic(template, context)
        if payload_type not in ("json", "pdf"):
            raise ValidationError(f"Unsupported payload type: {payload_type}")
        return RenderedPayload(self.substitute(template, context), payload_type)

    # ── Dynamic rules ──

    def _render_dynamic(self, template: str, context: Mapping[str, Any]) -> RenderedPayload:
        try:
            document = json.loads(template) if template else {}
        except json.JSONDecodeError as e:
            raise ValidationError(f"Dynamic payload rules are not valid JSON: {e}") from e
        if not isinstance(document, dict):
            raise ValidationError("Dynamic payload rules must be a JSON object")

        rules = document.get("rules", [])
        if not isinstance(rules, list):
            raise ValidationError("Dynamic payload 'rules' must be a list")

        flat = flatten_context(context)
        for index, rule in enumerate(rules):
            if not isinstance(rule, dict):
                raise ValidationError(f"Dynamic payload rule {index} must be an object")
            if self._rule_matches(rule, flat, index):
                return self._render_branch(rule, context, f"rule {index}")

        default = document.get("default")
        if default is None:
            logger.info("No dynamic payload rule matched; rendering empty payload")
            return RenderedPayload("", "json")
        if not isinstance(default, dict):
            raise ValidationError("Dynamic payload 'default' must be an object")
        return self._render_branch(default, context, "default")

    def _render_branch(
        self, branch: dict[str, Any], context: Mapping[str, Any], label: str,
    ) -> RenderedPayload:
        payload_type = branch.get("payload_type", "json")
        if payload_type not in ("json", "pdf"):
            raise ValidationError(f"Dynamic payload {label} has unsupported payload_type {payload_type!r}")
        template = branch.get("template", "")
        if isinstance(template, (dict, list)):
            template = json.dumps(template)
        elif not isinstance(template, str):
            raise ValidationError(f"Dynamic payload {label} template must be a string or object")
        return RenderedPayload(self.substitute(template, context), payload_type)

    @staticmethod
    def _rule_matches(rule: dict[str, Any], flat: Mapping[str, Any], index: int) -> bool:
        when = rule.get("when")
        if when is not None:
            if not isinstance(when, dict) or "field" not in when:
                raise ValidationError(f"Dynamic payload rule {index} 'when' needs a field")
            if not isinstance(when["field"], str):
                raise ValidationError(f"Dynamic payload rule {index} 'when.field' must be a string")
            if "equals" in when:
                return flat.get(when["field"]) == when["equals"]
            if "not_equals" in when:
                return flat.get(when["field"]) != when["not_equals"]
            raise ValidationError(f"Dynamic payload rule {index} 'when' needs equals or not_equals")

        condition = rule.get("condition")
        if condition is not None:
            match = _LEGACY_CONDITION.match(str(condition))
            if match is None:
                raise ValidationError(f"Dynamic payload rule {index} condition is not an equality test")
            actual = _stringify(flat.get(match.group("field")))
            equal = actual == match.group("value")
            return equal if match.group("op") in ("==", "===") else not equal

        # A rule without a test always matches.
        return True
