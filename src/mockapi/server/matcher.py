"""
MockAPI Scenario Matcher

Selects which configured scenario an endpoint returns for a request.

Selection order:
1. The first scenario (in declaration order) that declares conditions and
   whose conditions all hold for the request.
2. The scenario referenced by the endpoint's default scenario id.
3. The scenario flagged as default.
4. The first scenario in the list.
5. Nothing (the router answers 500).
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .models import EndpointConfig, ScenarioCondition, ScenarioConfig


logger = logging.getLogger("mockapi.server.matcher")

_UNPARSED = object()


@dataclass
class RequestContext:
    """The request attributes conditions are evaluated against."""

    method: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, str] = field(default_factory=dict)
    body: bytes = b''

    def __post_init__(self):
        self.headers = {k.lower(): v for k, v in self.headers.items()}
        self._json_body = _UNPARSED

    @property
    def json_body(self) -> Any:
        """Body parsed as JSON, or None if empty or not valid JSON."""
        if self._json_body is _UNPARSED:
            self._json_body = None
            if self.body:
                try:
                    self._json_body = json.loads(self.body.decode('utf-8'))
                except (json.JSONDecodeError, UnicodeDecodeError, ValueError):
                    logger.debug(f"Request body for {self.method} {self.path} is not valid JSON")
        return self._json_body

    def header(self, key: str) -> Optional[str]:
        return self.headers.get(key.lower())


def stringify(value: Any) -> Optional[str]:
    """Render a JSON value the way a condition compares it."""
    if value is None:
        return None
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(',', ':'))
    return str(value)


def lookup_body_field(body: Any, key: str) -> Any:
    """Look up a top-level key, then fall back to a dotted path."""
    if not isinstance(body, dict):
        return None
    if key in body:
        return body[key]

    current = body
    for part in key.split('.'):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


class ScenarioMatcher:
    """
    Condition-based scenario selection for a single endpoint.

    Example:
        matcher = ScenarioMatcher()
        scenario = matcher.match(endpoint, RequestContext('GET', '/orders', headers={'x-test': '1'}))
    """

    def match(self, endpoint: EndpointConfig, request: RequestContext) -> Optional[ScenarioConfig]:
        """
        Select the scenario to return for a request.

        Args:
            endpoint: Endpoint whose scenarios are considered
            request: Incoming request attributes

        Returns:
            Selected ScenarioConfig, or None if the endpoint has no scenarios
        """
        for scenario in endpoint.scenarios:
            if scenario.is_conditional and self.evaluate_conditions(scenario, request):
                logger.debug(f"Scenario '{scenario.name}' matched conditions for {endpoint.route}")
                return scenario

        return self.default_scenario(endpoint)

    def default_scenario(self, endpoint: EndpointConfig) -> Optional[ScenarioConfig]:
        """Resolve the fallback scenario: explicit default id, default flag, then first."""
        if endpoint.default_scenario_id:
            for scenario in endpoint.scenarios:
                if scenario.id == endpoint.default_scenario_id:
                    return scenario

        for scenario in endpoint.scenarios:
            if scenario.is_default:
                return scenario

        return endpoint.scenarios[0] if endpoint.scenarios else None

    def evaluate_conditions(self, scenario: ScenarioConfig, request: RequestContext) -> bool:
        """All conditions must hold; stops at the first one that does not."""
        for condition in scenario.conditions:
            if not self.evaluate_condition(condition, request):
                return False
        return True

    def evaluate_condition(self, condition: ScenarioCondition, request: RequestContext) -> bool:
        actual = self._actual_value(condition, request)

        if condition.operator == 'exists':
            return actual is not None and actual != ''
        if condition.operator == 'equals':
            return actual is not None and actual == condition.value
        if condition.operator == 'contains':
            return bool(actual) and (condition.value or '') in actual
        return False

    def _actual_value(self, condition: ScenarioCondition, request: RequestContext) -> Optional[str]:
        if condition.type == 'header':
            return request.header(condition.key)
        if condition.type == 'query':
            return request.query.get(condition.key)
        if condition.type == 'body':
            return stringify(lookup_body_field(request.json_body, condition.key))
        return None
