"""
Policy Engine - ordered allow/deny rules per capability.

Agents are restricted to the method/path combinations their capability's
rules grant. Evaluation is a pure function of (method, path, rules):

  1. Rules are evaluated in declared order.
  2. The first matching rule wins.
  3. If no rule matches, the request is denied (fail-closed).

A capability with no rules at all is denied too, unless it is explicitly
configured with both `auto_approve` and `unrestricted`.
"""

import logging
from fnmatch import fnmatchcase
from typing import Any, Sequence, Union

from capbroker.shared.errors import BadRequestError, ConfigurationError
from capbroker.shared.models import PolicyDecision, Rule, RuleEffect
from capbroker.shared.security import canonicalize_request_path

logger = logging.getLogger(__name__)

NO_MATCHING_RULE = "no matching rule"
NO_RULES_CONFIGURED = "no rules configured"

_WILDCARD = "*"
_GLOBSTAR = "**"


def parse_rule(spec: Union[str, dict, Rule]) -> Rule:
    """
    Parse a rule from `"allow GET /v1/customers/*"` or
    `{"effect": "allow", "method": "GET", "path": "/v1/customers/*"}`.
    """
    if isinstance(spec, Rule):
        return spec
    if isinstance(spec, str):
        parts = spec.split()
        if len(parts) != 3:
            raise ConfigurationError(
                f"Invalid rule {spec!r}: expected '<allow|deny> <METHOD|*> <path>'"
            )
        effect, method, path = parts
    elif isinstance(spec, dict):
        try:
            effect, method, path = spec["effect"], spec.get("method", _WILDCARD), spec["path"]
        except KeyError as e:
            raise ConfigurationError(f"Invalid rule {spec!r}: missing {e.args[0]!r}") from e
    else:
        raise ConfigurationError(f"Invalid rule {spec!r}: must be a string or an object")

    try:
        rule_effect = RuleEffect(str(effect).lower())
    except ValueError:
        raise ConfigurationError(f"Invalid rule effect {effect!r}: expected 'allow' or 'deny'") from None
    if not isinstance(method, str) or not method or not (method == _WILDCARD or method.isalpha()):
        raise ConfigurationError(f"Invalid rule method {method!r}")
    if not isinstance(path, str) or not path:
        raise ConfigurationError("Invalid rule: path pattern is empty")
    if path != _WILDCARD and not path.startswith("/"):
        raise ConfigurationError(f"Invalid rule path {path!r}: must start with '/' or be '*'")
    if ".." in path.split("/"):
        raise ConfigurationError(f"Invalid rule path {path!r}: '..' is not allowed")
    return Rule(effect=rule_effect, method=method.upper(), path=path)


def parse_rules(specs: Sequence[Any]) -> tuple[Rule, ...]:
    return tuple(parse_rule(s) for s in specs)


def match_method(pattern: str, method: str) -> bool:
    return pattern == _WILDCARD or pattern.upper() == method.upper()


def match_path(pattern: str, path: str) -> bool:
    """
    Glob-style, segment-wise path matching.

    `*` inside a segment matches within that segment; `**` matches any
    number of segments; a trailing `*` segment matches any remaining
    suffix (including none); a bare `*` pattern matches every path.
    """
    if pattern == _WILDCARD:
        return True
    return _match_segments(_segments(pattern), _segments(path))


def _segments(path: str) -> list[str]:
    return [s for s in path.split("/") if s]


def _match_segments(pattern: list[str], path: list[str]) -> bool:
    if not pattern:
        return not path
    head, rest = pattern[0], pattern[1:]
    if head == _GLOBSTAR:
        return any(_match_segments(rest, path[i:]) for i in range(len(path) + 1))
    if head == _WILDCARD and not rest:
        return True
    if not path:
        return False
    return fnmatchcase(path[0], head) and _match_segments(rest, path[1:])


def evaluate(rules: Sequence[Rule], method: str, path: str) -> PolicyDecision:
    """First matching rule wins; default deny."""
    route = path.split("?", 1)[0]
    for rule in rules:
        if match_method(rule.method, method) and match_path(rule.path, route):
            if rule.effect is RuleEffect.ALLOW:
                return PolicyDecision(allowed=True, reason=f"matched rule: {rule.describe()}", rule=rule)
            return PolicyDecision(allowed=False, reason=f"denied by rule: {rule.describe()}", rule=rule)
    return PolicyDecision(allowed=False, reason=NO_MATCHING_RULE)


class PolicyEngine:
    """Checks a capability's rules against a candidate request."""

    def check(self, capability, method: str, path: str) -> PolicyDecision:
        """
        Evaluate `capability.rules` for (method, path).

        The path is canonicalized first so that dot segments cannot smuggle a
        request past a rule; an uncanonicalizable path is denied.
        """
        try:
            route = canonicalize_request_path(path).split("?", 1)[0]
        except BadRequestError as e:
            logger.warning(f"DENIED: {capability.name} {method} - {e.message}")
            return PolicyDecision(allowed=False, reason=e.message)

        rules = capability.rules
        if not rules:
            if capability.auto_approve and capability.unrestricted:
                return PolicyDecision(allowed=True, reason="unrestricted capability")
            decision = PolicyDecision(allowed=False, reason=NO_RULES_CONFIGURED)
        else:
            decision = evaluate(rules, method, route)

        if not decision.allowed:
            logger.warning(f"DENIED: {capability.name} {method.upper()} {route} ({decision.reason})")
        return decision
