"""Trusted-data policy evaluation for tool results.

Policies are YAML-defined rules that inspect a tool's result payload and
decide whether the data can be trusted, must be quarantined, or must be
blocked outright before it reaches the model.

Each rule targets a tool (optionally scoped to an agent and MCP server),
extracts a value from the result at a dotted attribute path, and compares
it with an operator:
- equal / notEqual
- contains / notContains
- startsWith / endsWith
- regex

The first matching rule wins. If no rule matches, the result is trusted.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern, Protocol

import yaml

_logger = logging.getLogger("gateway")


class PolicyOperator(str, Enum):
    """Comparison applied to the extracted attribute value."""

    EQUAL = "equal"
    NOT_EQUAL = "notEqual"
    CONTAINS = "contains"
    NOT_CONTAINS = "notContains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    REGEX = "regex"


class PolicyAction(str, Enum):
    """What a matching rule does to the tool result."""

    BLOCK = "block"
    MARK_AS_UNTRUSTED = "mark_as_untrusted"
    MARK_AS_TRUSTED = "mark_as_trusted"


class PolicyConfigError(ValueError):
    """Raised when a policy rule cannot be parsed or compiled."""

    def __init__(self, rule: str, detail: str) -> None:
        self.rule = rule
        self.detail = detail
        super().__init__("Invalid policy rule '{}': {}".format(rule, detail))


@dataclass
class PolicyEvaluation:
    """Outcome of evaluating a tool result against the trusted-data policies."""

    is_trusted: bool
    is_blocked: bool = False
    reason: Optional[str] = None


_MISSING = object()


def extract_attribute(data: Any, path: str) -> Any:
    """Walk a dotted path into nested JSON data.

    Integer segments index into lists. An empty path returns ``data``
    itself. Returns the module sentinel ``_MISSING`` when the path does
    not exist.
    """
    if not path:
        return data
    current = data
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment not in current:
                return _MISSING
            current = current[segment]
        elif isinstance(current, list):
            try:
                index = int(segment)
            except ValueError:
                return _MISSING
            if index < 0 or index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def stringify(value: Any) -> str:
    """Coerce an extracted value to the string all operators compare on."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool) or value is None:
        return json.dumps(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


@dataclass
class TrustedDataPolicy:
    """A single trusted-data rule parsed from YAML configuration."""

    tool_name: str
    operator: PolicyOperator
    value: str
    action: PolicyAction
    attribute_path: str = ""
    description: str = ""
    agent_id: Optional[str] = None
    mcp_server_name: Optional[str] = None
    _pattern: Optional[Pattern[str]] = field(default=None, init=False, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrustedDataPolicy":
        """Create a TrustedDataPolicy from a dictionary (YAML-parsed)."""
        name = str(data.get("description") or data.get("tool_name") or "unnamed-rule")
        if not data.get("tool_name"):
            raise PolicyConfigError(name, "tool_name is required")
        try:
            operator = PolicyOperator(data.get("operator", ""))
        except ValueError:
            raise PolicyConfigError(name, "unknown operator '{}'".format(data.get("operator")))
        try:
            action = PolicyAction(data.get("action", PolicyAction.MARK_AS_TRUSTED.value))
        except ValueError:
            raise PolicyConfigError(name, "unknown action '{}'".format(data.get("action")))

        agent_id = data.get("agent_id")
        return cls(
            tool_name=str(data["tool_name"]),
            operator=operator,
            value=stringify(data.get("value", "")),
            action=action,
            attribute_path=str(data.get("attribute_path") or ""),
            description=str(data.get("description", "")),
            agent_id=None if agent_id in (None, "*") else str(agent_id),
            mcp_server_name=data.get("mcp_server_name"),
        )

    def applies_to(self, agent_id: str, tool_name: str) -> bool:
        """Return True if this rule is scoped to the given agent and tool."""
        if self.agent_id is not None and self.agent_id != agent_id:
            return False
        if tool_name == self.tool_name:
            return True
        if self.mcp_server_name:
            return tool_name == "{}__{}".format(self.mcp_server_name, self.tool_name)
        return False

    def matches(self, tool_result: Any) -> bool:
        """Check whether this rule's condition holds for a tool result.

        Raises:
            PolicyConfigError: If the rule's regex does not compile.
        """
        extracted = extract_attribute(tool_result, self.attribute_path)
        if extracted is _MISSING:
            return False
        actual = stringify(extracted)

        if self.operator == PolicyOperator.EQUAL:
            return actual == self.value
        if self.operator == PolicyOperator.NOT_EQUAL:
            return actual != self.value
        if self.operator == PolicyOperator.CONTAINS:
            return self.value in actual
        if self.operator == PolicyOperator.NOT_CONTAINS:
            return self.value not in actual
        if self.operator == PolicyOperator.STARTS_WITH:
            return actual.startswith(self.value)
        if self.operator == PolicyOperator.ENDS_WITH:
            return actual.endswith(self.value)
        return self._compiled().search(actual) is not None

    def _compiled(self) -> Pattern[str]:
        if self._pattern is None:
            try:
                self._pattern = re.compile(self.value)
            except re.error as exc:
                raise PolicyConfigError(
                    self.description or self.tool_name,
                    "invalid regex '{}': {}".format(self.value, exc),
                ) from exc
        return self._pattern


def load_policies(path: str) -> List[TrustedDataPolicy]:
    """Load trusted-data policies from a YAML file.

    Rules that fail to parse are logged and skipped; the rest load.

    Args:
        path: Path to the YAML policy file.

    Returns:
        The parsed policies in file order.

    Raises:
        FileNotFoundError: If the policy file does not exist.
        ValueError: If the YAML is invalid or has the wrong shape.
    """
    policy_path = Path(path)
    if not policy_path.exists():
        raise FileNotFoundError("Policy file not found: {}".format(path))

    with open(policy_path, "r") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ValueError("Policy file is not valid YAML: {}".format(exc)) from exc

    if raw is None:
        return []
    if not isinstance(raw, dict) or not isinstance(raw.get("policies", []), list):
        raise ValueError("Policy file must contain a 'policies' list at the top level")

    policies: List[TrustedDataPolicy] = []
    for entry in raw.get("policies", []):
        if not isinstance(entry, dict):
            _logger.warning("Skipping policy entry that is not a mapping: %r", entry)
            continue
        try:
            policies.append(TrustedDataPolicy.from_dict(entry))
        except PolicyConfigError as e:
            _logger.warning("Skipping policy rule: %s", e)
    return policies


class PolicyStore(Protocol):
    def list_policies(self, agent_id: str, tool_name: str) -> List[TrustedDataPolicy]:
        ...


class InMemoryPolicyStore:
    """Policy store over a fixed list of rules."""

    def __init__(self, policies: Optional[List[TrustedDataPolicy]] = None) -> None:
        self._policies = list(policies or [])

    def list_policies(self, agent_id: str, tool_name: str) -> List[TrustedDataPolicy]:
        return [p for p in self._policies if p.applies_to(agent_id, tool_name)]


class YamlPolicyStore:
    """Policy store backed by a YAML file, re-read on every lookup.

    Operators edit the file while the gateway runs, so nothing is cached
    between calls. A missing or unset file means no policies.
    """

    def __init__(self, path: Optional[str]) -> None:
        self._path = path

    def list_policies(self, agent_id: str, tool_name: str) -> List[TrustedDataPolicy]:
        if not self._path:
            return []
        try:
            policies = load_policies(self._path)
        except FileNotFoundError:
            _logger.warning("Policy file %s not found; no trusted-data policies apply", self._path)
            return []
        return [p for p in policies if p.applies_to(agent_id, tool_name)]


class TrustedDataPolicyEvaluator:
    """Evaluates tool results against the trusted-data policies.

    Rules are processed in order and the first match decides. A rule whose
    regex does not compile is logged and skipped. If nothing matches, the
    result is trusted.
    """

    def __init__(self, store: PolicyStore) -> None:
        self._store = store

    def evaluate(
        self, agent_id: str, tool_name: Optional[str], tool_result: Any
    ) -> PolicyEvaluation:
        """Evaluate one tool result.

        Args:
            agent_id: The agent whose policies apply.
            tool_name: The tool that produced the result, or None if it
                could not be resolved.
            tool_result: The parsed tool result (JSON value or raw string).

        Returns:
            A PolicyEvaluation with the trust and block verdicts.
        """
        if tool_name is None:
            return PolicyEvaluation(
                is_trusted=False,
                reason="Tool name could not be resolved for this result",
            )

        for policy in self._store.list_policies(agent_id, tool_name):
            try:
                matched = policy.matches(tool_result)
            except PolicyConfigError as e:
                _logger.warning("Skipping policy rule: %s", e)
                continue
            if not matched:
                continue

            reason = policy.description or None
            if policy.action == PolicyAction.BLOCK:
                return PolicyEvaluation(is_trusted=False, is_blocked=True, reason=reason)
            if policy.action == PolicyAction.MARK_AS_UNTRUSTED:
                return PolicyEvaluation(is_trusted=False, reason=reason)
            return PolicyEvaluation(is_trusted=True, reason=reason)

        # Unknown tools are trusted unless a rule says otherwise
        return PolicyEvaluation(is_trusted=True)
