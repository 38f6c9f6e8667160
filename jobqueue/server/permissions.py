"""
Allow/deny rules gating which caller may invoke which operation.

Rules are registered per permission group (admin, manager, creator,
worker) or per individual method name. A call is permitted when no deny
rule matches and at least one allow rule does; with no rules registered
every remote call is denied.
"""

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from jobqueue.constants import METHOD_PERMISSIONS
from jobqueue.errors import InvalidArgumentError

RulePredicate = Callable[[str | None, str, Sequence[Any]], bool]


@dataclass(frozen=True)
class Predicate:
    """Rule backed by a function of (caller_id, method, params)."""

    fn: RulePredicate


@dataclass(frozen=True)
class AllowList:
    """Rule matching a fixed set of caller ids."""

    caller_ids: frozenset[str]


Rule = Predicate | AllowList


def as_rule(value: Rule | RulePredicate | Iterable[str]) -> Rule:
    """
    Normalize a rule given as a function or a collection of caller ids.

    Raises:
        InvalidArgumentError: If the value is neither.
    """
    if isinstance(value, (Predicate, AllowList)):
        return value
    if callable(value):
        return Predicate(value)
    if isinstance(value, str):
        return AllowList(frozenset([value]))
    if isinstance(value, Iterable):
        return AllowList(frozenset(value))
    raise InvalidArgumentError(f"Invalid permission rule: {value!r}")


def evaluate_rule(rule: Rule, caller_id: str | None, method: str, params: Sequence[Any]) -> bool:
    """Evaluate one rule against a call."""
    if isinstance(rule, AllowList):
        return caller_id is not None and caller_id in rule.caller_ids
    return bool(rule.fn(caller_id, method, params))


class PermissionTable:
    """Allow and deny rules owned by one job server."""

    def __init__(self) -> None:
        self._allows: dict[str, list[Rule]] = {}
        self._denys: dict[str, list[Rule]] = {}

    @staticmethod
    def _register(table: dict[str, list[Rule]], rules: dict[str, Any]) -> None:
        known = set(METHOD_PERMISSIONS)
        for groups in METHOD_PERMISSIONS.values():
            known.update(groups)
        for key, value in rules.items():
            if key not in known:
                raise InvalidArgumentError(f"Unknown permission group or method: {key}")
            table.setdefault(key, []).append(as_rule(value))

    def allow(self, **rules: Any) -> "PermissionTable":
        """
        Register allow rules.

        Example:
            table.allow(admin=["ops-1"], worker=lambda caller, method, params: caller is not None)
        """
        self._register(self._allows, rules)
        return self

    def deny(self, **rules: Any) -> "PermissionTable":
        """Register deny rules."""
        self._register(self._denys, rules)
        return self

    def _any_match(
        self,
        table: dict[str, list[Rule]],
        caller_id: str | None,
        method: str,
        params: Sequence[Any],
    ) -> bool:
        for key in METHOD_PERMISSIONS.get(method, ()):
            for rule in table.get(key, ()):
                if evaluate_rule(rule, caller_id, method, params):
                    return True
        return False

    def allowed(self, caller_id: str | None, method: str, params: Sequence[Any]) -> bool:
        """Not denied and allowed, across the groups that grant `method`."""
        return not self._any_match(self._denys, caller_id, method, params) and self._any_match(
            self._allows, caller_id, method, params
        )
