"""Trigger conditions: predicates over PipelineEvent.

Conditions are small callables that compose with ``&``, ``|`` and ``~``.
They can be built in Python or compiled from CI rule expressions.

Example:
    >>> mr_upstream = source_is(EventSource.MERGE_REQUEST) & trust_is(ActorTrust.UPSTREAM)
    >>> mr_upstream(event)
    True
    >>> same = when('$CI_PIPELINE_SOURCE == "merge_request_event" && $IS_UPSTREAM_CI == "true"')
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Union

from ..types.enums import ActorTrust, EventSource
from ..types.models import PipelineEvent
from .expressions import Expression, compile_expression


class Condition(ABC):
    """Base predicate over a PipelineEvent."""

    @abstractmethod
    def __call__(self, event: PipelineEvent) -> bool:
        """Whether the event satisfies this condition."""

    def __and__(self, other: "Condition") -> "Condition":
        return AllOf((self, other))

    def __or__(self, other: "Condition") -> "Condition":
        return AnyOf((self, other))

    def __invert__(self) -> "Condition":
        return Negate(self)


@dataclass(frozen=True)
class Always(Condition):
    def __call__(self, event: PipelineEvent) -> bool:
        return True

    def __str__(self) -> str:
        return "always"


@dataclass(frozen=True)
class SourceIs(Condition):
    source: EventSource

    def __call__(self, event: PipelineEvent) -> bool:
        return event.source == self.source

    def __str__(self) -> str:
        return f'$CI_PIPELINE_SOURCE == "{self.source.ci_value}"'


@dataclass(frozen=True)
class BranchIs(Condition):
    """Matches branch names exactly, or ``/regex/`` entries by search.

    Raises:
        ValueError: If a ``/regex/`` entry does not compile
    """

    branches: tuple[str, ...]

    def __post_init__(self):
        for branch in self.branches:
            if _is_pattern(branch):
                try:
                    re.compile(branch[1:-1])
                except re.error as e:
                    raise ValueError(f"invalid branch pattern {branch!r}: {e}") from e

    def __call__(self, event: PipelineEvent) -> bool:
        for branch in self.branches:
            if _is_pattern(branch):
                if re.search(branch[1:-1], event.branch):
                    return True
            elif branch == event.branch:
                return True
        return False

    def __str__(self) -> str:
        parts = []
        for b in self.branches:
            if _is_pattern(b):
                parts.append(f"$CI_COMMIT_REF_NAME =~ {b}")
            else:
                parts.append(f'$CI_COMMIT_REF_NAME == "{b}"')
        return " || ".join(parts)


def _is_pattern(branch: str) -> bool:
    return len(branch) > 1 and branch.startswith("/") and branch.endswith("/")

@dataclass(frozen=True)
class ProtectedIs(Condition):
    protected: bool

    def __call__(self, event: PipelineEvent) -> bool:
        return event.is_protected == self.protected

    def __str__(self) -> str:
        return f'$CI_COMMIT_REF_PROTECTED == "{str(self.protected).lower()}"'


@dataclass(frozen=True)
class TrustIs(Condition):
    trust: ActorTrust

    def __call__(self, event: PipelineEvent) -> bool:
        return event.actor_trust == self.trust

    def __str__(self) -> str:
        if self.trust == ActorTrust.UPSTREAM:
            return '$IS_UPSTREAM_CI == "true"'
        if self.trust == ActorTrust.FORK:
            return '$IS_UPSTREAM_CI == "false"'
        return "$IS_UPSTREAM_CI == null"


@dataclass(frozen=True)
class FlagEquals(Condition):
    name: str
    value: str

    def __call__(self, event: PipelineEvent) -> bool:
        return event.variables().get(self.name) == self.value

    def __str__(self) -> str:
        return f'${self.name} == "{self.value}"'


@dataclass(frozen=True)
class FlagSet(Condition):
    name: str

    def __call__(self, event: PipelineEvent) -> bool:
        return bool(event.variables().get(self.name))

    def __str__(self) -> str:
        return f"${self.name}"


@dataclass(frozen=True)
class AllOf(Condition):
    conditions: tuple[Condition, ...]

    def __call__(self, event: PipelineEvent) -> bool:
        return all(condition(event) for condition in self.conditions)

    def __str__(self) -> str:
        parts = [str(c) for c in self.conditions]
        return " && ".join(f"({p})" if " || " in p else p for p in parts)


@dataclass(frozen=True)
class AnyOf(Condition):
    conditions: tuple[Condition, ...]

    def __call__(self, event: PipelineEvent) -> bool:
        return any(condition(event) for condition in self.conditions)

    def __str__(self) -> str:
        return " || ".join(str(c) for c in self.conditions)


@dataclass(frozen=True)
class Negate(Condition):
    condition: Condition

    def __call__(self, event: PipelineEvent) -> bool:
        return not self.condition(event)

    def __str__(self) -> str:
        return f"!({self.condition})"


@dataclass(frozen=True)
class ExpressionCondition(Condition):
    """A compiled CI expression evaluated against the event's variables.

    Attributes:
        expression: Compiled expression
        defaults: Pipeline-level variables, overridden by event variables
    """

    expression: Expression
    defaults: Mapping[str, str] = field(default_factory=dict)

    def __call__(self, event: PipelineEvent) -> bool:
        variables = {**self.defaults, **event.variables()}
        return self.expression.evaluate(variables)

    def __hash__(self) -> int:
        return hash((self.expression.source, tuple(sorted(self.defaults.items()))))

    def __str__(self) -> str:
        return self.expression.source


# =============================================================================
# Builders
# =============================================================================


def always() -> Condition:
    return Always()


def source_is(source: Union[EventSource, str]) -> Condition:
    if isinstance(source, str):
        source = EventSource.from_ci_value(source)
    return SourceIs(source)


def branch_is(*branches: str) -> Condition:
    return BranchIs(tuple(branches))


def protected_is(protected: bool = True) -> Condition:
    return ProtectedIs(protected)


def trust_is(trust: Union[ActorTrust, str]) -> Condition:
    return TrustIs(ActorTrust(trust) if isinstance(trust, str) else trust)


def flag_equals(name: str, value: str) -> Condition:
    return FlagEquals(name, value)


def flag_set(name: str) -> Condition:
    return FlagSet(name)


def all_of(*conditions: Condition) -> Condition:
    return AllOf(tuple(conditions))


def any_of(*conditions: Condition) -> Condition:
    return AnyOf(tuple(conditions))


def not_(condition: Condition) -> Condition:
    return Negate(condition)


def when(expression: Union[str, Expression], defaults: Mapping[str, str] | None = None) -> Condition:
    """Compile a CI rule expression into a condition.

    Raises:
        RuleSyntaxError: If the expression is malformed
    """
    return ExpressionCondition(compile_expression(expression), dict(defaults or {}))


# only:/except: keywords naming event sources rather than branches
REF_KEYWORDS = {
    "merge_requests": (EventSource.MERGE_REQUEST,),
    "pushes": (EventSource.BRANCH_PUSH,),
    "web": (EventSource.MANUAL,),
    "api": (EventSource.MANUAL,),
    "schedules": (EventSource.SCHEDULED,),
    "branches": (EventSource.BRANCH_PUSH, EventSource.MANUAL, EventSource.SCHEDULED),
}


def _ref_condition(entries: tuple[str, ...]) -> Condition:
    conditions: list[Condition] = []
    branches = tuple(entry for entry in entries if entry not in REF_KEYWORDS)
    if branches:
        conditions.append(BranchIs(branches))
    for entry in entries:
        if entry in REF_KEYWORDS:
            conditions.extend(SourceIs(source) for source in REF_KEYWORDS[entry])
    return conditions[0] if len(conditions) == 1 else AnyOf(tuple(conditions))


def branch_filter(only: Iterable[str] = (), exclude: Iterable[str] = ()) -> Condition:
    """Condition equivalent to ``only:`` / ``except:`` lists.

    Entries are branch names, ``/regex/`` patterns, or source keywords
    (merge_requests, pushes, web, api, schedules, branches).
    """
    only = tuple(only)
    exclude = tuple(exclude)
    conditions: list[Condition] = []
    if only:
        conditions.append(_ref_condition(only))
    if exclude:
        conditions.append(Negate(_ref_condition(exclude)))
    if not conditions:
        return Always()
    if len(conditions) == 1:
        return conditions[0]
    return AllOf(tuple(conditions))


__all__ = [
    "Condition",
    "Always",
    "SourceIs",
    "BranchIs",
    "ProtectedIs",
    "TrustIs",
    "FlagEquals",
    "FlagSet",
    "AllOf",
    "AnyOf",
    "Negate",
    "ExpressionCondition",
    "always",
    "source_is",
    "branch_is",
    "protected_is",
    "trust_is",
    "flag_equals",
    "flag_set",
    "all_of",
    "any_of",
    "not_",
    "when",
    "branch_filter",
]
