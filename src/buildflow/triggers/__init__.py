"""Trigger evaluation: ordered first-match rules over pipeline events.

Key Components:
    - conditions: Composable predicates (source_is, branch_is, when, ...)
    - expressions: CI rule expression parser ($VAR == "x" && ...)
    - evaluator: evaluate()/decide() and TriggerEvaluator

Usage:
    >>> from buildflow.triggers import evaluate, rule, source_is, protected_is
    >>> rules = [
    ...     rule(source_is("merge_request_event"), "run"),
    ...     rule(protected_is(False), "manual"),
    ... ]
    >>> evaluate(rules, push_event).value
    'manual'
"""

from typing import Optional, Union

from ..types.enums import RuleOutcome
from ..types.models import TriggerRule
from .conditions import (
    AllOf,
    Always,
    AnyOf,
    BranchIs,
    Condition,
    ExpressionCondition,
    FlagEquals,
    FlagSet,
    Negate,
    ProtectedIs,
    SourceIs,
    TrustIs,
    all_of,
    always,
    any_of,
    branch_filter,
    branch_is,
    flag_equals,
    flag_set,
    not_,
    protected_is,
    source_is,
    trust_is,
    when,
)
from .evaluator import TriggerDecision, TriggerEvaluator, decide, evaluate
from .expressions import Expression, compile_expression


def rule(
    condition: Union[Condition, str],
    outcome: Union[RuleOutcome, str] = RuleOutcome.RUN,
    *,
    allow_failure: Optional[bool] = None,
) -> TriggerRule:
    """Build a TriggerRule; string conditions compile as CI expressions."""
    if isinstance(condition, str):
        condition = when(condition)
    if isinstance(outcome, str):
        outcome = RuleOutcome.from_when(outcome)
    return TriggerRule(condition=condition, outcome=outcome, allow_failure=allow_failure)


__all__ = [
    "rule",
    # Conditions
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
    # Expressions
    "Expression",
    "compile_expression",
    # Evaluation
    "TriggerDecision",
    "TriggerEvaluator",
    "evaluate",
    "decide",
]
