"""Trigger Evaluator.

Decides, per stage, whether it runs automatically, waits for manual
confirmation, is skipped, or runs with failure allowed.

Dispatch policy:
    Rules are an ordered sequence of (condition, outcome) pairs scanned
    top-to-bottom. The first rule whose condition holds decides; rule order
    encodes precedence. When nothing matches the stage is skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from ..types.enums import RuleOutcome
from ..types.models import PipelineEvent, Stage, TriggerRule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TriggerDecision:
    """Result of evaluating one rule list against one event.

    Attributes:
        outcome: Winning outcome
        rule_index: Index of the matching rule (None = implicit fallback)
        allow_failure: Effective allow_failure for the stage in this run
    """

    outcome: RuleOutcome
    rule_index: Optional[int] = None
    allow_failure: bool = False

    @property
    def included(self) -> bool:
        """Whether the stage is part of the pipeline at all."""
        return self.outcome != RuleOutcome.SKIP

    @property
    def is_manual(self) -> bool:
        return self.outcome == RuleOutcome.MANUAL

    @property
    def blocking(self) -> bool:
        """A manual stage blocks later phases unless its failure is allowed."""
        return self.is_manual and not self.allow_failure

    def describe(self) -> str:
        where = f"rule #{self.rule_index}" if self.rule_index is not None else "no rule matched"
        suffix = " (allow_failure)" if self.allow_failure and self.outcome != RuleOutcome.ALLOW_FAILURE else ""
        return f"{self.outcome.value}{suffix} [{where}]"


def evaluate(rules: Sequence[TriggerRule], event: PipelineEvent) -> RuleOutcome:
    """First matching rule's outcome, or SKIP when none matches."""
    for rule in rules:
        if rule.matches(event):
            return rule.outcome
    return RuleOutcome.SKIP


def decide(
    rules: Sequence[TriggerRule],
    event: PipelineEvent,
    *,
    default_allow_failure: bool = False,
) -> TriggerDecision:
    """Like evaluate(), also reporting which rule matched and allow_failure.

    Args:
        rules: Ordered rules
        event: Pipeline event
        default_allow_failure: Stage-level allow_failure, overridden by the
            winning rule's own allow_failure when set
    """
    for index, rule in enumerate(rules):
        if not rule.matches(event):
            continue
        allow_failure = default_allow_failure
        if rule.allow_failure is not None:
            allow_failure = rule.allow_failure
        if rule.outcome == RuleOutcome.ALLOW_FAILURE:
            allow_failure = True
        return TriggerDecision(rule.outcome, index, allow_failure)
    return TriggerDecision(RuleOutcome.SKIP, None, default_allow_failure)


class TriggerEvaluator:
    """Evaluates pipeline shape for one event.

    Example:
        >>> evaluator = TriggerEvaluator(event)
        >>> if evaluator.pipeline_created(definition.workflow_rules):
        ...     plan = evaluator.plan(definition.stages)
    """

    def __init__(self, event: PipelineEvent):
        self.event = event

    def pipeline_created(self, workflow_rules: Sequence[TriggerRule]) -> bool:
        """Apply workflow rules. No workflow rules means always create."""
        if not workflow_rules:
            return True
        outcome = evaluate(workflow_rules, self.event)
        created = outcome != RuleOutcome.SKIP
        if not created:
            logger.info(f"Workflow rules created no pipeline for {self.event.scope}")
        return created

    def decide(self, stage: Stage) -> TriggerDecision:
        decision = decide(stage.rules, self.event, default_allow_failure=stage.allow_failure)
        logger.debug(f"Stage {stage.name}: {decision.describe()}")
        return decision

    def plan(self, stages: Iterable[Stage]) -> dict[str, TriggerDecision]:
        return {stage.name: self.decide(stage) for stage in stages}


__all__ = [
    "TriggerDecision",
    "evaluate",
    "decide",
    "TriggerEvaluator",
]
