"""Select the single most specific conversion rule for a work item."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from cmmcalc.errors import ResolutionFailure, RuleResolutionError
from cmmcalc.models import ConversionRule, RuleType, TaxonomyScope
from cmmcalc.rules.registry import RuleSnapshot


@dataclass(frozen=True)
class RuleQuery:
    """What a work item looks like to the resolver."""

    scope: TaxonomyScope
    material_code: str | None = None

    def describe(self) -> str:
        parts = [
            self.scope.category_l1,
            self.scope.category_l2,
            self.scope.category_l3,
        ]
        text = "/".join(p for p in parts if p) or "*"
        return f"{text} material={self.material_code}" if self.material_code else text


def specificity(rule: ConversionRule) -> tuple[int, int, int]:
    """Ranking key: deepest taxonomy level, populated scope fields, priority."""
    populated = sum(
        1
        for value in (
            rule.category_l1,
            rule.category_l2,
            rule.category_l3,
            rule.source_material,
        )
        if value is not None
    )
    return (rule.scope.depth, populated, rule.priority)


class RuleResolver:
    """Ranks candidate rules of one pinned snapshot."""

    def __init__(self, snapshot: RuleSnapshot) -> None:
        self.snapshot = snapshot

    def candidates(self, query: RuleQuery, rule_type: RuleType) -> list[ConversionRule]:
        found = self.snapshot.rules_for(query.scope, rule_type, query.material_code)
        return sorted(found, key=lambda r: (specificity(r), str(r.id)), reverse=True)

    def resolve_optional(self, query: RuleQuery, rule_type: RuleType) -> ConversionRule | None:
        """Best rule or None when nothing matches.

        Raises:
            RuleResolutionError: AMBIGUOUS when the top candidates tie on every key
        """
        ranked = self.candidates(query, rule_type)
        if not ranked:
            return None

        best_key = specificity(ranked[0])
        tied = [rule for rule in ranked if specificity(rule) == best_key]
        if len(tied) > 1:
            ids = sorted(str(rule.id) for rule in tied)
            raise RuleResolutionError(
                ResolutionFailure.AMBIGUOUS,
                f"{len(tied)} {rule_type.value} rules tie for {query.describe()}: {', '.join(ids)}",
                candidates=ids,
            )
        return ranked[0]

    def resolve(self, query: RuleQuery, rule_type: RuleType) -> ConversionRule:
        """Best rule of ``rule_type``.

        Raises:
            RuleResolutionError: NO_MATCH or AMBIGUOUS
        """
        rule = self.resolve_optional(query, rule_type)
        if rule is None:
            raise RuleResolutionError(
                ResolutionFailure.NO_MATCH,
                f"No {rule_type.value} rule in {self.snapshot.version} for {query.describe()}",
            )
        return rule

    def resolve_first(self, query: RuleQuery, rule_types: Sequence[RuleType]) -> ConversionRule:
        """Best rule of the first type in ``rule_types`` that has any candidate."""
        for rule_type in rule_types:
            rule = self.resolve_optional(query, rule_type)
            if rule is not None:
                return rule
        names = ", ".join(t.value for t in rule_types)
        raise RuleResolutionError(
            ResolutionFailure.NO_MATCH,
            f"No quantity rule ({names}) in {self.snapshot.version} for {query.describe()}",
        )
