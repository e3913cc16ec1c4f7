"""Award policy — maps an approved marker to point deltas.

Pure computation: no side effects. The coordinator credits the ledger
with the result.

- The reporter earns a fixed amount whenever they are addressable.
- The claimant earns a category-dependent amount, and only if the
  marker was actually claimed (PENDING) when approved.
- Categories are matched by substring after casefolding and removing
  all whitespace, against the rules in configured order. First match
  wins, so "유해 재활용" pays the hazardous amount.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from cleanmap.models.identity import NAME_PREFIX
from cleanmap.models.marker import Marker, MarkerStatus, Person
from cleanmap.policy.resolver import AwardRule, PolicyResolver


@dataclass(frozen=True)
class AwardDecision:
    """Deltas for one approval. matched_rule is None when no rule matched."""
    reporter_delta: int
    claimant_delta: int
    matched_rule: Optional[str] = None


def normalize(text: str) -> str:
    return "".join(text.casefold().split())


class AwardPolicy:
    """Computes award deltas from the resolver's award table."""

    def __init__(self, resolver: PolicyResolver) -> None:
        self._reporter_award = resolver.reporter_award()
        self._rules = resolver.claimant_rules()
        self._anonymous_key = NAME_PREFIX + resolver.anonymous_name()

    def addressable_key(self, person: Optional[Person]) -> Optional[str]:
        """Ledger key for a party, or None if they cannot be credited.

        The anonymous placeholder name is shared by every unnamed
        reporter and is never credited.
        """
        if person is None:
            return None
        key = person.identity_key
        if key == self._anonymous_key:
            return None
        return key

    def match_rule(self, category: str) -> Optional[AwardRule]:
        """First rule with a keyword contained in the category."""
        needle = normalize(category or "")
        for rule in self._rules:
            if any(normalize(k) in needle for k in rule.keywords):
                return rule
        return None

    def compute_awards(self, marker: Marker) -> AwardDecision:
        reporter_delta = 0
        if self.addressable_key(marker.reporter) is not None:
            reporter_delta = self._reporter_award

        claimant_delta = 0
        matched = None
        if marker.status == MarkerStatus.PENDING:
            rule = self.match_rule(marker.category)
            if rule is not None:
                matched = rule.rule
                if self.addressable_key(marker.claimant) is not None:
                    claimant_delta = rule.points

        return AwardDecision(
            reporter_delta=reporter_delta,
            claimant_delta=claimant_delta,
            matched_rule=matched,
        )
