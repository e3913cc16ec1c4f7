"""Resolution coordinator — approve and reject across both stores.

Approval touches two independently committed files, marker store first
and ledger second:

1. Remove the marker and leave a settlement tombstone claimed by this
   approval's settler token (one marker commit).
2. Compute award deltas from the removed snapshot.
3. Credit reporter and claimant (one ledger commit).
4. Drop the tombstone (one marker commit).

A tombstone is paid only by the settler holding it, and it is claimed
in the same commit that creates it, so each approval is credited at
most once:
- If step 3 fails, the claim is released and reconcile() can pay the
  awards later.
- Once step 3 has committed, the approval has succeeded. If step 4
  then fails, the tombstone stays claimed and is only logged; no repair
  pass will pay it again.
- If the process dies between steps 1 and 4, the tombstone stays
  claimed and shows up in settling_in_progress() for an operator to
  inspect. It is never paid automatically.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from cleanmap.errors import CleanupError
from cleanmap.ledger.points import Ledger
from cleanmap.models.ledger import Credit
from cleanmap.models.marker import Marker, Person
from cleanmap.policy.awards import AwardDecision, AwardPolicy
from cleanmap.registry.markers import MarkerRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Award:
    """Points actually credited to one party."""
    identity_key: str
    delta: int
    total_after: int
    display_name: Optional[str] = None


@dataclass(frozen=True)
class Awards:
    """Outcome of one approval. A party is None if nothing was credited."""
    marker: Marker
    decision: AwardDecision
    reporter: Optional[Award] = None
    claimant: Optional[Award] = None


def _new_settler() -> str:
    return uuid.uuid4().hex


class ResolutionCoordinator:
    """Orchestrates registry, award policy and ledger for approvals."""

    def __init__(
        self,
        registry: MarkerRegistry,
        ledger: Ledger,
        policy: AwardPolicy,
    ) -> None:
        self._registry = registry
        self._ledger = ledger
        self._policy = policy

    def approve(self, marker_id: str) -> Awards:
        """Remove the marker and credit its reporter and claimant.

        NotFound propagates from the registry with neither store touched.
        """
        settler = _new_settler()
        snapshot = self._registry.approve_and_remove(marker_id, settler=settler)
        awards = self._settle(snapshot, settler)
        logger.info(
            "Marker %s approved (reporter +%d, claimant +%d)",
            marker_id, awards.decision.reporter_delta, awards.decision.claimant_delta,
        )
        return awards

    def reject(self, marker_id: str) -> Marker:
        return self._registry.reject(marker_id)

    def reconcile(self) -> list[Awards]:
        """Pay and clear every unclaimed settlement tombstone.

        Tombstones are claimed in one marker commit before anything is
        credited. If a payment fails, the rest of this pass's claims are
        released before the error propagates.
        """
        settler = _new_settler()
        claimed = self._registry.claim_settlements(settler)
        settled = []
        for idx, snapshot in enumerate(claimed):
            logger.warning("Settling left-over approval for marker %s", snapshot.marker_id)
            try:
                settled.append(self._settle(snapshot, settler))
            except CleanupError:
                for rest in claimed[idx + 1:]:
                    self._release(rest.marker_id, settler)
                raise
        return settled

    def _settle(self, snapshot: Marker, settler: str) -> Awards:
        decision = self._policy.compute_awards(snapshot)

        parties: list[tuple[str, Person, int]] = []
        reporter_key = self._policy.addressable_key(snapshot.reporter)
        if reporter_key is not None and decision.reporter_delta > 0:
            parties.append(("reporter", snapshot.reporter, decision.reporter_delta))
        claimant_key = self._policy.addressable_key(snapshot.claimant)
        if claimant_key is not None and decision.claimant_delta > 0:
            parties.append(("claimant", snapshot.claimant, decision.claimant_delta))

        try:
            entries = self._ledger.credit_many(
                Credit(person.identity_key, delta, person.display_name)
                for _, person, delta in parties
            )
        except CleanupError:
            self._release(snapshot.marker_id, settler)
            raise

        realized: dict[str, Award] = {}
        for (role, person, delta), entry in zip(parties, entries):
            realized[role] = Award(
                identity_key=entry.identity_key,
                delta=delta,
                total_after=entry.total,
                display_name=person.display_name,
            )

        try:
            self._registry.finish_settlement(snapshot.marker_id, settler=settler)
        except CleanupError as e:
            # Credited already; the tombstone stays claimed so it is never repaid.
            logger.error(
                "Awards for marker %s credited but tombstone not cleared: %s",
                snapshot.marker_id, e,
            )

        return Awards(
            marker=snapshot,
            decision=decision,
            reporter=realized.get("reporter"),
            claimant=realized.get("claimant"),
        )

    def _release(self, marker_id: str, settler: str) -> None:
        try:
            self._registry.release_settlement(marker_id, settler)
        except CleanupError as e:
            logger.error(
                "Could not release settlement claim on marker %s; "
                "it needs operator review: %s",
                marker_id, e,
            )
