"""Cleanup service — unified facade for the marker and points core.

This is the primary interface for the transport layer. It orchestrates:
- Marker lifecycle (report, list, claim, approve, reject, discard)
- Award computation and ledger crediting (via the coordinator)
- Points lookup and standings
- Settlement repair for interrupted approvals

Operations produce typed results. Core failures arrive as CleanupError
subclasses and are returned as a failed ServiceResult with the matching
ErrorCode; they are never retried here. The plain lookups get_marker()
and status() are the exception: they return values and let StoreError
propagate.

Identity is verified upstream: the service receives an Identity and
asks the injected is_admin predicate whether it may moderate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from cleanmap.coordinator import Award, Awards, ResolutionCoordinator
from cleanmap.errors import CleanupError, ErrorCode, Forbidden, NotFound, StoreError
from cleanmap.ledger.points import Ledger
from cleanmap.models.identity import Identity
from cleanmap.models.marker import Location, Marker, MarkerStatus, Person
from cleanmap.policy.awards import AwardPolicy
from cleanmap.policy.resolver import PolicyResolver
from cleanmap.registry.markers import TIMESTAMP_FORMAT, MarkerRegistry
from cleanmap.settings import Settings

logger = logging.getLogger(__name__)

AdminPredicate = Callable[[Identity], bool]


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation. code is set only on failure."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    code: Optional[ErrorCode] = None


def _verified_admin(identity: Identity) -> bool:
    return identity.is_admin


class CleanupService:
    """Marker and points facade.

    Usage:
        service = CleanupService.from_settings(Settings.from_env())

        result = service.report_marker(40.0, -73.9, "img://1", "소형 폐기물",
                                       caller=Identity("uid-alice", "Alice"))
        marker_id = result.data["marker"]["marker_id"]
        service.request_cleanup(marker_id, claimant_name="Bob")
        service.approve_cleanup(marker_id, caller=admin_identity)
        service.get_points("name:Bob").data["points"]
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        registry: MarkerRegistry,
        ledger: Ledger,
        is_admin: Optional[AdminPredicate] = None,
    ) -> None:
        self._resolver = resolver
        self._registry = registry
        self._ledger = ledger
        self._policy = AwardPolicy(resolver)
        self._coordinator = ResolutionCoordinator(registry, ledger, self._policy)
        self._is_admin = is_admin or _verified_admin

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        is_admin: Optional[AdminPredicate] = None,
    ) -> CleanupService:
        """Wire stores and policy from settings."""
        resolver = PolicyResolver.from_config_dir(settings.config_dir)
        registry = MarkerRegistry.at(
            settings.markers_path,
            lock_timeout=settings.lock_timeout,
            default_category=resolver.default_category(),
            anonymous_name=resolver.anonymous_name(),
        )
        ledger = Ledger.at(
            settings.points_path,
            on_corrupt=settings.ledger_on_corrupt,
            lock_timeout=settings.lock_timeout,
        )
        return cls(resolver, registry, ledger, is_admin=is_admin)

    # ------------------------------------------------------------------
    # Markers
    # ------------------------------------------------------------------

    def report_marker(
        self,
        latitude: Any,
        longitude: Any,
        image_ref: Any,
        category: Optional[str] = None,
        reporter_name: Optional[str] = None,
        caller: Optional[Identity] = None,
    ) -> ServiceResult:
        """Create an OPEN marker.

        The reporter's name falls back to the caller's display name and
        then to the anonymous name; the subject id is the caller's.
        """
        caller = caller or Identity()
        reporter = Person(
            display_name=reporter_name or caller.display_name,
            subject_id=caller.subject_id,
        )
        try:
            marker = self._registry.create(
                Location(latitude, longitude), image_ref, category, reporter,
            )
        except CleanupError as e:
            return _failure(e)
        return ServiceResult(success=True, data={"marker": marker_view(marker)})

    def list_markers(self) -> ServiceResult:
        """All markers in creation order."""
        try:
            markers = self._registry.markers()
        except CleanupError as e:
            return _failure(e)
        return ServiceResult(
            success=True, data={"markers": [marker_view(m) for m in markers]},
        )

    def get_marker(self, marker_id: str) -> Optional[Marker]:
        """Look up a marker; None if it does not exist.

        Like status(), this returns a plain value rather than a
        ServiceResult, so an unreadable store raises StoreError.
        """
        try:
            return self._registry.get(marker_id)
        except NotFound:
            return None

    def request_cleanup(
        self,
        marker_id: str,
        caller: Optional[Identity] = None,
        claimant_name: Optional[str] = None,
    ) -> ServiceResult:
        """Claim an OPEN marker as cleaned, moving it to PENDING review."""
        caller = caller or Identity()
        claimant = Person(
            display_name=claimant_name or caller.display_name,
            subject_id=caller.subject_id,
        )
        try:
            marker = self._registry.claim(marker_id, claimant)
        except CleanupError as e:
            return _failure(e)
        return ServiceResult(success=True, data={"marker": marker_view(marker)})

    def approve_cleanup(self, marker_id: str, caller: Identity) -> ServiceResult:
        """Admin approval: remove the marker and credit the awards."""
        try:
            self._require_admin(caller)
            awards = self._coordinator.approve(marker_id)
        except CleanupError as e:
            return _failure(e)
        return ServiceResult(success=True, data={"awards": awards_view(awards)})

    def reject_cleanup(self, marker_id: str, caller: Identity) -> ServiceResult:
        """Admin rejection: reset the marker to OPEN and drop the claim."""
        try:
            self._require_admin(caller)
            marker = self._coordinator.reject(marker_id)
        except CleanupError as e:
            return _failure(e)
        return ServiceResult(success=True, data={"marker": marker_view(marker)})

    def discard_marker(self, marker_id: str, caller: Identity) -> ServiceResult:
        """Admin hard delete, with no awards."""
        try:
            self._require_admin(caller)
            marker = self._registry.discard(marker_id)
        except CleanupError as e:
            return _failure(e)
        return ServiceResult(success=True, data={"marker_id": marker.marker_id})

    def reconcile_settlements(self, caller: Identity) -> ServiceResult:
        """Admin repair pass for approvals whose awards never landed."""
        try:
            self._require_admin(caller)
            settled = self._coordinator.reconcile()
        except CleanupError as e:
            return _failure(e)
        return ServiceResult(
            success=True, data={"settled": [awards_view(a) for a in settled]},
        )

    # ------------------------------------------------------------------
    # Points
    # ------------------------------------------------------------------

    def get_points(self, identity_key: str) -> ServiceResult:
        """Total points for an identity key; 0 when unknown."""
        try:
            points = self._ledger.read(identity_key)
        except CleanupError as e:
            return _failure(e)
        return ServiceResult(
            success=True, data={"identity_key": identity_key, "points": points},
        )

    def standings(self, limit: Optional[int] = None) -> ServiceResult:
        try:
            entries = self._ledger.standings(limit)
        except CleanupError as e:
            return _failure(e)
        return ServiceResult(
            success=True,
            data={
                "standings": [
                    {
                        "identity_key": e.identity_key,
                        "display_name": e.display_name,
                        "points": e.total,
                    }
                    for e in entries
                ],
            },
        )

    def status(self) -> dict[str, Any]:
        """Return system-wide status summary.

        Raises StoreError if either store cannot be read.
        settlements_in_progress counts tombstones held by a settler; one
        that stays there after every approval has returned needs operator
        review.
        """
        markers = self._registry.markers()
        by_status = {s.value: 0 for s in MarkerStatus}
        for m in markers:
            by_status[m.status.value] += 1
        return {
            "markers": {"total": len(markers), "by_status": by_status},
            "unsettled_approvals": len(self._registry.unsettled()),
            "settlements_in_progress": len(self._registry.settling_in_progress()),
            "ledger_entries": self._ledger.count(),
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_admin(self, caller: Optional[Identity]) -> None:
        if caller is None or not self._is_admin(caller):
            raise Forbidden("Admin capability required")


def _failure(error: CleanupError) -> ServiceResult:
    if isinstance(error, StoreError):
        logger.warning("Store failure: %s", error)
    return ServiceResult(success=False, errors=[str(error)], code=error.code)


def marker_view(marker: Marker) -> dict[str, Any]:
    """JSON-ready view of a marker for the transport layer."""
    claimant = marker.claimant
    return {
        "marker_id": marker.marker_id,
        "latitude": marker.location.latitude,
        "longitude": marker.location.longitude,
        "image_ref": marker.image_ref,
        "category": marker.category,
        "reporter": marker.reporter.display_name,
        "reporter_id": marker.reporter.subject_id,
        "status": marker.status.value,
        "claimant": claimant.display_name if claimant else None,
        "claimant_id": claimant.subject_id if claimant else None,
        "created_utc": (
            marker.created_utc.strftime(TIMESTAMP_FORMAT) if marker.created_utc else None
        ),
    }


def awards_view(awards: Awards) -> dict[str, Any]:
    return {
        "marker_id": awards.marker.marker_id,
        "matched_rule": awards.decision.matched_rule,
        "reporter": _award_view(awards.reporter),
        "claimant": _award_view(awards.claimant),
    }


def _award_view(award: Optional[Award]) -> Optional[dict[str, Any]]:
    if award is None:
        return None
    return {
        "identity_key": award.identity_key,
        "display_name": award.display_name,
        "delta": award.delta,
        "total": award.total_after,
    }
