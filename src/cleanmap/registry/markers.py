"""Marker registry — the marker collection and its lifecycle.

Stores and recovers:
- Markers in creation order
- The last issued marker id (ids are never reused)
- Settlement tombstones: snapshots of approved markers whose awards
  have not yet been confirmed as credited, each held by at most one
  settler at a time

Every mutation is a single DocumentStore.mutate() call, so concurrent
claims on one marker serialise and the second sees PENDING.

Corrupt marker files are never silently replaced: the registry's store
always uses CorruptionPolicy.FAIL.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from cleanmap.errors import Conflict, InvalidInput, NotFound
from cleanmap.models.marker import (
    ANONYMOUS,
    UNCATEGORIZED,
    Location,
    Marker,
    MarkerStatus,
    Person,
)
from cleanmap.persistence.document_store import (
    DEFAULT_LOCK_TIMEOUT,
    CorruptionPolicy,
    Document,
    DocumentStore,
)
from cleanmap.registry.transitions import MarkerAction, MarkerStateMachine

logger = logging.getLogger(__name__)

DOCUMENT_VERSION = 1
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# Tombstone field naming the settler currently paying it; None when free.
SETTLER_FIELD = "settler"


class MarkerRegistry:
    """Owns marker creation, transitions and removal.

    Usage:
        registry = MarkerRegistry.at(Path("data/markers.json"))
        marker = registry.create(Location(40.0, -73.9), "img://1", "소형 폐기물",
                                 Person("Alice", "uid-alice"))
        registry.claim(marker.marker_id, Person("Bob"))
        snapshot = registry.approve_and_remove(marker.marker_id, settler=token)
        # ... credit awards ...
        registry.finish_settlement(marker.marker_id, settler=token)
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        default_category: str = UNCATEGORIZED,
        anonymous_name: str = ANONYMOUS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._default_category = default_category
        self._anonymous_name = anonymous_name
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def at(
        cls,
        storage_path: Path,
        *,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        **kwargs: Any,
    ) -> MarkerRegistry:
        """Open the registry backed by the given file."""
        store = DocumentStore(
            storage_path,
            empty_document,
            on_corrupt=CorruptionPolicy.FAIL,
            lock_timeout=lock_timeout,
            upgrade=upgrade_document,
        )
        return cls(store, **kwargs)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def markers(self) -> list[Marker]:
        """Return all markers in creation order."""
        return [marker_from_record(r) for r in self._store.read()["markers"]]

    def get(self, marker_id: str) -> Marker:
        document = self._store.read()
        return marker_from_record(document["markers"][_index_of(document, marker_id)])

    def unsettled(self) -> list[Marker]:
        """Approved markers whose awards were never confirmed."""
        return [marker_from_record(r) for r in self._store.read()["settling"]]

    def settling_in_progress(self) -> list[Marker]:
        """Tombstones currently held by a settler."""
        return [
            marker_from_record(r) for r in self._store.read()["settling"]
            if r.get(SETTLER_FIELD) is not None
        ]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(
        self,
        location: Location,
        image_ref: str,
        category: Optional[str],
        reporter: Person,
    ) -> Marker:
        """Create an OPEN marker.

        Raises InvalidInput before touching the store if a coordinate is
        not a finite number or image_ref is empty.
        """
        latitude = _coordinate(location.latitude, "latitude")
        longitude = _coordinate(location.longitude, "longitude")
        if not isinstance(image_ref, str) or not image_ref.strip():
            raise InvalidInput("image_ref must be a non-empty string")
        if isinstance(category, str) and category.strip():
            category = category.strip()
        else:
            category = self._default_category
        if not (reporter.display_name and reporter.display_name.strip()):
            reporter = Person(self._anonymous_name, reporter.subject_id)

        def _create(document: Document) -> Marker:
            now = self._clock()
            marker = Marker(
                marker_id=self._issue_id(document, now),
                location=Location(latitude, longitude),
                image_ref=image_ref,
                category=category,
                reporter=reporter,
                created_utc=now,
            )
            document["markers"].append(marker_to_record(marker))
            return marker

        marker = self._store.mutate(_create)
        logger.info("Marker %s reported (%s)", marker.marker_id, marker.category)
        return marker

    def claim(self, marker_id: str, claimant: Person) -> Marker:
        """OPEN → PENDING. Raises NotFound or Conflict."""

        def _claim(document: Document) -> Marker:
            idx = _index_of(document, marker_id)
            marker = marker_from_record(document["markers"][idx])
            errors = MarkerStateMachine.check(marker, MarkerAction.CLAIM)
            if errors:
                raise Conflict("; ".join(errors))
            marker.status = MarkerStateMachine.target(MarkerAction.CLAIM)
            marker.claimant = claimant
            document["markers"][idx] = marker_to_record(marker)
            return marker

        marker = self._store.mutate(_claim)
        logger.info(
            "Marker %s claimed by %s", marker_id, claimant.display_name or claimant.subject_id,
        )
        return marker

    def reject(self, marker_id: str) -> Marker:
        """Reset to OPEN and clear the claimant, whatever the prior status."""

        def _reject(document: Document) -> Marker:
            idx = _index_of(document, marker_id)
            marker = marker_from_record(document["markers"][idx])
            marker.status = MarkerStateMachine.target(MarkerAction.REJECT)
            marker.claimant = None
            document["markers"][idx] = marker_to_record(marker)
            return marker

        marker = self._store.mutate(_reject)
        logger.info("Marker %s reset to open", marker_id)
        return marker

    def approve_and_remove(self, marker_id: str, settler: Optional[str] = None) -> Marker:
        """Remove a marker for approval and keep a settlement tombstone.

        Returns the pre-removal snapshot. The tombstone stays until
        finish_settlement() confirms the awards were credited. A settler
        token claims the tombstone in the same commit, so no other
        settler can pay it; without one it is left for claim_settlements().
        """

        def _remove(document: Document) -> Marker:
            idx = _index_of(document, marker_id)
            errors = MarkerStateMachine.check(
                marker_from_record(document["markers"][idx]), MarkerAction.APPROVE,
            )
            if errors:
                raise Conflict("; ".join(errors))
            record = document["markers"].pop(idx)
            record[SETTLER_FIELD] = settler
            document["settling"].append(record)
            return marker_from_record(record)

        marker = self._store.mutate(_remove)
        logger.info("Marker %s removed for approval", marker_id)
        return marker

    def claim_settlements(self, settler: str) -> list[Marker]:
        """Claim every unclaimed tombstone for settler, in one commit.

        Tombstones already held by another settler are skipped, so two
        concurrent repair passes never pay the same approval.
        """

        def _claim(document: Document) -> list[Marker]:
            claimed = []
            for record in document["settling"]:
                if record.get(SETTLER_FIELD) is None:
                    record[SETTLER_FIELD] = settler
                    claimed.append(marker_from_record(record))
            return claimed

        return self._store.mutate(_claim)

    def release_settlement(self, marker_id: str, settler: str) -> bool:
        """Give a claimed tombstone back so a later repair pass can pay it.

        Only call this when no credit for the marker was committed.
        """

        def _release(document: Document) -> bool:
            for record in document["settling"]:
                if record["marker_id"] == marker_id and record.get(SETTLER_FIELD) == settler:
                    record[SETTLER_FIELD] = None
                    return True
            return False

        return self._store.mutate(_release)

    def finish_settlement(self, marker_id: str, settler: Optional[str] = None) -> bool:
        """Drop the tombstone for marker_id. Returns False if none existed.

        With a settler token, only a tombstone held by that settler is
        dropped.
        """

        def _finish(document: Document) -> bool:
            before = len(document["settling"])
            document["settling"] = [
                r for r in document["settling"]
                if r["marker_id"] != marker_id
                or (settler is not None and r.get(SETTLER_FIELD) != settler)
            ]
            return len(document["settling"]) < before

        return self._store.mutate(_finish)

    def discard(self, marker_id: str) -> Marker:
        """Delete a marker outright, with no settlement and no awards."""

        def _discard(document: Document) -> Marker:
            idx = _index_of(document, marker_id)
            return marker_from_record(document["markers"].pop(idx))

        marker = self._store.mutate(_discard)
        logger.info("Marker %s discarded", marker_id)
        return marker

    def _issue_id(self, document: Document, now: datetime) -> str:
        # Millisecond timestamps, bumped past the last issued id so two
        # reports in the same millisecond still get distinct ids.
        now_ms = int(now.timestamp() * 1000)
        issued = max(now_ms, int(document["last_issued"]) + 1)
        document["last_issued"] = issued
        return str(issued)


# ----------------------------------------------------------------------
# Document layout
# ----------------------------------------------------------------------

def empty_document() -> Document:
    return {
        "version": DOCUMENT_VERSION,
        "last_issued": 0,
        "markers": [],
        "settling": [],
    }


def upgrade_document(raw: Any) -> Document:
    """Accept the current layout or a legacy bare array of markers.

    Every record is decoded once so that a malformed file is reported
    as corrupt at load time rather than midway through an operation.
    """
    if isinstance(raw, list):
        markers = [_from_legacy(r) for r in raw]
        numeric_ids = [int(r["marker_id"]) for r in markers if r["marker_id"].isdigit()]
        document = empty_document()
        document["markers"] = markers
        document["last_issued"] = max(numeric_ids, default=0)
    elif isinstance(raw, dict):
        document = {
            "version": raw.get("version", DOCUMENT_VERSION),
            "last_issued": int(raw.get("last_issued", 0)),
            "markers": list(raw["markers"]),
            "settling": list(raw.get("settling", [])),
        }
    else:
        raise TypeError(f"expected a JSON object or array, got {type(raw).__name__}")

    for record in document["markers"] + document["settling"]:
        marker_from_record(record)
    return document


def marker_to_record(marker: Marker) -> dict[str, Any]:
    return {
        "marker_id": marker.marker_id,
        "latitude": marker.location.latitude,
        "longitude": marker.location.longitude,
        "image_ref": marker.image_ref,
        "category": marker.category,
        "reporter": _person_to_record(marker.reporter),
        "status": marker.status.value,
        "claimant": (
            _person_to_record(marker.claimant) if marker.claimant is not None else None
        ),
        "created_utc": (
            marker.created_utc.strftime(TIMESTAMP_FORMAT) if marker.created_utc else None
        ),
    }


def marker_from_record(data: dict[str, Any]) -> Marker:
    status = MarkerStatus(data.get("status") or MarkerStatus.OPEN.value)
    claimant = None
    if status == MarkerStatus.PENDING and data.get("claimant"):
        claimant = _person_from_record(data["claimant"])
    created_utc = None
    if data.get("created_utc"):
        created_utc = datetime.strptime(
            data["created_utc"], TIMESTAMP_FORMAT,
        ).replace(tzinfo=timezone.utc)
    return Marker(
        marker_id=str(data["marker_id"]),
        location=Location(float(data["latitude"]), float(data["longitude"])),
        image_ref=data["image_ref"],
        category=data["category"],
        reporter=_person_from_record(data.get("reporter") or {}),
        status=status,
        claimant=claimant,
        created_utc=created_utc,
    )


def _person_to_record(person: Person) -> dict[str, Optional[str]]:
    return {"display_name": person.display_name, "subject_id": person.subject_id}


def _person_from_record(data: dict[str, Any]) -> Person:
    return Person(
        display_name=data.get("display_name"),
        subject_id=data.get("subject_id"),
    )


def _from_legacy(data: dict[str, Any]) -> dict[str, Any]:
    """Map a record from the legacy bare-array layout (camelCase fields).

    Those records have no status for the earliest markers; they read as
    open.
    """
    status = data.get("status") or MarkerStatus.OPEN.value
    claimant = None
    if status == MarkerStatus.PENDING.value and (
        data.get("claimedByName") or data.get("claimedByUid")
    ):
        claimant = {
            "display_name": data.get("claimedByName"),
            "subject_id": data.get("claimedByUid"),
        }
    created_utc = None
    if isinstance(data.get("createdAt"), (int, float)):
        created_utc = datetime.fromtimestamp(
            data["createdAt"] / 1000, tz=timezone.utc,
        ).strftime(TIMESTAMP_FORMAT)
    return {
        "marker_id": str(data["id"]),
        "latitude": float(data["lat"]),
        "longitude": float(data["lon"]),
        "image_ref": data["imgUrl"],
        "category": data.get("category") or UNCATEGORIZED,
        "reporter": {
            "display_name": data.get("uploader"),
            "subject_id": data.get("uploaderUid"),
        },
        "status": status,
        "claimant": claimant,
        "created_utc": created_utc,
    }


def _index_of(document: Document, marker_id: str) -> int:
    for idx, record in enumerate(document["markers"]):
        if record["marker_id"] == marker_id:
            return idx
    raise NotFound(marker_id)


def _coordinate(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidInput(f"{name} must be a number, got {value!r}")
    if not math.isfinite(value):
        raise InvalidInput(f"{name} must be finite, got {value!r}")
    return float(value)
