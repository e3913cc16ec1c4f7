"""Tests for CleanupService — proves the facade orchestrates correctly."""

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest
from pydantic import ValidationError

from cleanmap.errors import ErrorCode, StoreBusyError, StoreCorruptError, StoreError
from cleanmap.ledger.points import Ledger
from cleanmap.models.identity import Identity
from cleanmap.persistence.document_store import CorruptionPolicy
from cleanmap.policy.resolver import PolicyResolver
from cleanmap.registry.markers import MarkerRegistry
from cleanmap.service import CleanupService
from cleanmap.settings import Settings


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"

ALICE = Identity("uid-alice", "Alice")
ADMIN = Identity("uid-admin", "Admin", is_admin=True)


@pytest.fixture
def resolver() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "data"


@pytest.fixture
def ledger(data_dir: Path) -> Ledger:
    return Ledger.at(data_dir / "points.json")


@pytest.fixture
def registry(data_dir: Path) -> MarkerRegistry:
    return MarkerRegistry.at(data_dir / "markers.json")


@pytest.fixture
def service(
    resolver: PolicyResolver, registry: MarkerRegistry, ledger: Ledger,
) -> CleanupService:
    return CleanupService(resolver, registry, ledger)


def _report(service: CleanupService, category: str = "소형 폐기물") -> str:
    result = service.report_marker(40.0, -73.9, "img://1", category, caller=ALICE)
    assert result.success, result.errors
    return result.data["marker"]["marker_id"]


class TestReport:
    def test_report_returns_open_marker(self, service: CleanupService) -> None:
        result = service.report_marker(40.0, -73.9, "img://1", "소형 폐기물", caller=ALICE)
        assert result.success
        marker = result.data["marker"]
        assert marker["status"] == "open"
        assert marker["reporter"] == "Alice"
        assert marker["reporter_id"] == "uid-alice"
        assert marker["claimant"] is None
        assert marker["created_utc"].endswith("Z")

    def test_explicit_reporter_name_wins(self, service: CleanupService) -> None:
        result = service.report_marker(1.0, 2.0, "img://1", reporter_name="민수", caller=ALICE)
        assert result.data["marker"]["reporter"] == "민수"

    def test_no_caller_is_anonymous(self, service: CleanupService) -> None:
        result = service.report_marker(1.0, 2.0, "img://1")
        marker = result.data["marker"]
        assert marker["reporter"] == "anonymous"
        assert marker["category"] == "분류 안됨"

    def test_invalid_payload(self, service: CleanupService) -> None:
        result = service.report_marker("north", -73.9, "img://1", caller=ALICE)
        assert not result.success
        assert result.code == ErrorCode.INVALID_INPUT
        assert service.list_markers().data["markers"] == []

    def test_list_in_creation_order(self, service: CleanupService) -> None:
        ids = [_report(service) for _ in range(3)]
        listed = service.list_markers().data["markers"]
        assert [m["marker_id"] for m in listed] == ids

    def test_get_marker(self, service: CleanupService) -> None:
        marker_id = _report(service)
        assert service.get_marker(marker_id).marker_id == marker_id
        assert service.get_marker("missing") is None


class TestClaim:
    def test_claim_moves_to_pending(self, service: CleanupService) -> None:
        marker_id = _report(service)
        result = service.request_cleanup(marker_id, claimant_name="Bob")
        assert result.success
        assert result.data["marker"]["status"] == "pending"
        assert result.data["marker"]["claimant"] == "Bob"

    def test_second_claim_conflicts(self, service: CleanupService) -> None:
        marker_id = _report(service)
        service.request_cleanup(marker_id, claimant_name="Bob")
        result = service.request_cleanup(marker_id, claimant_name="Carol")
        assert not result.success
        assert result.code == ErrorCode.CONFLICT

    def test_claim_unknown_marker(self, service: CleanupService) -> None:
        result = service.request_cleanup("nope", claimant_name="Bob")
        assert result.code == ErrorCode.NOT_FOUND


class TestApprove:
    def test_full_lifecycle(self, service: CleanupService) -> None:
        marker_id = _report(service, "소형 폐기물")
        service.request_cleanup(marker_id, claimant_name="Bob")

        result = service.approve_cleanup(marker_id, caller=ADMIN)
        assert result.success
        awards = result.data["awards"]
        assert awards["matched_rule"] == "small_item"
        assert awards["reporter"]["delta"] == 10
        assert awards["claimant"]["identity_key"] == "name:Bob"
        assert awards["claimant"]["total"] == 10

        assert service.get_points("id:uid-alice").data["points"] == 10
        assert service.get_points("name:Bob").data["points"] == 10
        assert service.list_markers().data["markers"] == []

    def test_unclaimed_approval_pays_reporter_only(self, service: CleanupService) -> None:
        marker_id = _report(service, "재활용 쓰레기")
        result = service.approve_cleanup(marker_id, caller=ADMIN)
        assert result.data["awards"]["claimant"] is None
        assert service.get_points("id:uid-alice").data["points"] == 10

    def test_anonymous_reporter_earns_nothing(self, service: CleanupService) -> None:
        marker_id = service.report_marker(1.0, 2.0, "img://1", "재활용").data["marker"]["marker_id"]
        service.request_cleanup(marker_id, claimant_name="Bob")
        result = service.approve_cleanup(marker_id, caller=ADMIN)
        assert result.data["awards"]["reporter"] is None
        assert service.get_points("name:anonymous").data["points"] == 0
        assert service.get_points("name:Bob").data["points"] == 20

    def test_non_admin_forbidden(self, service: CleanupService) -> None:
        marker_id = _report(service)
        result = service.approve_cleanup(marker_id, caller=ALICE)
        assert not result.success
        assert result.code == ErrorCode.FORBIDDEN
        assert service.get_marker(marker_id) is not None

    def test_missing_caller_forbidden(self, service: CleanupService) -> None:
        marker_id = _report(service)
        assert service.approve_cleanup(marker_id, caller=None).code == ErrorCode.FORBIDDEN

    def test_unknown_marker_touches_nothing(
        self, service: CleanupService, data_dir: Path,
    ) -> None:
        _report(service)
        markers_before = (data_dir / "markers.json").read_bytes()
        result = service.approve_cleanup("nope", caller=ADMIN)
        assert result.code == ErrorCode.NOT_FOUND
        assert (data_dir / "markers.json").read_bytes() == markers_before
        assert not (data_dir / "points.json").exists()

    def test_second_approval_not_found(self, service: CleanupService) -> None:
        marker_id = _report(service)
        service.approve_cleanup(marker_id, caller=ADMIN)
        assert service.approve_cleanup(marker_id, caller=ADMIN).code == ErrorCode.NOT_FOUND
        assert service.get_points("id:uid-alice").data["points"] == 10

    def test_custom_admin_predicate(
        self, resolver: PolicyResolver, data_dir: Path, ledger: Ledger,
    ) -> None:
        service = CleanupService(
            resolver,
            MarkerRegistry.at(data_dir / "markers.json"),
            ledger,
            is_admin=lambda identity: identity.subject_id == "uid-alice",
        )
        marker_id = _report(service)
        assert service.approve_cleanup(marker_id, caller=ALICE).success
        assert service.approve_cleanup(marker_id, caller=ADMIN).code == ErrorCode.FORBIDDEN


class TestReject:
    def test_reject_resets_claim(self, service: CleanupService) -> None:
        marker_id = _report(service)
        service.request_cleanup(marker_id, claimant_name="Bob")
        result = service.reject_cleanup(marker_id, caller=ADMIN)
        assert result.success
        assert result.data["marker"]["status"] == "open"
        assert result.data["marker"]["claimant"] is None
        assert service.request_cleanup(marker_id, claimant_name="Carol").success

    def test_reject_requires_admin(self, service: CleanupService) -> None:
        marker_id = _report(service)
        assert service.reject_cleanup(marker_id, caller=ALICE).code == ErrorCode.FORBIDDEN

    def test_reject_awards_nothing(self, service: CleanupService) -> None:
        marker_id = _report(service)
        service.request_cleanup(marker_id, claimant_name="Bob")
        service.reject_cleanup(marker_id, caller=ADMIN)
        assert service.standings().data["standings"] == []


class TestDiscard:
    def test_discard_removes_without_awards(self, service: CleanupService) -> None:
        marker_id = _report(service)
        result = service.discard_marker(marker_id, caller=ADMIN)
        assert result.data["marker_id"] == marker_id
        assert service.get_marker(marker_id) is None
        assert service.get_points("id:uid-alice").data["points"] == 0

    def test_discard_requires_admin(self, service: CleanupService) -> None:
        marker_id = _report(service)
        assert service.discard_marker(marker_id, caller=ALICE).code == ErrorCode.FORBIDDEN


def _unwritable(credits):
    raise StoreError("disk full")


def _leave_unpaid(
    service: CleanupService, ledger: Ledger, monkeypatch: pytest.MonkeyPatch, marker_id: str,
) -> None:
    """Approve while the ledger is unwritable, leaving a free tombstone."""
    with monkeypatch.context() as m:
        m.setattr(ledger, "credit_many", _unwritable)
        assert service.approve_cleanup(marker_id, caller=ADMIN).code == ErrorCode.STORE_ERROR


class TestSettlementRepair:
    def test_ledger_failure_leaves_tombstone_for_reconcile(
        self, service: CleanupService, ledger: Ledger, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        marker_id = _report(service, "재활용 쓰레기")
        service.request_cleanup(marker_id, claimant_name="Bob")

        _leave_unpaid(service, ledger, monkeypatch, marker_id)
        assert service.get_marker(marker_id) is None
        assert service.status()["unsettled_approvals"] == 1
        assert service.status()["settlements_in_progress"] == 0

        repaired = service.reconcile_settlements(caller=ADMIN)
        assert repaired.success
        assert [s["marker_id"] for s in repaired.data["settled"]] == [marker_id]
        assert service.get_points("id:uid-alice").data["points"] == 10
        assert service.get_points("name:Bob").data["points"] == 20
        assert service.status()["unsettled_approvals"] == 0

    def test_clearing_failure_after_credit_still_approves(
        self, service: CleanupService, registry: MarkerRegistry,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        marker_id = _report(service)

        def _busy(marker_id, settler=None):
            raise StoreBusyError("markers.json busy")

        with monkeypatch.context() as m:
            m.setattr(registry, "finish_settlement", _busy)
            result = service.approve_cleanup(marker_id, caller=ADMIN)

        assert result.success
        assert result.data["awards"]["reporter"]["total"] == 10
        assert service.status()["settlements_in_progress"] == 1

        repaired = service.reconcile_settlements(caller=ADMIN)
        assert repaired.data["settled"] == []
        assert service.get_points("id:uid-alice").data["points"] == 10

    def test_reconcile_during_approval_skips_it(
        self, service: CleanupService, ledger: Ledger, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        marker_id = _report(service)
        real_credit = ledger.credit_many
        rival = []

        def _credit_after_rival_pass(credits):
            rival.append(service.reconcile_settlements(caller=ADMIN))
            return real_credit(credits)

        monkeypatch.setattr(ledger, "credit_many", _credit_after_rival_pass)
        assert service.approve_cleanup(marker_id, caller=ADMIN).success

        assert rival[0].success
        assert rival[0].data["settled"] == []
        assert service.get_points("id:uid-alice").data["points"] == 10
        assert service.status()["unsettled_approvals"] == 0

    def test_overlapping_reconciles_pay_once(
        self, service: CleanupService, ledger: Ledger, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        marker_id = _report(service, "재활용 쓰레기")
        service.request_cleanup(marker_id, claimant_name="Bob")
        _leave_unpaid(service, ledger, monkeypatch, marker_id)

        real_credit = ledger.credit_many
        rival = []

        def _credit_after_rival_pass(credits):
            rival.append(service.reconcile_settlements(caller=ADMIN))
            return real_credit(credits)

        monkeypatch.setattr(ledger, "credit_many", _credit_after_rival_pass)
        first = service.reconcile_settlements(caller=ADMIN)

        assert [s["marker_id"] for s in first.data["settled"]] == [marker_id]
        assert rival[0].data["settled"] == []
        assert service.get_points("id:uid-alice").data["points"] == 10
        assert service.get_points("name:Bob").data["points"] == 20

    def test_concurrent_reconciles_pay_each_approval_once(
        self, service: CleanupService, ledger: Ledger, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        marker_ids = [_report(service) for _ in range(5)]
        for marker_id in marker_ids:
            _leave_unpaid(service, ledger, monkeypatch, marker_id)

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(
                lambda _: service.reconcile_settlements(caller=ADMIN), range(4),
            ))

        paid = sorted(s["marker_id"] for r in results for s in r.data["settled"])
        assert paid == sorted(marker_ids)
        assert service.get_points("id:uid-alice").data["points"] == 50
        assert service.status()["unsettled_approvals"] == 0

    def test_failed_reconcile_releases_its_claims(
        self, service: CleanupService, ledger: Ledger, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        marker_ids = [_report(service) for _ in range(2)]
        for marker_id in marker_ids:
            _leave_unpaid(service, ledger, monkeypatch, marker_id)

        with monkeypatch.context() as m:
            m.setattr(ledger, "credit_many", _unwritable)
            failed = service.reconcile_settlements(caller=ADMIN)
        assert failed.code == ErrorCode.STORE_ERROR
        assert service.status()["settlements_in_progress"] == 0

        repaired = service.reconcile_settlements(caller=ADMIN)
        assert len(repaired.data["settled"]) == 2
        assert service.get_points("id:uid-alice").data["points"] == 20

    def test_reconcile_with_nothing_pending(self, service: CleanupService) -> None:
        result = service.reconcile_settlements(caller=ADMIN)
        assert result.success
        assert result.data["settled"] == []

    def test_reconcile_requires_admin(self, service: CleanupService) -> None:
        assert service.reconcile_settlements(caller=ALICE).code == ErrorCode.FORBIDDEN


class TestPoints:
    def test_unknown_identity_has_zero(self, service: CleanupService) -> None:
        result = service.get_points("id:nobody")
        assert result.success
        assert result.data == {"identity_key": "id:nobody", "points": 0}

    def test_standings(self, service: CleanupService) -> None:
        first = _report(service, "유해 폐기물")
        service.request_cleanup(first, claimant_name="Bob")
        service.approve_cleanup(first, caller=ADMIN)

        standings = service.standings().data["standings"]
        assert [(s["identity_key"], s["points"]) for s in standings] == [
            ("name:Bob", 30), ("id:uid-alice", 10),
        ]
        assert len(service.standings(limit=1).data["standings"]) == 1

    def test_corrupt_ledger_is_store_error(
        self, service: CleanupService, data_dir: Path,
    ) -> None:
        data_dir.mkdir(parents=True, exist_ok=True)
        (data_dir / "points.json").write_text("{oops", encoding="utf-8")
        result = service.get_points("id:uid-alice")
        assert not result.success
        assert result.code == ErrorCode.STORE_ERROR


class TestStatus:
    def test_status_counts(self, service: CleanupService) -> None:
        _report(service)
        pending_id = _report(service)
        service.request_cleanup(pending_id, claimant_name="Bob")
        approved_id = _report(service)
        service.approve_cleanup(approved_id, caller=ADMIN)

        status = service.status()
        assert status["markers"] == {"total": 2, "by_status": {"open": 1, "pending": 1}}
        assert status["unsettled_approvals"] == 0
        assert status["settlements_in_progress"] == 0
        assert status["ledger_entries"] == 1

    def test_plain_lookups_raise_on_unreadable_store(
        self, service: CleanupService, data_dir: Path,
    ) -> None:
        data_dir.mkdir(parents=True, exist_ok=True)
        (data_dir / "markers.json").write_text("{broken", encoding="utf-8")
        with pytest.raises(StoreCorruptError):
            service.get_marker("1")
        with pytest.raises(StoreCorruptError):
            service.status()
        assert service.list_markers().code == ErrorCode.STORE_ERROR


class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings.from_env({})
        assert settings.data_dir == Path("data")
        assert settings.config_dir == Path("config")
        assert settings.markers_path == Path("data") / "markers.json"
        assert settings.ledger_on_corrupt == CorruptionPolicy.FAIL

    def test_mapping_overrides(self, tmp_path: Path) -> None:
        settings = Settings.from_env({
            "CLEANMAP_DATA_DIR": str(tmp_path),
            "CLEANMAP_CONFIG_DIR": str(CONFIG_DIR),
            "CLEANMAP_LOCK_TIMEOUT": "2.5",
            "CLEANMAP_LEDGER_ON_CORRUPT": "RESET",
            "UNRELATED": "ignored",
        })
        assert settings.points_path == tmp_path / "points.json"
        assert settings.lock_timeout == 2.5
        assert settings.ledger_on_corrupt == CorruptionPolicy.RESET

    def test_process_environment(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("CLEANMAP_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("CLEANMAP_LOCK_TIMEOUT", "0.5")
        settings = Settings.from_env()
        assert settings.markers_path == tmp_path / "markers.json"
        assert settings.lock_timeout == 0.5

    @pytest.mark.parametrize("env", [
        {"CLEANMAP_LOCK_TIMEOUT": "0"},
        {"CLEANMAP_LOCK_TIMEOUT": "-1"},
        {"CLEANMAP_LOCK_TIMEOUT": "nan"},
        {"CLEANMAP_LOCK_TIMEOUT": "inf"},
        {"CLEANMAP_LOCK_TIMEOUT": "soon"},
        {"CLEANMAP_LEDGER_ON_CORRUPT": "ignore"},
    ])
    def test_malformed_values_rejected(self, env: dict) -> None:
        with pytest.raises(ValidationError):
            Settings.from_env(env)

    def test_settings_are_frozen(self) -> None:
        settings = Settings.from_env({})
        with pytest.raises(ValidationError):
            settings.lock_timeout = 1.0

    def test_from_settings_wires_everything(self, tmp_path: Path) -> None:
        settings = Settings(data_dir=tmp_path / "data", config_dir=CONFIG_DIR)
        service = CleanupService.from_settings(settings)
        marker_id = _report(service)
        service.request_cleanup(marker_id, claimant_name="Bob")
        assert service.approve_cleanup(marker_id, caller=ADMIN).success
        assert settings.markers_path.exists()
        assert Ledger.at(settings.points_path).read("name:Bob") == 10

    def test_from_settings_missing_config(self, tmp_path: Path) -> None:
        settings = Settings(data_dir=tmp_path / "data", config_dir=tmp_path / "nope")
        with pytest.raises(FileNotFoundError):
            CleanupService.from_settings(settings)
