"""
Analytics materialization tests.

Test blocks:
  1. Fact row derivation (pure)
  2. Refresh contents
  3. Idempotence and atomic swap
  4. ETL status and data quality
"""

import threading
from datetime import timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError

from civictrack.core.errors import DependencyError
from civictrack.models import (
    AnalyticsRefreshRun,
    AssigneeType,
    FactReport,
    FactReportStaging,
    RefreshStatus,
    Report,
    ReportStatus,
)
from civictrack.services import analytics_refresh, assignment_ledger, lifecycle, reports, support
from civictrack.services.analytics_refresh import FACT_COLUMNS, build_fact_row

from tests.conftest import T0


def _snapshot(db):
    db.expire_all()
    return [
        {c: getattr(row, c) for c in FACT_COLUMNS}
        for row in db.query(FactReport).order_by(FactReport.report_id).all()
    ]


def _fact(db, report_id):
    db.expire_all()
    return db.get(FactReport, report_id)


# ── 1. Pure derivation ───────────────────────────────────────────────────────


class TestBuildFactRow:
    def _report(self, **overrides):
        fields = dict(
            id=7, created_at=T0, updated_at=None, status=ReportStatus.OPEN, resolved_at=None,
            current_department_id=1, category_id=2, user_id=3, reopen_count=0, lat=41.01, lng=28.97,
        )
        fields.update(overrides)
        return Report(**fields)

    def test_unassigned_report(self):
        row = build_fact_row(self._report())
        assert row["first_response_duration_secs"] is None
        assert row["intervention_duration_secs"] is None
        assert row["resolution_duration_secs"] is None
        assert row["created_at_dt"] == T0.date()
        assert row["final_status"] == "OPEN"
        assert row["last_updated_at"] == T0

    def test_scenario_a_durations(self):
        report = self._report(status=ReportStatus.DONE, resolved_at=T0 + timedelta(hours=50))
        row = build_fact_row(
            report,
            first_assigned_at=T0 + timedelta(hours=1),
            first_accepted_at=T0 + timedelta(hours=3),
        )
        assert row["first_response_duration_secs"] == 3600
        assert row["intervention_duration_secs"] == 10800
        assert row["resolution_duration_secs"] == 180000

    def test_reopened_report_has_no_resolution_duration(self):
        report = self._report(status=ReportStatus.OPEN, resolved_at=T0 + timedelta(hours=5), reopen_count=1)
        row = build_fact_row(report, first_assigned_at=T0 + timedelta(hours=1))
        assert row["resolution_duration_secs"] is None
        assert row["reopen_count"] == 1

    def test_last_updated_is_newest_source_timestamp(self):
        report = self._report(updated_at=T0 + timedelta(hours=2))
        row = build_fact_row(report, source_updated_at=T0 + timedelta(hours=9))
        assert row["last_updated_at"] == T0 + timedelta(hours=9)


# ── 2. Refresh contents ──────────────────────────────────────────────────────


class TestRefresh:
    def test_scenario_a_end_to_end(self, db, seed, make_report, clock):
        report = make_report()
        clock.advance(hours=1)
        lifecycle.assign_report(db, report.id, AssigneeType.USER, seed.users.member.id, seed.p.supervisor)
        clock.advance(hours=2)
        lifecycle.accept_assignment(db, assignment_ledger.active_assignment(db, report.id).id, seed.p.member)
        clock.advance(hours=46)
        lifecycle.complete_work(db, report.id, seed.p.member)
        clock.advance(hours=1)
        lifecycle.approve_report(db, report.id, seed.p.supervisor)

        run = analytics_refresh.refresh(db)
        assert run.status == RefreshStatus.SUCCEEDED
        assert run.row_count == 1

        fact = _fact(db, report.id)
        assert fact.first_response_duration_secs == 3600
        assert fact.intervention_duration_secs == 10800
        assert fact.resolution_duration_secs == 180000
        assert fact.final_status == "DONE"
        assert fact.department_id == seed.roads.id
        assert fact.category_id == seed.pothole.id

    def test_soft_deleted_reports_are_excluded(self, db, seed, make_report):
        keep = make_report()
        gone = make_report(title="Duplicate pothole")
        reports.delete_report(db, gone.id, seed.p.citizen)

        analytics_refresh.refresh(db)
        assert [row["report_id"] for row in _snapshot(db)] == [keep.id]

    def test_support_count_comes_from_support_rows(self, db, seed, make_report):
        report = make_report()
        support.support_report(db, report.id, seed.p.neighbour)
        support.support_report(db, report.id, seed.p.member)
        analytics_refresh.refresh(db)
        assert _fact(db, report.id).support_count == 2

    def test_fact_reflects_latest_cycle_after_reopen(self, db, seed, make_report, walk_to):
        report = walk_to(make_report(), "DONE")
        analytics_refresh.refresh(db)
        assert _fact(db, report.id).resolution_duration_secs == 4 * 3600

        lifecycle.reopen_report(db, report.id, seed.p.supervisor)
        analytics_refresh.refresh(db)
        fact = _fact(db, report.id)
        assert fact.resolution_duration_secs is None
        assert fact.final_status == "OPEN"
        assert fact.reopen_count == 1

    def test_intervention_not_negative_with_skewed_acceptance(self, db, seed, make_report, walk_to):
        """Acceptance stamped before the report itself must not produce a negative duration."""
        report = walk_to(make_report(), "ACCEPTED")
        a = assignment_ledger.active_assignment(db, report.id)
        a.accepted_at = T0 - timedelta(minutes=10)
        db.commit()

        analytics_refresh.refresh(db)
        assert _fact(db, report.id).intervention_duration_secs == 0
        assert analytics_refresh.validate_data_quality(db)["overallScore"] == 100

    def test_soft_deleted_assignments_are_ignored(self, db, seed, make_report, walk_to, clock):
        report = walk_to(make_report(), "IN_PROGRESS")
        a = assignment_ledger.active_assignment(db, report.id)
        a.deleted_at = clock.now
        db.commit()
        analytics_refresh.refresh(db)
        assert _fact(db, report.id).first_assigned_at is None

    def test_empty_source_gives_empty_snapshot(self, db, seed):
        run = analytics_refresh.refresh(db)
        assert run.row_count == 0
        assert _snapshot(db) == []


# ── 3. Idempotence and atomic swap ───────────────────────────────────────────


class TestSwap:
    def test_refresh_twice_is_identical(self, db, seed, make_report, walk_to, clock):
        walk_to(make_report(), "DONE")
        walk_to(make_report(title="Cracked kerb"), "ACCEPTED")
        make_report(title="Sinkhole", lat=None, lng=None)

        analytics_refresh.refresh(db)
        first = _snapshot(db)
        clock.advance(hours=6)
        analytics_refresh.refresh(db)
        assert _snapshot(db) == first
        assert len(first) == 3

    def test_staging_is_cleared(self, db, seed, make_report):
        make_report()
        analytics_refresh.refresh(db)
        assert db.query(FactReportStaging).count() == 0

    def test_failure_keeps_previous_snapshot(self, db, seed, make_report, monkeypatch):
        make_report()
        analytics_refresh.refresh(db)
        before = _snapshot(db)
        make_report(title="Second pothole")

        def boom(db):
            raise RuntimeError("aggregation bug")

        monkeypatch.setattr(analytics_refresh, "compute_fact_rows", boom)
        with pytest.raises(RuntimeError):
            analytics_refresh.refresh(db)

        assert _snapshot(db) == before
        last = analytics_refresh.last_run(db)
        assert last.status == RefreshStatus.FAILED
        assert "aggregation bug" in last.error
        assert last.finished_at is not None

    def test_database_failure_is_dependency_error(self, db, seed, make_report, monkeypatch):
        make_report()

        def db_down(db):
            raise OperationalError("SELECT 1", {}, Exception("connection refused"))

        monkeypatch.setattr(analytics_refresh, "compute_fact_rows", db_down)
        with pytest.raises(DependencyError):
            analytics_refresh.refresh(db)
        assert _snapshot(db) == []
        assert analytics_refresh.last_run(db).status == RefreshStatus.FAILED

    def test_cancelled_refresh_never_swaps(self, db, seed, make_report):
        make_report()
        analytics_refresh.refresh(db)
        before = _snapshot(db)
        make_report(title="Another one")

        stop = threading.Event()
        stop.set()
        run = analytics_refresh.refresh(db, trigger="scheduled", cancel_event=stop)

        assert run.status == RefreshStatus.CANCELLED
        assert _snapshot(db) == before
        assert db.query(FactReportStaging).count() == 0

    def test_swap_takes_the_refresh_lock(self, db, seed, make_report, monkeypatch):
        make_report()
        seen = []

        def record(session):
            seen.append(session.query(FactReportStaging).count())

        monkeypatch.setattr(analytics_refresh, "_lock_fact_table", record)
        analytics_refresh.refresh(db)
        assert seen == [1]

        stop = threading.Event()
        stop.set()
        analytics_refresh.refresh(db, cancel_event=stop)
        assert seen == [1]

    def test_refresh_lock_is_postgres_only(self, db):
        class FakeSession:
            def __init__(self, dialect):
                self.dialect = dialect
                self.statements = []

            def get_bind(self):
                return SimpleNamespace(dialect=SimpleNamespace(name=self.dialect))

            def execute(self, statement, params=None):
                self.statements.append((str(statement), params))

        pg = FakeSession("postgresql")
        analytics_refresh._lock_fact_table(pg)
        assert pg.statements == [
            ("SELECT pg_advisory_xact_lock(:key)", {"key": analytics_refresh.REFRESH_LOCK_KEY})
        ]

        lite = FakeSession("sqlite")
        analytics_refresh._lock_fact_table(lite)
        assert lite.statements == []
        analytics_refresh._lock_fact_table(db)

    def test_runs_are_recorded(self, db, seed):
        analytics_refresh.refresh(db, trigger="manual")
        analytics_refresh.refresh(db, trigger="scheduled")
        triggers = [r.trigger for r in db.query(AnalyticsRefreshRun).order_by(AnalyticsRefreshRun.id)]
        assert triggers == ["manual", "scheduled"]


# ── 4. Status and data quality ───────────────────────────────────────────────


class TestStatusAndQuality:
    def test_status_tracks_sync(self, db, seed, make_report):
        make_report()
        analytics_refresh.refresh(db)
        status = analytics_refresh.get_refresh_status(db)
        assert status["isInSync"] is True
        assert status["sourceCount"] == status["targetCount"] == 1
        assert status["lastRun"]["status"] == "SUCCEEDED"
        assert status["lastUpdated"] is not None

        make_report(title="Fresh pothole")
        status = analytics_refresh.get_refresh_status(db)
        assert status["isInSync"] is False
        assert status["sourceCount"] == 2

    def test_status_before_any_refresh(self, db, seed):
        status = analytics_refresh.get_refresh_status(db)
        assert status["lastUpdated"] is None
        assert status["lastRun"] is None
        assert status["isInSync"] is True

    def test_quality_flags_bad_rows(self, db, seed, make_report):
        report = make_report()
        analytics_refresh.refresh(db)
        assert analytics_refresh.validate_data_quality(db)["overallScore"] == 100

        fact = db.get(FactReport, report.id)
        fact.latitude = 95.0
        fact.resolution_duration_secs = -5
        db.commit()

        result = analytics_refresh.validate_data_quality(db)
        assert result["overallScore"] == 50
        failed = {r["check"] for r in result["validationResults"] if not r["passed"]}
        assert failed == {"Valid coordinates", "Reasonable duration values"}
