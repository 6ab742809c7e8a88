"""
Analytics query façade tests.

Test blocks:
  1. Filter parsing
  2. Empty windows
  3. KPI queries over the fact table
  4. Spatial queries
  5. Trending and citizen interaction
  6. Live-table buckets and reopened reports
  7. Scoping and failure mapping
"""

from datetime import date, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from civictrack.core.errors import AuthorizationError, DependencyError, ValidationError
from civictrack.core.security import Principal
from civictrack.models import FactReport, ReportStatus, UserRole
from civictrack.services import analytics_refresh, lifecycle, support
from civictrack.services import analytics_queries as aq
from civictrack.services.analytics_queries import AnalyticsFilters

from tests.conftest import T0


def _refresh(db):
    analytics_refresh.refresh(db)


# ── 1. Filter parsing ────────────────────────────────────────────────────────


class TestFilters:
    def test_default_window_ends_today(self, clock):
        f = AnalyticsFilters.parse()
        assert f.end_date == T0.date()
        assert f.start_date == T0.date() - timedelta(days=365)
        assert f.window_days() == 366

    def test_all_status_means_no_filter(self):
        assert AnalyticsFilters.parse(status="all").status is None
        assert AnalyticsFilters.parse(status="in_progress").status == ReportStatus.IN_PROGRESS

    def test_datetime_strings_are_accepted(self):
        f = AnalyticsFilters.parse("2026-01-01T00:00:00", "2026-01-31")
        assert f.start_date == date(2026, 1, 1)

    @pytest.mark.parametrize(
        "kwargs, field",
        [
            ({"start_date": "yesterday"}, "startDate"),
            ({"start_date": "2026-02-10", "end_date": "2026-02-01"}, "startDate"),
            ({"status": "LOST"}, "status"),
            ({"min_lng": 28.0, "min_lat": 40.0}, "bbox"),
            ({"min_lng": 30.0, "min_lat": 40.0, "max_lng": 29.0, "max_lat": 41.0}, "bbox"),
        ],
    )
    def test_invalid_filters(self, kwargs, field):
        with pytest.raises(ValidationError) as exc:
            AnalyticsFilters.parse(**kwargs)
        assert field in exc.value.details


# ── 2. Empty windows ─────────────────────────────────────────────────────────


class TestEmptyWindow:
    @pytest.fixture()
    def empty(self, db, seed, make_report):
        make_report()
        _refresh(db)
        return AnalyticsFilters.parse("2025-01-01", "2025-01-31")

    def test_summary_is_zeroed(self, db, empty):
        assert aq.get_summary_stats(db, empty) == {
            "totalReportCount": 0,
            "resolvedCount": 0,
            "resolutionRate": 0,
            "avgResolutionDays": None,
            "avgFirstResponseHours": None,
            "avgInterventionHours": None,
        }

    def test_other_queries_are_empty(self, db, empty):
        assert aq.get_funnel(db, empty)["total"] == 0
        assert aq.get_category_distribution(db, empty) == []
        assert aq.get_spatial_distribution(db, empty) == []
        assert aq.get_heatmap(db, empty) == []
        assert aq.get_cluster_analysis(db, empty) == []
        assert aq.get_trending_category(db, empty) is None
        assert aq.get_citizen_interaction(db, empty) == {
            "totalSupports": 0, "reportCount": 0, "avgSupportPerReport": 0,
        }
        assert aq.get_reopened_reports(db, empty) == {"count": 0, "reportIds": [], "reopenRate": 0}

    def test_temporal_fills_empty_buckets(self, db, empty):
        series = aq.get_temporal_distribution(db, empty, "weekly")
        assert series
        assert all(p["created"] == 0 and p["resolved"] == 0 for p in series)


# ── 3. KPIs ──────────────────────────────────────────────────────────────────


class TestKpis:
    def test_summary(self, db, seed, make_report, walk_to):
        walk_to(make_report(), "DONE")
        make_report(title="Loose manhole cover")
        _refresh(db)

        s = aq.get_summary_stats(db, AnalyticsFilters.parse())
        assert s["totalReportCount"] == 2
        assert s["resolvedCount"] == 1
        assert s["resolutionRate"] == 50.0
        assert s["avgResolutionDays"] == 0.17
        assert s["avgFirstResponseHours"] == 1.0
        assert s["avgInterventionHours"] == 2.0

    def test_funnel_is_monotonic(self, db, seed, make_report, walk_to):
        walk_to(make_report(), "DONE")
        walk_to(make_report(title="Crater"), "IN_PROGRESS")
        make_report(title="Rut")
        _refresh(db)

        funnel = aq.get_funnel(db, AnalyticsFilters.parse())
        assert (funnel["total"], funnel["assigned"], funnel["resolved"]) == (3, 2, 1)
        assert funnel["assignmentRate"] == 66.67
        assert funnel["resolutionRate"] == 50.0

    def test_funnel_ignores_resolutions_without_assignment(self, db, seed, make_report):
        report = make_report()
        _refresh(db)
        fact = db.get(FactReport, report.id)
        fact.final_status = ReportStatus.DONE.value
        db.commit()

        funnel = aq.get_funnel(db, AnalyticsFilters.parse())
        assert funnel["total"] >= funnel["assigned"] >= funnel["resolved"]
        assert funnel["resolved"] == 0

    def test_status_filter(self, db, seed, make_report, walk_to):
        walk_to(make_report(), "DONE")
        make_report(title="Rut")
        _refresh(db)
        s = aq.get_summary_stats(db, AnalyticsFilters.parse(status="DONE"))
        assert s["totalReportCount"] == 1

    def test_category_distribution(self, db, seed, make_report):
        make_report()
        make_report(title="Second pothole")
        make_report(category=seed.lamp, title="Dark corner")
        _refresh(db)

        dist = aq.get_category_distribution(db, AnalyticsFilters.parse())
        assert [(c["categoryName"], c["count"], c["percentage"]) for c in dist] == [
            ("Pothole", 2, 66.67),
            ("Broken lamp", 1, 33.33),
        ]
        assert len(aq.get_category_distribution(db, AnalyticsFilters.parse(), limit=1)) == 1
        with pytest.raises(ValidationError):
            aq.get_category_distribution(db, AnalyticsFilters.parse(), limit=0)

    def test_temporal_daily(self, db, seed, make_report, clock):
        make_report()
        clock.advance(days=2)
        make_report(title="Later pothole")
        _refresh(db)

        series = aq.get_temporal_distribution(db, AnalyticsFilters.parse("2026-03-01", "2026-03-05"), "daily")
        assert [(p["period"], p["created"]) for p in series] == [
            ("2026-03-01", 0),
            ("2026-03-02", 1),
            ("2026-03-03", 0),
            ("2026-03-04", 1),
            ("2026-03-05", 0),
        ]

    def test_temporal_weekly_and_monthly(self, db, seed, make_report, clock):
        make_report()
        clock.advance(days=2)
        make_report(title="Later pothole")
        _refresh(db)
        f = AnalyticsFilters.parse("2026-03-01", "2026-03-05")

        weekly = aq.get_temporal_distribution(db, f, "weekly")
        assert [(p["period"], p["created"]) for p in weekly] == [("2026-02-23", 0), ("2026-03-02", 2)]
        monthly = aq.get_temporal_distribution(db, f, "monthly")
        assert [(p["period"], p["created"]) for p in monthly] == [("2026-03-01", 2)]

    def test_temporal_rejects_unknown_granularity(self, db, seed):
        with pytest.raises(ValidationError):
            aq.get_temporal_distribution(db, AnalyticsFilters.parse(), "hourly")


# ── 4. Spatial ───────────────────────────────────────────────────────────────


class TestSpatial:
    def test_bbox_filter(self, db, seed, make_report):
        inside = make_report(lat=41.0, lng=29.0)
        make_report(title="Far pothole", lat=41.5, lng=29.5)
        make_report(title="Unlocated pothole", lat=None, lng=None)
        _refresh(db)

        everywhere = aq.get_spatial_distribution(db, AnalyticsFilters.parse())
        assert len(everywhere) == 2

        f = AnalyticsFilters.parse(min_lng=28.9, min_lat=40.9, max_lng=29.1, max_lat=41.1)
        points = aq.get_spatial_distribution(db, f)
        assert [p["reportId"] for p in points] == [inside.id]
        assert aq.get_summary_stats(db, f)["totalReportCount"] == 1

    def test_heatmap_groups_rounded_points(self, db, seed, make_report):
        make_report(lat=41.00001, lng=29.00001)
        make_report(title="Same spot", lat=41.00002, lng=29.00002)
        make_report(title="Elsewhere", lat=41.5, lng=29.5)
        _refresh(db)

        cells = aq.get_heatmap(db, AnalyticsFilters.parse())
        assert cells[0] == {"latitude": 41.0, "longitude": 29.0, "count": 2, "weight": 2.0}
        assert len(cells) == 2

    def test_clusters_need_three_reports(self, db, seed, make_report):
        ids = [
            make_report(title=f"Pothole {i}", lat=41.001 + i / 1000, lng=29.001 + i / 1000).id
            for i in range(3)
        ]
        make_report(title="Lone pothole", lat=41.5, lng=29.5)
        make_report(title="Lone pothole 2", lat=41.501, lng=29.501)
        _refresh(db)

        clusters = aq.get_cluster_analysis(db, AnalyticsFilters.parse())
        assert len(clusters) == 1
        assert clusters[0]["count"] == 3
        assert clusters[0]["reportIds"] == sorted(ids)
        assert clusters[0]["dominantCategoryId"] == seed.pothole.id

    def test_cluster_cell_size_must_be_positive(self, db, seed):
        with pytest.raises(ValidationError):
            aq.get_cluster_analysis(db, AnalyticsFilters.parse(), cell_size=0)


# ── 5. Trending and interaction ──────────────────────────────────────────────


class TestTrending:
    WINDOW = ("2026-03-02", "2026-03-08")

    def test_new_category_gets_sentinel_growth(self, db, seed, make_report, clock):
        clock.now = T0 - timedelta(days=3)
        make_report(title="Old pothole")
        clock.now = T0
        make_report()
        make_report(title="Another pothole")
        make_report(category=seed.lamp, title="Dark corner")
        _refresh(db)

        trending = aq.get_trending_category(db, AnalyticsFilters.parse(*self.WINDOW))
        assert trending["categoryId"] == seed.lamp.id
        assert trending["growthPercentage"] == aq.TRENDING_NEW_CATEGORY_GROWTH
        assert trending["previousCount"] == 0

    def test_largest_growth_wins(self, db, seed, make_report, clock):
        clock.now = T0 - timedelta(days=3)
        make_report(title="Old pothole")
        make_report(category=seed.lamp, title="Old dark corner")
        clock.now = T0
        for i in range(3):
            make_report(title=f"New pothole {i}")
        make_report(category=seed.lamp, title="Dark corner")
        _refresh(db)

        trending = aq.get_trending_category(db, AnalyticsFilters.parse(*self.WINDOW))
        assert trending["categoryName"] == "Pothole"
        assert (trending["currentCount"], trending["previousCount"]) == (3, 1)
        assert trending["growthPercentage"] == 200.0

    def test_citizen_interaction(self, db, seed, make_report):
        first = make_report()
        make_report(title="Quiet pothole")
        support.support_report(db, first.id, seed.p.neighbour)
        support.support_report(db, first.id, seed.p.member)
        support.support_report(db, first.id, seed.p.supervisor)
        _refresh(db)

        assert aq.get_citizen_interaction(db, AnalyticsFilters.parse()) == {
            "totalSupports": 3,
            "reportCount": 2,
            "avgSupportPerReport": 1.5,
        }


# ── 6. Live buckets ──────────────────────────────────────────────────────────


class TestCounts:
    def test_named_buckets(self, db, seed, make_report, walk_to):
        fresh = make_report()
        working = walk_to(make_report(title="Crater"), "IN_PROGRESS")
        claimed = make_report(title="Rut")
        lifecycle.claim_report(db, claimed.id, seed.p.supervisor)

        counts = aq.get_counts(db, AnalyticsFilters.parse(), ["unassigned", "IN_PROGRESS", "TOTAL"])
        assert counts["UNASSIGNED"] == {"count": 1, "reportIds": [fresh.id]}
        assert counts["IN_PROGRESS"]["reportIds"] == [working.id]
        assert counts["TOTAL"]["count"] == 3

    def test_counts_are_live_without_refresh(self, db, seed, make_report):
        make_report()
        assert aq.get_counts(db, AnalyticsFilters.parse(), ["OPEN"])["OPEN"]["count"] == 1

    def test_overdue(self, db, seed, make_report, walk_to, clock):
        stale = make_report()
        closed = walk_to(make_report(title="Fixed pothole"), "DONE")
        clock.advance(days=8)
        make_report(title="Fresh pothole")

        overdue = aq.get_counts(db, AnalyticsFilters.parse(), ["OVERDUE"])["OVERDUE"]
        assert overdue["reportIds"] == [stale.id]
        assert closed.id not in overdue["reportIds"]

    def test_all_buckets_by_default(self, db, seed):
        counts = aq.get_counts(db, AnalyticsFilters.parse())
        assert set(counts) == set(aq.BUCKETS)
        assert all(b["count"] == 0 for b in counts.values())

    def test_unknown_bucket(self, db, seed):
        with pytest.raises(ValidationError) as exc:
            aq.get_counts(db, AnalyticsFilters.parse(), ["STALE"])
        assert "types" in exc.value.details

    def test_reopened_reports(self, db, seed, make_report, walk_to):
        again = walk_to(make_report(), "DONE")
        walk_to(make_report(title="Fixed for good"), "DONE")
        make_report(title="Never fixed")
        lifecycle.reopen_report(db, again.id, seed.p.supervisor)

        reopened = aq.get_reopened_reports(db, AnalyticsFilters.parse())
        assert reopened == {"count": 1, "reportIds": [again.id], "reopenRate": 50.0}

    def test_dashboard(self, db, seed, make_report, walk_to):
        walk_to(make_report(), "PENDING_APPROVAL")
        stats = aq.get_dashboard_stats(db, seed.p.supervisor)
        assert list(stats) == list(aq.DASHBOARD_BUCKETS)
        assert stats["PENDING_APPROVAL"]["count"] == 1


# ── 7. Scope and failures ────────────────────────────────────────────────────


class TestScope:
    def test_citizen_sees_only_own_reports(self, db, seed, make_report):
        make_report()
        make_report(principal=seed.p.neighbour, title="Neighbour's pothole")
        _refresh(db)

        f = AnalyticsFilters.parse()
        assert aq.get_summary_stats(db, f.scoped(seed.p.citizen))["totalReportCount"] == 1
        assert aq.get_summary_stats(db, f.scoped(seed.p.admin))["totalReportCount"] == 2

    def test_staff_pinned_to_own_department(self, db, seed, make_report):
        make_report()
        make_report(category=seed.lamp, title="Dark corner")
        _refresh(db)

        f = AnalyticsFilters.parse(department_id=seed.roads.id).scoped(seed.p.lighting_supervisor)
        assert f.department_id == seed.lighting.id
        assert aq.get_summary_stats(db, f)["totalReportCount"] == 1

    def test_staff_without_department_is_refused(self, db, seed, make_report):
        make_report()
        _refresh(db)
        orphan = Principal(user_id=seed.users.supervisor.id, roles=(UserRole.DEPARTMENT_SUPERVISOR,))

        with pytest.raises(AuthorizationError):
            AnalyticsFilters.parse(department_id=seed.roads.id).scoped(orphan)
        with pytest.raises(AuthorizationError):
            AnalyticsFilters.parse().scoped(orphan)


class TestFailures:
    def test_operational_error_becomes_dependency_error(self, db, seed):
        @aq.bounded_query
        def flaky(db):
            raise OperationalError("SELECT 1", {}, Exception("canceling statement due to statement timeout"))

        with pytest.raises(DependencyError):
            flaky(db)
