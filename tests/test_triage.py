from datetime import datetime, timedelta, timezone

import pytest

from triage import (
    RESOLVED,
    SLA_CLOSED,
    SLA_NOT_STARTED,
    SLA_OVERDUE,
    SLA_PENDING,
    DepartmentRouter,
    as_utc,
    priority_score,
    reset_sla,
    sla_days,
    sla_snapshot,
    start_sla,
    stop_sla,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestPriorityScore:
    def test_formula(self):
        assert priority_score(3, 0) == 30
        assert priority_score(5, 0) == 50
        assert priority_score(5, 4) == 70
        assert priority_score(1, 7) == 45

    def test_monotonic_in_votes(self):
        for severity in range(1, 6):
            scores = [priority_score(severity, v) for v in range(20)]
            assert scores == sorted(scores)

    def test_strictly_increasing_in_severity(self):
        for votes in (0, 1, 10):
            scores = [priority_score(s, votes) for s in range(1, 6)]
            assert all(a < b for a, b in zip(scores, scores[1:]))


class TestSlaDays:
    @pytest.mark.parametrize(
        "score,days",
        [(100, 2), (60, 2), (59, 4), (30, 4), (29, 7), (10, 7), (0, 7)],
    )
    def test_tiers_with_inclusive_lower_bounds(self, score, days):
        assert sla_days(score) == days


class TestDepartmentRouter:
    def test_category_to_department(self):
        router = DepartmentRouter.default()
        assert router.category_to_department("pothole") == "road"
        assert router.category_to_department("garbage") == "sanitation"
        assert router.category_to_department("water-logging") == "drainage"

    def test_unknown_category_routes_to_general(self):
        router = DepartmentRouter.default()
        assert router.category_to_department("alien-landing") == "general"
        assert router.normalize_category("alien-landing") == "other"
        assert router.normalize_category("park") == "park"

    def test_department_to_canonical_category(self):
        router = DepartmentRouter.default()
        assert router.department_to_category("sanitation") == "garbage"
        assert router.department_to_category("road") == "pothole"
        assert router.department_to_category("nowhere") == "other"

    def test_inverse_is_lossy_for_shared_departments(self):
        router = DepartmentRouter.default()
        assert router.category_to_department("drainage") == "drainage"
        assert router.department_to_category("drainage") == "water-logging"

    def test_every_department_round_trips_through_its_canonical_category(self):
        router = DepartmentRouter.default()
        for dept in router.departments:
            assert router.category_to_department(router.department_to_category(dept)) == dept

    def test_tables_are_read_only(self):
        router = DepartmentRouter.default()
        with pytest.raises(TypeError):
            router._to_department["pothole"] = "sanitation"


class TestSlaClock:
    def test_not_started_before_verification(self):
        snap = sla_snapshot({"status": "Open"}, NOW)
        assert snap["slaStatus"] == SLA_NOT_STARTED
        assert snap["slaEndDate"] is None

    def test_start_sets_deadline_from_score(self):
        fields = start_sla(50, NOW)
        assert fields["slaDays"] == 4
        assert fields["slaEndDate"] == NOW + timedelta(days=4)
        assert fields["slaStatus"] == SLA_PENDING

    def test_running_clock_reports_remaining_time(self):
        report = {"status": "Acknowledged", **start_sla(70, NOW)}
        snap = sla_snapshot(report, NOW + timedelta(days=1))
        assert snap["slaStatus"] == SLA_PENDING
        assert snap["slaRemainingSeconds"] == pytest.approx(86400)

    def test_overdue_at_and_after_deadline(self):
        report = {"status": "In Progress", **start_sla(70, NOW)}
        assert sla_snapshot(report, NOW + timedelta(days=2))["slaStatus"] == SLA_OVERDUE
        assert sla_snapshot(report, NOW + timedelta(days=9))["slaStatus"] == SLA_OVERDUE

    def test_terminal_reports_are_never_overdue(self):
        report = {"status": RESOLVED, **start_sla(70, NOW)}
        report.update(stop_sla(report, NOW + timedelta(days=5)))
        snap = sla_snapshot(report, NOW + timedelta(days=30))
        assert snap["slaStatus"] == SLA_CLOSED
        assert snap["slaRemainingSeconds"] == pytest.approx(-3 * 86400)

    def test_stop_freezes_remaining_time(self):
        report = {"status": "Acknowledged", **start_sla(30, NOW)}
        frozen = stop_sla(report, NOW + timedelta(days=1))
        assert frozen == {"slaStatus": SLA_CLOSED, "slaRemainingSeconds": pytest.approx(3 * 86400)}

    def test_reset_discards_old_deadline(self):
        later = NOW + timedelta(days=10)
        fields = reset_sla(80, later)
        assert fields["slaStartDate"] == later
        assert fields["slaDays"] == 2
        assert fields["slaEndDate"] is None
        assert fields["slaStatus"] == SLA_PENDING
        snap = sla_snapshot({"status": "Acknowledged", **fields}, later)
        assert snap["slaEndDate"] == later + timedelta(days=2)

    def test_naive_datetimes_are_treated_as_utc(self):
        naive = datetime(2026, 3, 1, 12, 0)
        assert as_utc(naive) == NOW
        report = {"status": "Acknowledged", "slaStartDate": naive, "slaDays": 2}
        assert sla_snapshot(report, NOW + timedelta(days=1))["slaStatus"] == SLA_PENDING
