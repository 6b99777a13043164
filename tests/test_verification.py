"""Admin admission of citizen reports."""

from datetime import datetime, timezone

import pytest

import workflow
from errors import Conflict, NotFound, ValidationFailed
from triage import as_utc


class TestApprove:
    def test_scenario_pothole_approved_at_severity_five(self, db, notifier, admin, submit):
        report = submit(category="pothole")
        assert report["department"] == "road"
        assert report["severity"] == 3
        assert report["priorityScore"] == 30
        assert report["votes"] == 0

        updated = workflow.verify_report(db, notifier, str(report["_id"]), admin, True, severity=5)

        assert updated["priorityScore"] == 50
        assert updated["slaDays"] == 4
        assert updated["status"] == "Acknowledged"
        assert updated["slaStatus"] == "Pending"
        started = as_utc(updated["slaStartDate"])
        assert abs((datetime.now(timezone.utc) - started).total_seconds()) < 5

    def test_history_and_audit_entries_are_appended(self, db, notifier, admin, submit):
        report = submit()
        updated = workflow.verify_report(db, notifier, str(report["_id"]), admin, True, severity=2, note="legit")

        assert [h["status"] for h in updated["statusHistory"]] == ["Open", "Acknowledged"]
        assert updated["statusHistory"][-1]["by"] == admin["id"]
        audit = updated["citizenAdminVerification"]
        assert audit["verified"] is True
        assert audit["note"] == "legit"
        assert [(h["admin"], h["action"]) for h in audit["history"]] == [(admin["id"], "approved")]

    @pytest.mark.parametrize("severity", [None, 0, 6, -1])
    def test_missing_or_out_of_range_severity_is_rejected(self, db, notifier, admin, submit, severity):
        report = submit()
        with pytest.raises(ValidationFailed):
            workflow.verify_report(db, notifier, str(report["_id"]), admin, True, severity=severity)

        unchanged = db["report"].find_one({"_id": report["_id"]})
        assert unchanged["status"] == "Open"
        assert unchanged["citizenAdminVerification"]["verified"] is None
        assert unchanged["citizenAdminVerification"]["history"] == []
        assert len(unchanged["statusHistory"]) == 1
        assert unchanged["version"] == 0
        assert db["notification"].count_documents({}) == 0

    def test_reporter_and_department_officers_are_notified(
        self, db, notifier, admin, citizen, road_officer, sanitation_officer, submit, inbox
    ):
        report = submit(category="pothole")
        workflow.verify_report(db, notifier, str(report["_id"]), admin, True, severity=4)

        assert any("verified by admin (Severity: 4)" in m for m in inbox(citizen))
        assert any("added to your department queue" in m for m in inbox(road_officer))
        assert inbox(sanitation_officer) == []


class TestReject:
    def test_reject_requires_note(self, db, notifier, admin, submit):
        report = submit()
        with pytest.raises(ValidationFailed):
            workflow.verify_report(db, notifier, str(report["_id"]), admin, False, note="   ")
        assert db["report"].find_one({"_id": report["_id"]})["status"] == "Open"

    def test_reject_keeps_defaults_and_closes_report(self, db, notifier, admin, citizen, submit, inbox):
        report = submit()
        updated = workflow.verify_report(db, notifier, str(report["_id"]), admin, False, note="Duplicate of #12")

        assert updated["status"] == "Rejected"
        assert updated["severity"] == 3
        assert updated["priorityScore"] == 30
        assert updated["slaStartDate"] is None
        assert updated["slaStatus"] == "N/A"
        assert updated["citizenAdminVerification"]["verified"] is False
        assert updated["citizenAdminVerification"]["history"][0]["action"] == "rejected"
        assert any("Reason: Duplicate of #12" in m for m in inbox(citizen))


class TestIdempotency:
    def test_second_verification_is_a_conflict(self, db, notifier, admin, submit):
        report = submit()
        workflow.verify_report(db, notifier, str(report["_id"]), admin, True, severity=3)
        with pytest.raises(Conflict):
            workflow.verify_report(db, notifier, str(report["_id"]), admin, False, note="changed my mind")

        stored = db["report"].find_one({"_id": report["_id"]})
        assert stored["status"] == "Acknowledged"
        assert len(stored["citizenAdminVerification"]["history"]) == 1

    def test_unknown_report(self, db, notifier, admin):
        with pytest.raises(NotFound):
            workflow.verify_report(db, notifier, "64b7f0c2e4b0a1a2b3c4d5e6", admin, True, severity=3)

    def test_malformed_id(self, db, notifier, admin):
        with pytest.raises(ValidationFailed):
            workflow.verify_report(db, notifier, "not-an-id", admin, True, severity=3)


class TestPendingList:
    def test_lists_unverified_reports_of_both_kinds_newest_first(self, db, notifier, admin, submit):
        first = submit(title="Geo report")
        second = submit(title="Text report", location=None, address="12 Park Street")
        done = submit(title="Already verified")
        workflow.verify_report(db, notifier, str(done["_id"]), admin, True, severity=1)
        for doc, day in ((first, 1), (second, 2), (done, 3)):
            db["report"].update_one({"_id": doc["_id"]}, {"$set": {"created_at": datetime(2026, 5, day, tzinfo=timezone.utc)}})

        pending = workflow.list_pending_verification(db)

        assert [r["_id"] for r in pending] == [second["_id"], first["_id"]]
        assert {r["locationKind"] for r in pending} == {"geo", "address"}
