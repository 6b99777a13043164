"""
Report triage workflow.

Every operation here is a request-scoped read-modify-write against the
``report`` / ``transferlog`` collections:

* validation and authorization run before anything is written,
* report writes are conditional on the ``version`` read (see ``_commit``),
* notifications go out after the primary write and are best-effort.

Principals are the dicts produced by ``main.verify_token``:
``{"id": ..., "role": ..., "department": ...}``.
"""

import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING

from database import create_document, get_documents
from errors import Conflict, Forbidden, NotFound, ValidationFailed
from geocoding import reverse_geocode
from schemas import Comment, MediaRef, StatusEntry, VerificationEntry
from schemas import Report as ReportSchema
from schemas import TransferLog as TransferLogSchema
from triage import (
    ACKNOWLEDGED,
    DEFAULT_SEVERITY,
    IN_PROGRESS,
    OPEN,
    REJECTED,
    RESOLVED,
    SLA_CLOSED,
    SLA_OVERDUE,
    TERMINAL_STATUSES,
    priority_score,
    reset_sla,
    sla_deadline,
    sla_days,
    sla_snapshot,
    start_sla,
    stop_sla,
)

log = structlog.get_logger(__name__)

EARTH_RADIUS_M = 6371000
VOTE_ATTEMPTS = 3

# Targets an officer/admin may set directly. 'Rejected' only comes out of
# verification.
STATUS_UPDATE_TARGETS = (ACKNOWLEDGED, IN_PROGRESS, RESOLVED)
ALLOWED_TRANSITIONS = {
    ACKNOWLEDGED: frozenset({IN_PROGRESS, RESOLVED}),
    IN_PROGRESS: frozenset({RESOLVED}),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def parse_id(value: str, kind: str = "report") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationFailed(f"Invalid {kind} id")


def get_report(db, report_id) -> Dict[str, Any]:
    oid = report_id if isinstance(report_id, ObjectId) else parse_id(report_id)
    doc = db["report"].find_one({"_id": oid})
    if not doc:
        raise NotFound("Report not found")
    return doc


def get_transfer(db, transfer_id: str) -> Dict[str, Any]:
    doc = db["transferlog"].find_one({"_id": parse_id(transfer_id, "transfer")})
    if not doc:
        raise NotFound("Transfer not found")
    return doc


def _commit(db, report: Dict[str, Any], update: Dict[str, Dict[str, Any]], guard: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Apply ``update`` only if the report is still at the version we read."""
    update = {op: dict(fields) for op, fields in update.items()}
    update.setdefault("$set", {})["updated_at"] = _now()
    update.setdefault("$inc", {})["version"] = 1
    query = {"_id": report["_id"], "version": report.get("version", 0)}
    if guard:
        query.update(guard)
    res = db["report"].update_one(query, update)
    if res.matched_count == 0:
        raise Conflict("Report was modified by another request, please retry")
    return db["report"].find_one({"_id": report["_id"]})


def _history_entry(status: str, actor_id: str, note: str = "", media: Optional[List[Dict[str, Any]]] = None, at: Optional[datetime] = None) -> Dict[str, Any]:
    return StatusEntry(status=status, by=actor_id, note=note or "", media=media or [], at=at or _now()).model_dump()


def _is_verified(report: Dict[str, Any]) -> bool:
    return (report.get("citizenAdminVerification") or {}).get("verified") is True


# ---------- Intake ----------

def create_report(db, notifier, router, citizen: Dict[str, Any], title: str, description: str, category: str,
                  location: Optional[Dict[str, float]] = None, address: str = "",
                  media: Optional[List[Dict[str, str]]] = None, question: str = "") -> Dict[str, Any]:
    title = (title or "").strip()
    description = (description or "").strip()
    if not title or not description or not category:
        raise ValidationFailed("Missing required fields")

    user = db["user"].find_one({"_id": parse_id(citizen["id"], "user")})
    if user and user.get("blocked"):
        raise Forbidden("Account is blocked")

    address = (address or "").strip()
    point = None
    if location is not None:
        lng, lat = location.get("lng"), location.get("lat")
        if lng is None or lat is None or not (-180 <= lng <= 180 and -90 <= lat <= 90):
            raise ValidationFailed("Valid coordinates (lng, lat) are required")
        point = {"type": "Point", "coordinates": [float(lng), float(lat)]}
        if not address:
            address = reverse_geocode(lat, lng)
    elif not address:
        raise ValidationFailed("Valid coordinates or an address are required")

    stored_category = router.normalize_category(category)
    if stored_category != category:
        log.info("unknown_category_defaulted", category=category)
    department = router.category_to_department(stored_category)
    now = _now()

    comments = []
    question = (question or "").strip()
    if question:
        comments.append(Comment(id=str(ObjectId()), message=question, by=citizen["id"], created_at=now))

    report = ReportSchema(
        title=title,
        description=description,
        category=stored_category,
        severity=DEFAULT_SEVERITY,
        department=department,
        locationKind="geo" if point else "address",
        location=point,
        address=address,
        media=[MediaRef(url=m["url"], mime=m["mime"], uploadedBy="citizen") for m in (media or [])],
        reporter=citizen["id"],
        priorityScore=priority_score(DEFAULT_SEVERITY, 0),
        status=OPEN,
        statusHistory=[StatusEntry(status=OPEN, by=citizen["id"], note="Report submitted", at=now)],
        comments=comments,
    )
    data = report.model_dump()
    if data["location"] is None:
        # 2dsphere indexes must not see null locations
        data.pop("location")
    report_id = create_document(db, "report", data)
    log.info("report_created", report_id=report_id, category=stored_category, department=department,
             kind=data["locationKind"])
    how = "with manual address " if data["locationKind"] == "address" else ""
    notifier.notify_role("officer", f"New {stored_category} report {how}submitted to your department.",
                         department=department)
    return db["report"].find_one({"_id": ObjectId(report_id)})


# ---------- Verification ----------

def verify_report(db, notifier, report_id: str, admin: Dict[str, Any], approve: bool,
                  severity: Optional[int] = None, note: str = "") -> Dict[str, Any]:
    """Admit (approve) or reject a citizen report. Verification is one-shot."""
    report = get_report(db, report_id)
    if (report.get("citizenAdminVerification") or {}).get("verified") is not None:
        raise Conflict("Report already verified")

    note = (note or "").strip()
    if approve:
        if isinstance(severity, bool) or not isinstance(severity, int) or not 1 <= severity <= 5:
            raise ValidationFailed("Severity (1-5) required for approved reports")
    elif not note:
        raise ValidationFailed("A note is required when rejecting a report")

    now = _now()
    entry = VerificationEntry(admin=admin["id"], action="approved" if approve else "rejected",
                              note=note, createdAt=now).model_dump()
    sets = {
        "citizenAdminVerification.verified": bool(approve),
        "citizenAdminVerification.note": note,
        "citizenAdminVerification.verifiedAt": now,
    }
    if approve:
        score = priority_score(severity, report.get("votes", 0))
        sets.update({"severity": severity, "priorityScore": score, "status": ACKNOWLEDGED})
        sets.update(start_sla(score, now))
        history = _history_entry(ACKNOWLEDGED, admin["id"], f"Admin approved citizen report (severity {severity})", at=now)
    else:
        sets.update({"status": REJECTED, "slaStatus": SLA_CLOSED})
        history = _history_entry(REJECTED, admin["id"], f"Admin rejected citizen report: {note}", at=now)

    updated = _commit(db, report, {
        "$set": sets,
        "$push": {"citizenAdminVerification.history": entry, "statusHistory": history},
    })
    log.info("report_verified", report_id=str(report["_id"]), approved=bool(approve), severity=severity)

    title = report["title"]
    if approve:
        notifier.notify(report["reporter"], f'Your report "{title}" has been verified by admin '
                                            f'(Severity: {severity}) and forwarded for resolution.')
        notifier.notify_role("officer", f'New verified report "{title}" has been added to your department queue.',
                             department=updated["department"])
    else:
        notifier.notify(report["reporter"], f'Your report "{title}" was rejected by admin. Reason: {note}')
    return updated


def list_pending_verification(db) -> List[Dict[str, Any]]:
    return get_documents(db, "report", {"citizenAdminVerification.verified": None})


# ---------- Lifecycle ----------

def update_status(db, notifier, report_id: str, actor: Dict[str, Any], status: str, note: str = "",
                  media: Optional[List[Dict[str, str]]] = None) -> Dict[str, Any]:
    if status not in STATUS_UPDATE_TARGETS:
        raise ValidationFailed("Invalid status")
    report = get_report(db, report_id)
    if actor["role"] == "officer" and actor.get("department") != report.get("department"):
        raise Forbidden("Unauthorized")
    if not _is_verified(report):
        raise Conflict("Report has not been verified")
    current = report.get("status")
    if status not in ALLOWED_TRANSITIONS.get(current, ()):
        raise Conflict(f'Cannot move report from "{current}" to "{status}"')

    now = _now()
    media_refs = [MediaRef(url=m["url"], mime=m["mime"], uploadedBy=actor["role"]).model_dump() for m in (media or [])]
    sets = {"status": status}
    if status in TERMINAL_STATUSES:
        sets.update(stop_sla(report, now))
    updated = _commit(db, report, {
        "$set": sets,
        "$push": {"statusHistory": _history_entry(status, actor["id"], note, media_refs, at=now)},
    })
    log.info("report_status_changed", report_id=str(report["_id"]), old=current, new=status, actor=actor["id"])
    notifier.notify(report["reporter"], f'Your report "{report["title"]}" status changed to "{status}".')
    return updated


def register_vote(db, report_id: str, citizen: Dict[str, Any]) -> Dict[str, Any]:
    """Count one upvote per (report, citizen) and rescore the report.

    Votes from different citizens racing on the same report are retried
    against the fresh document a few times before giving up.
    """
    uid = citizen["id"]
    for attempt in range(VOTE_ATTEMPTS):
        report = get_report(db, report_id)
        if report.get("reporter") == uid:
            raise Forbidden("Cannot vote on your own report")
        if uid in report.get("voters", []):
            raise Conflict("Already voted")

        votes = report.get("votes", 0) + 1
        score = priority_score(report.get("severity", DEFAULT_SEVERITY), votes)
        sets = {"priorityScore": score}
        if report.get("slaStartDate") is not None and report.get("status") not in TERMINAL_STATUSES:
            sets["slaDays"] = sla_days(score)
            if report.get("slaEndDate") is not None:
                sets["slaEndDate"] = sla_deadline(report["slaStartDate"], sets["slaDays"])
        try:
            updated = _commit(db, report, {
                "$inc": {"votes": 1},
                "$push": {"voters": uid},
                "$set": sets,
            }, guard={"voters": {"$ne": uid}})
        except Conflict:
            log.info("vote_retry", report_id=report_id, attempt=attempt + 1)
            continue
        log.info("vote_recorded", report_id=report_id, votes=votes, priority=score)
        return updated
    raise Conflict("Report is busy, please retry")


def add_comment(db, report_id: str, citizen: Dict[str, Any], message: str) -> Dict[str, Any]:
    message = (message or "").strip()
    if not message:
        raise ValidationFailed("Message required")
    report = get_report(db, report_id)
    comment = Comment(id=str(ObjectId()), message=message, by=citizen["id"], created_at=_now()).model_dump()
    return _commit(db, report, {"$push": {"comments": comment}})


def reply_comment(db, notifier, report_id: str, comment_id: str, actor: Dict[str, Any], reply: str) -> Dict[str, Any]:
    reply = (reply or "").strip()
    if not reply:
        raise ValidationFailed("Reply required")
    report = get_report(db, report_id)
    if actor["role"] == "officer" and actor.get("department") != report.get("department"):
        raise Forbidden("Unauthorized")
    comments = report.get("comments", [])
    idx = next((i for i, c in enumerate(comments) if c.get("id") == comment_id), None)
    if idx is None:
        raise NotFound("Comment not found")
    if comments[idx].get("reply"):
        raise Conflict("Comment already answered")
    updated = _commit(db, report, {"$set": {f"comments.{idx}.reply": reply, f"comments.{idx}.repliedBy": actor["id"]}})
    notifier.notify(comments[idx]["by"], f'Your question on "{report["title"]}" has been answered.')
    return updated


def assign_report(db, notifier, report_id: str, admin: Dict[str, Any], officer_id: str) -> Dict[str, Any]:
    """Point a report at one officer of its department.

    The assignee is who SLA escalations go to; a transfer clears it.
    """
    if not officer_id:
        raise ValidationFailed("Officer ID required")
    report = get_report(db, report_id)
    officer = db["user"].find_one({"_id": parse_id(officer_id, "officer")})
    if not officer:
        raise NotFound("Officer not found")
    if officer.get("role") != "officer":
        raise ValidationFailed("User is not an officer")
    if officer.get("department") != report.get("department"):
        raise ValidationFailed("Officer belongs to another department")
    if report.get("status") in TERMINAL_STATUSES:
        raise Conflict("Report is closed")

    updated = _commit(db, report, {"$set": {"assignedTo": officer_id}})
    log.info("report_assigned", report_id=str(report["_id"]), officer=officer_id, admin=admin["id"])
    notifier.notify(officer_id, f'Report "{report["title"]}" has been assigned to you.')
    return updated


# ---------- Transfers ----------

def request_transfer(db, notifier, router, report_id: str, officer: Dict[str, Any], new_department: str,
                     reason: str) -> Dict[str, Any]:
    new_department = (new_department or "").strip()
    reason = (reason or "").strip()
    if not new_department or not reason:
        raise ValidationFailed("New department and reason are required.")
    if not router.is_department(new_department):
        raise ValidationFailed(f"Unknown department: {new_department}")

    report = get_report(db, report_id)
    old_department = report.get("department")
    if officer.get("department") != old_department:
        raise Forbidden("You cannot request transfer for this report.")
    if new_department == old_department:
        raise ValidationFailed("Report already in this department.")
    if not _is_verified(report):
        raise Conflict("Report has not been verified")
    if report.get("status") in TERMINAL_STATUSES:
        raise Conflict("Closed reports cannot be transferred")
    if db["transferlog"].find_one({"report_id": str(report["_id"]), "status": "pending"}):
        raise Conflict("A transfer request is already pending for this report")

    transfer = TransferLogSchema(
        report_id=str(report["_id"]),
        report_title=report["title"],
        requested_by=officer["id"],
        oldDepartment=old_department,
        newDepartment=new_department,
        reason=reason,
    )
    transfer_id = create_document(db, "transferlog", transfer)
    log.info("transfer_requested", transfer_id=transfer_id, report_id=str(report["_id"]),
             old=old_department, new=new_department)

    title = report["title"]
    notifier.notify_role("admin", f'Transfer request submitted for "{title}" from {old_department} -> {new_department}')
    notifier.notify(officer["id"], f'Your transfer request for "{title}" to {new_department} is awaiting admin verification.')
    return db["transferlog"].find_one({"_id": ObjectId(transfer_id)})


def verify_transfer(db, notifier, router, transfer_id: str, admin: Dict[str, Any], approve: bool,
                    admin_reason: str = "") -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
    """Approve or reject a pending transfer.

    The decision is claimed on the log first so two admins can not both
    verify it. On approval the report is re-routed and its SLA restarted
    before the log is marked completed; if the report write fails the claim
    is released.
    """
    transfer = get_transfer(db, transfer_id)
    admin_reason = (admin_reason or "").strip()
    now = _now()
    decision = {
        "adminVerification.status": "approved" if approve else "rejected",
        "adminVerification.verified": bool(approve),
        "adminVerification.verifiedBy": admin["id"],
        "adminVerification.verifiedAt": now,
        "adminVerification.adminReason": admin_reason,
        "updated_at": now,
    }
    if not approve:
        decision["status"] = "rejected"
    claimed = db["transferlog"].update_one(
        {"_id": transfer["_id"], "adminVerification.status": "pending"},
        {"$set": decision},
    )
    if claimed.matched_count == 0:
        raise Conflict("Transfer already verified")

    title = transfer.get("report_title") or "report"
    new_department = transfer["newDepartment"]

    if not approve:
        log.info("transfer_rejected", transfer_id=transfer_id, reason=admin_reason)
        notifier.notify(transfer["requested_by"], f'Transfer rejected for "{title}". '
                                                  f'Reason: {admin_reason or "No reason provided"}.')
        return db["transferlog"].find_one({"_id": transfer["_id"]}), None

    try:
        report = get_report(db, transfer["report_id"])
        new_category = router.department_to_category(new_department)
        sets = {"department": new_department, "category": new_category, "assignedTo": None}
        if report.get("status") not in TERMINAL_STATUSES:
            sets.update(reset_sla(report.get("priorityScore", 0), now))
        history = _history_entry(
            report["status"], admin["id"],
            f'Transferred from {transfer["oldDepartment"]} to {new_department}: {transfer["reason"]}', at=now,
        )
        updated_report = _commit(db, report, {"$set": sets, "$push": {"statusHistory": history}})
    except Exception:
        # Any failure after the claim hands the transfer back for another decision.
        db["transferlog"].update_one(
            {"_id": transfer["_id"]},
            {"$set": {
                "adminVerification.status": "pending",
                "adminVerification.verified": None,
                "adminVerification.verifiedBy": None,
                "adminVerification.verifiedAt": None,
                "adminVerification.adminReason": "",
            }},
        )
        raise

    db["transferlog"].update_one({"_id": transfer["_id"]}, {"$set": {"status": "completed", "updated_at": _now()}})
    log.info("transfer_completed", transfer_id=transfer_id, report_id=transfer["report_id"],
             department=new_department, category=new_category)

    notifier.notify(transfer["requested_by"], f'Transfer approved for "{title}" -> {new_department} ({new_category}).')
    notifier.notify_role("officer", f'Report "{title}" transferred to your department ({new_category}).',
                         department=new_department)
    notifier.notify_role("admin", f'Transfer of "{title}" to {new_department} completed.')
    return db["transferlog"].find_one({"_id": transfer["_id"]}), updated_report


def list_transfers(db, viewer: Dict[str, Any], status: Optional[str] = None) -> List[Dict[str, Any]]:
    query = {}
    if viewer["role"] == "officer":
        query["requested_by"] = viewer["id"]
    if status:
        query["status"] = status
    return get_documents(db, "transferlog", query)


# ---------- Reads ----------

def refresh_sla(db, report: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Overlay the live SLA clock on a report and persist a changed label."""
    snapshot = sla_snapshot(report, now)
    if snapshot["slaStatus"] != report.get("slaStatus") and report.get("status") not in TERMINAL_STATUSES:
        db["report"].update_one(
            {"_id": report["_id"], "status": {"$nin": list(TERMINAL_STATUSES)}},
            {"$set": {"slaStatus": snapshot["slaStatus"]}},
        )
    return {**report, **snapshot}


def officer_queue(db, officer: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Verified, open work for the officer's department.

    Reports with a pending transfer request are left out so two departments
    never work the same report.
    """
    pending = [ObjectId(rid) for rid in db["transferlog"].distinct("report_id", {"status": "pending"})]
    query = {
        "department": officer.get("department"),
        "citizenAdminVerification.verified": True,
        "status": {"$nin": list(TERMINAL_STATUSES)},
    }
    if pending:
        query["_id"] = {"$nin": pending}
    return list(db["report"].find(query).sort("created_at", DESCENDING))


def report_query(viewer: Dict[str, Any], category: Optional[str] = None, status: Optional[str] = None,
                 department: Optional[str] = None, severity: Optional[int] = None, reporter: Optional[str] = None,
                 search: Optional[str] = None, lat: Optional[float] = None, lng: Optional[float] = None,
                 radius: float = 500) -> Dict[str, Any]:
    """Mongo filter for the report listing. ``radius`` is in metres."""
    query: Dict[str, Any] = {}
    if viewer["role"] == "officer":
        query["department"] = viewer.get("department")
    elif department:
        query["department"] = department
    if category:
        query["category"] = category
    if status:
        query["status"] = status
    if severity is not None:
        query["severity"] = severity
    if reporter:
        query["reporter"] = reporter
    if search:
        rx = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"title": rx}, {"description": rx}, {"address": rx}]
    if lat is not None and lng is not None:
        # address reports carry no location field and never match
        query["location"] = {"$geoWithin": {"$centerSphere": [[lng, lat], radius / EARTH_RADIUS_M]}}
    return query


def list_reports(db, viewer: Dict[str, Any], page: int = 1, limit: int = 10,
                 **filters: Any) -> Tuple[int, List[Dict[str, Any]]]:
    query = report_query(viewer, **filters)
    page = max(page, 1)
    limit = max(limit, 1)
    total = db["report"].count_documents(query)
    items = list(db["report"].find(query).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit))
    return total, items


def transfers_for_report(db, report_id: ObjectId) -> List[Dict[str, Any]]:
    return list(db["transferlog"].find({"report_id": str(report_id)}).sort("created_at", ASCENDING))


def check_sla(db, notifier, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Escalate running reports whose deadline has passed.

    Each report escalates once per SLA window; a transfer reset clears the
    flag.
    """
    now = now or _now()
    active = db["report"].find({
        "status": {"$nin": list(TERMINAL_STATUSES)},
        "slaStartDate": {"$ne": None},
        "escalated": {"$ne": True},
    })
    escalated = []
    for report in list(active):
        snapshot = sla_snapshot(report, now)
        if snapshot["slaStatus"] != SLA_OVERDUE:
            continue
        overdue_days = math.floor(-snapshot["slaRemainingSeconds"] / 86400)
        res = db["report"].update_one(
            {"_id": report["_id"], "status": {"$nin": list(TERMINAL_STATUSES)}, "escalated": {"$ne": True}},
            {"$set": {
                "escalated": True,
                "slaStatus": SLA_OVERDUE,
                "escalation": {"overdueDays": overdue_days, "checkedAt": now, "slaDays": report.get("slaDays")},
            }},
        )
        if res.modified_count == 0:
            continue
        title = report["title"]
        assignee = report.get("assignedTo")
        log.warning("sla_breached", report_id=str(report["_id"]), department=report.get("department"),
                    overdue_days=overdue_days, assignee=assignee)
        message = (f'Report "{title}" is overdue by {overdue_text(-snapshot["slaRemainingSeconds"])}. '
                   f'Please take action immediately.')
        if assignee:
            notifier.notify(assignee, message)
        else:
            notifier.notify_role("officer", message, department=report.get("department"))
        notifier.notify_role("admin", f'Report "{title}" (Dept: {report.get("department")}) breached its SLA. '
                                      f'Officer: {_officer_name(db, assignee)}.')
        escalated.append({
            "id": str(report["_id"]),
            "title": title,
            "department": report.get("department"),
            "assignedTo": assignee,
            "slaDays": report.get("slaDays"),
            "overdueDays": overdue_days,
        })
    return escalated


def overdue_text(seconds: float) -> str:
    """Whole days past the deadline, or hours when under a day (at least 1)."""
    if seconds >= 86400:
        return f"{math.floor(seconds / 86400)} day(s)"
    return f"{max(1, math.floor(seconds / 3600))} hour(s)"


def _officer_name(db, officer_id: Optional[str]) -> str:
    if not officer_id:
        return "Unassigned"
    officer = db["user"].find_one({"_id": parse_id(officer_id, "officer")}, {"name": 1})
    return (officer or {}).get("name") or "Unassigned"
