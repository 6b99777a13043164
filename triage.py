"""
Triage rules: department routing, priority scoring and the SLA clock.

Nothing in here touches the database. The workflow module feeds documents in
and persists what comes back.
"""

from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from config import CATEGORY_TO_DEPARTMENT, DEPARTMENT_TO_CATEGORY

OPEN = "Open"
ACKNOWLEDGED = "Acknowledged"
IN_PROGRESS = "In Progress"
RESOLVED = "Resolved"
REJECTED = "Rejected"
TERMINAL_STATUSES = frozenset({RESOLVED, REJECTED})

SLA_NOT_STARTED = "Not Started"
SLA_PENDING = "Pending"
SLA_OVERDUE = "Overdue"
SLA_CLOSED = "N/A"

DEFAULT_SEVERITY = 3
DEFAULT_DEPARTMENT = "general"
DEFAULT_CATEGORY = "other"


class DepartmentRouter:
    """Bidirectional category <-> department lookup over fixed tables.

    The reverse direction is lossy: several categories may share a
    department, and each department maps back to one canonical category.
    """

    def __init__(self, category_to_department: Mapping[str, str], department_to_category: Mapping[str, str]):
        self._to_department = MappingProxyType(dict(category_to_department))
        self._to_category = MappingProxyType(dict(department_to_category))

    @classmethod
    def default(cls) -> "DepartmentRouter":
        return cls(CATEGORY_TO_DEPARTMENT, DEPARTMENT_TO_CATEGORY)

    @property
    def categories(self):
        return tuple(self._to_department)

    @property
    def departments(self):
        return tuple(self._to_category)

    def is_department(self, department: str) -> bool:
        return department in self._to_category

    def normalize_category(self, category: str) -> str:
        return category if category in self._to_department else DEFAULT_CATEGORY

    def category_to_department(self, category: str) -> str:
        return self._to_department.get(category, DEFAULT_DEPARTMENT)

    def department_to_category(self, department: str) -> str:
        return self._to_category.get(department, DEFAULT_CATEGORY)


def priority_score(severity: int, votes: int) -> int:
    return severity * 10 + votes * 5


def sla_days(score: int) -> int:
    """Days to resolve for a priority score. Tier lower bounds are inclusive."""
    if score >= 60:
        return 2
    if score >= 30:
        return 4
    return 7


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Mongo hands back naive UTC datetimes unless the client is tz_aware.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def sla_deadline(start: datetime, days: int) -> datetime:
    return as_utc(start) + timedelta(days=days)


def start_sla(score: int, now: datetime) -> Dict[str, Any]:
    days = sla_days(score)
    return {
        "slaStartDate": now,
        "slaDays": days,
        "slaEndDate": sla_deadline(now, days),
        "slaStatus": SLA_PENDING,
        "slaRemainingSeconds": None,
    }


def reset_sla(score: int, now: datetime) -> Dict[str, Any]:
    """Restart the clock from ``now``, discarding the previous deadline."""
    return {
        "slaStartDate": now,
        "slaDays": sla_days(score),
        "slaEndDate": None,
        "slaStatus": SLA_PENDING,
        "slaRemainingSeconds": None,
        "escalated": False,
    }


def stop_sla(report: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """Freeze the clock when the report reaches a terminal status."""
    remaining = None
    if report.get("slaStartDate") is not None and report.get("slaDays") is not None:
        deadline = sla_deadline(report["slaStartDate"], report["slaDays"])
        remaining = (deadline - as_utc(now)).total_seconds()
    return {"slaStatus": SLA_CLOSED, "slaRemainingSeconds": remaining}


def sla_snapshot(report: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Evaluate the SLA clock of a report at ``now``.

    Returns slaStatus, slaEndDate and slaRemainingSeconds. Terminal reports
    always report ``N/A`` with their frozen remaining time, whatever the
    wall clock says.
    """
    now = as_utc(now or datetime.now(timezone.utc))
    start = report.get("slaStartDate")
    days = report.get("slaDays")
    deadline = sla_deadline(start, days) if start is not None and days is not None else None

    if report.get("status") in TERMINAL_STATUSES:
        return {
            "slaStatus": SLA_CLOSED,
            "slaEndDate": deadline,
            "slaRemainingSeconds": report.get("slaRemainingSeconds"),
        }
    if deadline is None:
        return {"slaStatus": SLA_NOT_STARTED, "slaEndDate": None, "slaRemainingSeconds": None}

    remaining = (deadline - now).total_seconds()
    return {
        "slaStatus": SLA_OVERDUE if remaining <= 0 else SLA_PENDING,
        "slaEndDate": deadline,
        "slaRemainingSeconds": remaining,
    }
