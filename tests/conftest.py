"""Pytest configuration: in-memory mongomock database and FastAPI TestClient."""

import os

# Override env BEFORE importing app modules so config picks up test values.
os.environ.update(
    {
        "JWT_SECRET": "test-secret",
        "GEOCODING_ENABLED": "false",
        "LOG_LEVEL": "WARNING",
    }
)
os.environ.pop("DATABASE_URL", None)

import mongomock  # noqa: E402
import pytest  # noqa: E402
from bson import ObjectId  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import workflow  # noqa: E402
from database import get_db  # noqa: E402
from main import app, create_token  # noqa: E402
from notifier import Notifier  # noqa: E402
from triage import DepartmentRouter  # noqa: E402


@pytest.fixture
def db():
    """A fresh in-memory database per test."""
    return mongomock.MongoClient().civic_test


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def router():
    return DepartmentRouter.default()


@pytest.fixture
def notifier(db):
    return Notifier(db)


@pytest.fixture
def make_user(db):
    """Insert a user and return its principal dict."""

    def _make(role="citizen", department=None, name=None):
        uid = db["user"].insert_one(
            {
                "name": name or role,
                "email": f"{ObjectId()}@example.com",
                "role": role,
                "department": department,
                "password_hash": "",
                "warnings": 0,
                "blocked": False,
            }
        ).inserted_id
        return {"id": str(uid), "role": role, "department": department}

    return _make


@pytest.fixture
def headers():
    def _headers(principal):
        token = create_token(principal["id"], principal["role"], principal.get("department"))
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def citizen(make_user):
    return make_user("citizen", name="Asha")


@pytest.fixture
def admin(make_user):
    return make_user("admin", name="Admin")


@pytest.fixture
def road_officer(make_user):
    return make_user("officer", "road", name="Road Officer")


@pytest.fixture
def sanitation_officer(make_user):
    return make_user("officer", "sanitation", name="Sanitation Officer")


@pytest.fixture
def submit(db, notifier, router, citizen):
    """Submit a geo report as ``citizen``."""

    def _submit(category="pothole", title="Pothole on MG Road", reporter=None, **kwargs):
        kwargs.setdefault("location", {"lng": 77.59, "lat": 12.97})
        return workflow.create_report(
            db, notifier, router, reporter or citizen, title=title, description="Deep pothole near the bus stop",
            category=category, **kwargs
        )

    return _submit


@pytest.fixture
def verified(db, notifier, admin, submit):
    """Submit and approve a report at the given severity."""

    def _verified(severity=5, **kwargs):
        report = submit(**kwargs)
        return workflow.verify_report(db, notifier, str(report["_id"]), admin, True, severity=severity)

    return _verified


@pytest.fixture
def inbox(db):
    """Messages delivered to a principal so far."""

    def _inbox(principal):
        return [n["message"] for n in db["notification"].find({"user_id": principal["id"]})]

    return _inbox
