from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import structlog
from bson import ObjectId
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

import database
import workflow
from config import APP_NAME, JWT_ALG, JWT_EXPIRE_MINUTES, JWT_REFRESH_EXPIRE_MINUTES, JWT_REFRESH_SECRET, JWT_SECRET
from database import create_document, ensure_indexes, get_db
from errors import CivicError
from logging_config import configure_logging
from notifier import Notifier
from schemas import ModerationEntry
from schemas import User as UserSchema
from triage import DepartmentRouter

configure_logging()
log = structlog.get_logger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
router = DepartmentRouter.default()

AUTO_BLOCK_WARNINGS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
    log.info("startup", app=APP_NAME, database=database.db is not None)
    yield


app = FastAPI(title=APP_NAME, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CivicError)
async def civic_error_handler(request: Request, exc: CivicError):
    log.info("request_rejected", path=request.url.path, status=exc.status_code, detail=exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


# ---------- Auth Helpers ----------

def create_token(user_id: str, role: str, department: Optional[str] = None):
    payload = {
        "sub": user_id,
        "role": role,
        "department": department,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=JWT_EXPIRE_MINUTES),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def create_refresh_token(user_id: str):
    payload = {
        "sub": user_id,
        "type": "refresh",
        "exp": datetime.now(timezone.utc) + timedelta(minutes=JWT_REFRESH_EXPIRE_MINUTES),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, JWT_REFRESH_SECRET, algorithm=JWT_ALG)


def issue_tokens(user_id: str, role: str, department: Optional[str] = None):
    return {"token": create_token(user_id, role, department), "refreshToken": create_refresh_token(user_id)}


def verify_token(authorization: Optional[str] = Header(None)):
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    try:
        scheme, token = authorization.split(" ", 1)
        if scheme.lower() != "bearer":
            raise ValueError("Invalid auth scheme")
        data = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except (JWTError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return {"id": data.get("sub"), "role": data.get("role"), "department": data.get("department")}


def require_role(user, *roles):
    if user.get("role") not in roles:
        raise HTTPException(status_code=403, detail="Forbidden")


def get_notifier(db=Depends(get_db)) -> Notifier:
    return Notifier(db)


def serialize_doc(doc):
    if not doc:
        return doc
    doc["id"] = str(doc.pop("_id"))
    doc.pop("password_hash", None)
    return doc


def present(db, doc):
    return serialize_doc(workflow.refresh_sla(db, doc))


# ---------- Models for requests ----------
class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str
    role: str = "citizen"  # 'citizen', 'officer' or 'admin'
    department: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refreshToken: str = ""


class Coordinates(BaseModel):
    lng: float
    lat: float


class MediaIn(BaseModel):
    url: str
    mime: str


class ReportCreate(BaseModel):
    title: str
    description: str
    category: str
    location: Optional[Coordinates] = None
    address: str = ""
    media: List[MediaIn] = []
    questionToOfficer: str = ""


class VerifyRequest(BaseModel):
    approve: bool
    severity: Optional[int] = None
    note: str = ""


class StatusUpdate(BaseModel):
    status: str
    note: str = ""
    media: List[MediaIn] = []


class TransferCreate(BaseModel):
    newDepartment: str = ""
    reason: str = ""


class TransferVerify(BaseModel):
    approve: bool
    adminReason: str = ""


class CommentCreate(BaseModel):
    message: str = ""


class ReplyCreate(BaseModel):
    reply: str = ""


class AssignRequest(BaseModel):
    officerId: str = ""


class WarnRequest(BaseModel):
    reason: str = ""


class BlockRequest(BaseModel):
    block: bool
    reason: str = ""


# ---------- Basic routes ----------
@app.get("/")
def root():
    return {"message": f"{APP_NAME} running"}


@app.get("/test")
def test_database():
    info = {
        "backend": "running",
        "database": "disconnected",
        "collections": [],
    }
    try:
        if database.db is not None:
            info["database"] = "connected"
            info["collections"] = database.db.list_collection_names()[:10]
    except PyMongoError as e:
        info["database"] = f"error: {str(e)[:80]}"
    return info


# ---------- Auth endpoints ----------
@app.post("/auth/register", status_code=201)
def register(req: RegisterRequest, db=Depends(get_db)):
    if req.role not in ("citizen", "officer", "admin"):
        raise HTTPException(status_code=400, detail="Invalid role")
    department = req.department
    if req.role == "citizen" and department:
        raise HTTPException(status_code=400, detail="Citizens cannot have a department")
    if req.role == "officer" and not router.is_department(department or ""):
        raise HTTPException(status_code=400, detail="Officers need a valid department")

    if db["user"].find_one({"email": req.email}):
        raise HTTPException(status_code=409, detail="Email already registered")

    user = UserSchema(
        name=req.name,
        email=req.email,
        role=req.role,
        department=department if req.role != "citizen" else None,
        password_hash=pwd_context.hash(req.password),
    )
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Email already registered")
    log.info("user_registered", user_id=user_id, role=user.role)

    return {**issue_tokens(user_id, user.role, user.department),
            "user": {"id": user_id, "name": user.name, "email": user.email,
                     "role": user.role, "department": user.department}}


@app.post("/auth/login")
def login(req: LoginRequest, db=Depends(get_db)):
    user = db["user"].find_one({"email": req.email})
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")

    if not user.get("password_hash") or not pwd_context.verify(req.password, user["password_hash"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    if user.get("blocked", False):
        raise HTTPException(status_code=403, detail="Account blocked")

    user_id = str(user["_id"])
    return {**issue_tokens(user_id, user.get("role", "citizen"), user.get("department")),
            "user": {"id": user_id, "name": user.get("name"), "email": user.get("email"),
                     "role": user.get("role", "citizen"), "department": user.get("department")}}


@app.post("/auth/refresh")
def refresh_tokens(req: RefreshRequest, db=Depends(get_db)):
    """Rotate both tokens. Role and department are re-read from the user record."""
    if not req.refreshToken:
        raise HTTPException(status_code=400, detail="Refresh token required")
    try:
        data = jwt.decode(req.refreshToken, JWT_REFRESH_SECRET, algorithms=[JWT_ALG])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired refresh token")
    user_id = data.get("sub")
    if data.get("type") != "refresh" or not ObjectId.is_valid(user_id):
        raise HTTPException(status_code=401, detail="Invalid or expired refresh token")

    user = db["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user.get("blocked", False):
        raise HTTPException(status_code=403, detail="Account blocked")
    log.info("tokens_refreshed", user_id=user_id)
    return {"message": "Tokens refreshed successfully",
            **issue_tokens(user_id, user.get("role", "citizen"), user.get("department"))}


@app.get("/me")
def me(user=Depends(verify_token)):
    return user


# ---------- Report endpoints ----------
@app.post("/reports", status_code=201)
def create_report(body: ReportCreate, user=Depends(verify_token), db=Depends(get_db),
                  notifier=Depends(get_notifier)):
    if user.get("role") != "citizen":
        raise HTTPException(status_code=403, detail="Only citizens can create reports")
    report = workflow.create_report(
        db, notifier, router, user,
        title=body.title,
        description=body.description,
        category=body.category,
        location=body.location.model_dump() if body.location else None,
        address=body.address,
        media=[m.model_dump() for m in body.media],
        question=body.questionToOfficer,
    )
    return present(db, report)


@app.get("/reports")
def list_reports(
    category: Optional[str] = None,
    status: Optional[str] = None,
    department: Optional[str] = None,
    severity: Optional[int] = None,
    reporter: Optional[str] = None,
    search: Optional[str] = None,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    radius: float = Query(500, gt=0),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user=Depends(verify_token),
    db=Depends(get_db),
):
    total, items = workflow.list_reports(
        db, user, category=category, status=status, department=department, severity=severity,
        reporter=reporter, search=search, lat=lat, lng=lng, radius=radius, page=page, limit=limit,
    )
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": (total + limit - 1) // limit,
        "reports": [present(db, r) for r in items],
    }


@app.get("/reports/queue")
def officer_queue(user=Depends(verify_token), db=Depends(get_db)):
    require_role(user, "officer")
    return [present(db, r) for r in workflow.officer_queue(db, user)]


@app.get("/reports/pending-verification")
def pending_verification(user=Depends(verify_token), db=Depends(get_db)):
    require_role(user, "admin")
    return [present(db, r) for r in workflow.list_pending_verification(db)]


@app.post("/reports/sla/check")
def check_sla(user=Depends(verify_token), db=Depends(get_db), notifier=Depends(get_notifier)):
    require_role(user, "admin")
    escalated = workflow.check_sla(db, notifier)
    return {"message": "SLA check completed", "escalatedCount": len(escalated), "escalatedReports": escalated}


@app.get("/reports/{report_id}")
def get_report(report_id: str, user=Depends(verify_token), db=Depends(get_db)):
    report = workflow.get_report(db, report_id)
    out = present(db, report)
    out["transferLogs"] = [serialize_doc(t) for t in workflow.transfers_for_report(db, report["_id"])]
    return out


@app.post("/reports/{report_id}/verify")
def verify_report(report_id: str, body: VerifyRequest, user=Depends(verify_token), db=Depends(get_db),
                  notifier=Depends(get_notifier)):
    require_role(user, "admin")
    report = workflow.verify_report(db, notifier, report_id, user, body.approve, body.severity, body.note)
    return {
        "message": "Citizen report approved and severity assigned" if body.approve else "Citizen report rejected",
        "report": present(db, report),
    }


@app.post("/reports/{report_id}/status")
def update_report_status(report_id: str, body: StatusUpdate, user=Depends(verify_token), db=Depends(get_db),
                         notifier=Depends(get_notifier)):
    require_role(user, "officer", "admin")
    report = workflow.update_status(db, notifier, report_id, user, body.status, body.note,
                                    [m.model_dump() for m in body.media])
    return {"message": "Status updated", "report": present(db, report)}


@app.post("/reports/{report_id}/vote")
def vote_report(report_id: str, user=Depends(verify_token), db=Depends(get_db)):
    require_role(user, "citizen")
    report = workflow.register_vote(db, report_id, user)
    return {"message": "Vote recorded", "report": present(db, report)}


@app.post("/reports/{report_id}/comments")
def comment_report(report_id: str, body: CommentCreate, user=Depends(verify_token), db=Depends(get_db)):
    require_role(user, "citizen")
    report = workflow.add_comment(db, report_id, user, body.message)
    return {"message": "Comment added", "report": present(db, report)}


@app.post("/reports/{report_id}/comments/{comment_id}/reply")
def reply_comment(report_id: str, comment_id: str, body: ReplyCreate, user=Depends(verify_token),
                  db=Depends(get_db), notifier=Depends(get_notifier)):
    require_role(user, "officer", "admin")
    report = workflow.reply_comment(db, notifier, report_id, comment_id, user, body.reply)
    return {"message": "Reply added", "report": present(db, report)}


@app.post("/reports/{report_id}/assign")
def assign_report(report_id: str, body: AssignRequest, user=Depends(verify_token), db=Depends(get_db),
                  notifier=Depends(get_notifier)):
    require_role(user, "admin")
    report = workflow.assign_report(db, notifier, report_id, user, body.officerId)
    return {"message": "Report assigned successfully", "report": present(db, report)}


# ---------- Transfer endpoints ----------
@app.post("/reports/{report_id}/transfer", status_code=201)
def request_transfer(report_id: str, body: TransferCreate, user=Depends(verify_token), db=Depends(get_db),
                     notifier=Depends(get_notifier)):
    require_role(user, "officer")
    transfer = workflow.request_transfer(db, notifier, router, report_id, user, body.newDepartment, body.reason)
    return {"message": "Transfer request submitted for admin verification.", "transfer": serialize_doc(transfer)}


@app.get("/transfers")
def list_transfers(status: Optional[str] = None, user=Depends(verify_token), db=Depends(get_db)):
    require_role(user, "officer", "admin")
    return [serialize_doc(t) for t in workflow.list_transfers(db, user, status)]


@app.post("/transfers/{transfer_id}/verify")
def verify_transfer(transfer_id: str, body: TransferVerify, user=Depends(verify_token), db=Depends(get_db),
                    notifier=Depends(get_notifier)):
    require_role(user, "admin")
    transfer, report = workflow.verify_transfer(db, notifier, router, transfer_id, user, body.approve, body.adminReason)
    return {
        "message": "Transfer approved: department & category updated." if body.approve else "Transfer rejected.",
        "transfer": serialize_doc(transfer),
        "report": present(db, report) if report else None,
    }


# ---------- Notification endpoints ----------
@app.get("/notifications")
def list_notifications(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                       user=Depends(verify_token), db=Depends(get_db)):
    query = {"user_id": user["id"]}
    total = db["notification"].count_documents(query)
    unread = db["notification"].count_documents({**query, "read": False})
    items = db["notification"].find(query).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    return {
        "total": total,
        "unread": unread,
        "page": page,
        "totalPages": (total + limit - 1) // limit,
        "notifications": [serialize_doc(n) for n in items],
    }


@app.post("/notifications/read-all")
def mark_all_read(user=Depends(verify_token), db=Depends(get_db)):
    res = db["notification"].update_many({"user_id": user["id"], "read": False}, {"$set": {"read": True}})
    return {"ok": True, "updated": res.modified_count}


@app.delete("/notifications/clear")
def clear_notifications(user=Depends(verify_token), db=Depends(get_db)):
    res = db["notification"].delete_many({"user_id": user["id"]})
    log.info("notifications_cleared", user_id=user["id"], deleted=res.deleted_count)
    return {"ok": True, "deleted": res.deleted_count}


@app.post("/notifications/{notification_id}/read")
def mark_read(notification_id: str, user=Depends(verify_token), db=Depends(get_db)):
    notif = db["notification"].find_one({"_id": workflow.parse_id(notification_id, "notification")})
    if not notif:
        raise HTTPException(status_code=404, detail="Notification not found")
    if notif["user_id"] != user["id"]:
        raise HTTPException(status_code=403, detail="Not authorized")
    if not notif.get("read"):
        db["notification"].update_one({"_id": notif["_id"]}, {"$set": {"read": True}})
        notif["read"] = True
    return serialize_doc(notif)


# ---------- Admin: user moderation ----------
@app.get("/admin/users")
def list_users(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
               user=Depends(verify_token), db=Depends(get_db)):
    require_role(user, "admin")
    total = db["user"].count_documents({})
    users = db["user"].find({}, {"password_hash": 0}).skip((page - 1) * limit).limit(limit)
    return {"total": total, "page": page, "limit": limit, "users": [serialize_doc(u) for u in users]}


def _load_user(db, user_id: str):
    target = db["user"].find_one({"_id": workflow.parse_id(user_id, "user")})
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    return target


@app.post("/admin/users/{user_id}/warn")
def warn_user(user_id: str, body: WarnRequest, user=Depends(verify_token), db=Depends(get_db),
              notifier=Depends(get_notifier)):
    require_role(user, "admin")
    reason = body.reason.strip()
    if not reason:
        raise HTTPException(status_code=400, detail="Reason is required")
    target = _load_user(db, user_id)

    now = datetime.now(timezone.utc)
    warnings = target.get("warnings", 0) + 1
    update: Dict[str, Dict] = {
        "$set": {"warnings": warnings, "updated_at": now},
        "$push": {"warningLogs": ModerationEntry(reason=reason, admin=user["id"], date=now).model_dump()},
    }
    blocked = target.get("blocked", False)
    if warnings >= AUTO_BLOCK_WARNINGS and not blocked:
        blocked = True
        update["$set"]["blocked"] = True
        update["$push"]["blockedLogs"] = ModerationEntry(
            reason=f'Automatically blocked after {AUTO_BLOCK_WARNINGS} warnings. Last warning: "{reason}".',
            admin=user["id"], date=now,
        ).model_dump()
    db["user"].update_one({"_id": target["_id"]}, update)
    log.info("user_warned", user_id=user_id, warnings=warnings, blocked=blocked)

    if blocked:
        notifier.notify(user_id, f"You have been warned and blocked after {AUTO_BLOCK_WARNINGS} warnings. Reason: {reason}")
    else:
        notifier.notify(user_id, f"You have received a warning from admin. Reason: {reason}")
    return {"warnings": warnings, "blocked": blocked}


@app.post("/admin/users/{user_id}/block")
def block_user(user_id: str, body: BlockRequest, user=Depends(verify_token), db=Depends(get_db),
               notifier=Depends(get_notifier)):
    require_role(user, "admin")
    reason = body.reason.strip()
    if body.block and not reason:
        raise HTTPException(status_code=400, detail="Reason is required for blocking")
    target = _load_user(db, user_id)

    update: Dict[str, Dict] = {"$set": {"blocked": body.block, "updated_at": datetime.now(timezone.utc)}}
    if body.block:
        update["$push"] = {"blockedLogs": ModerationEntry(reason=reason, admin=user["id"],
                                                          date=datetime.now(timezone.utc)).model_dump()}
    db["user"].update_one({"_id": target["_id"]}, update)
    log.info("user_block_changed", user_id=user_id, blocked=body.block)

    notifier.notify(user_id, f"Your account has been blocked by admin. Reason: {reason}" if body.block
                    else "Your account has been unblocked by admin.")
    return {"blocked": body.block}


if __name__ == "__main__":
    import os

    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
