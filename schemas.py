"""
Database Schemas for Civic Triage

Each Pydantic model represents a MongoDB collection.
Collection name = lowercase of class name (User -> "user", Report -> "report",
TransferLog -> "transferlog", Notification -> "notification").
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal['citizen', 'officer', 'admin']
ReportStatus = Literal['Open', 'Acknowledged', 'In Progress', 'Resolved', 'Rejected']
LocationKind = Literal['geo', 'address']


class ModerationEntry(BaseModel):
    reason: str
    admin: Optional[str] = None
    date: Optional[datetime] = None


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    role: Role = Field('citizen', description="Role of the account")
    department: Optional[str] = Field(None, description="Owning department (officers only)")
    password_hash: str = Field(..., description="Hashed password")
    warnings: int = Field(0, description="Moderation warnings received")
    blocked: bool = Field(False, description="Set automatically at 3 warnings")
    warningLogs: List[ModerationEntry] = Field(default_factory=list)
    blockedLogs: List[ModerationEntry] = Field(default_factory=list)


class MediaRef(BaseModel):
    url: str
    mime: str
    uploadedBy: Optional[Literal['citizen', 'officer', 'admin']] = None


class GeoPoint(BaseModel):
    """GeoJSON point, coordinates are [lng, lat]."""
    type: Literal['Point'] = 'Point'
    coordinates: List[float] = Field(..., min_length=2, max_length=2)


class StatusEntry(BaseModel):
    status: str
    by: Optional[str] = None
    note: str = ''
    media: List[MediaRef] = Field(default_factory=list)
    at: datetime


class VerificationEntry(BaseModel):
    admin: str
    action: Literal['approved', 'rejected']
    note: str = ''
    createdAt: datetime


class CitizenVerification(BaseModel):
    verified: Optional[bool] = Field(None, description="None = pending, True = approved, False = rejected")
    note: str = ''
    verifiedAt: Optional[datetime] = None
    history: List[VerificationEntry] = Field(default_factory=list)


class Comment(BaseModel):
    id: str
    message: str
    by: str
    reply: str = ''
    repliedBy: Optional[str] = None
    created_at: datetime


class Report(BaseModel):
    title: str = Field(..., description="Short summary")
    description: str = Field(..., description="Issue description")
    category: str = Field('other', description="Issue category")
    severity: int = Field(3, ge=1, le=5, description="Admin-assigned at verification")
    department: str = Field('general', description="Routed from category")
    locationKind: LocationKind = Field(..., description="'geo' or 'address' report")
    location: Optional[GeoPoint] = Field(None, description="Set for geo reports")
    address: str = Field('', description="Free text address or reverse-geocoded label")
    media: List[MediaRef] = Field(default_factory=list)
    reporter: str = Field(..., description="Reporter user id")
    assignedTo: Optional[str] = Field(None, description="Officer user id the report is assigned to")
    votes: int = 0
    voters: List[str] = Field(default_factory=list)
    priorityScore: int = 0
    status: ReportStatus = 'Open'
    statusHistory: List[StatusEntry] = Field(default_factory=list)
    comments: List[Comment] = Field(default_factory=list)
    citizenAdminVerification: CitizenVerification = Field(default_factory=CitizenVerification)
    slaStartDate: Optional[datetime] = None
    slaDays: Optional[int] = None
    slaEndDate: Optional[datetime] = None
    slaStatus: str = 'Not Started'
    slaRemainingSeconds: Optional[float] = None
    escalated: bool = False
    version: int = Field(0, description="Optimistic concurrency counter")


class TransferVerification(BaseModel):
    status: Literal['pending', 'approved', 'rejected'] = 'pending'
    verified: Optional[bool] = None
    verifiedBy: Optional[str] = None
    verifiedAt: Optional[datetime] = None
    adminReason: str = ''


class TransferLog(BaseModel):
    report_id: str = Field(..., description="Transferred report id")
    report_title: str = ''
    requested_by: str = Field(..., description="Requesting officer id")
    oldDepartment: str
    newDepartment: str
    reason: str
    adminVerification: TransferVerification = Field(default_factory=TransferVerification)
    status: Literal['pending', 'completed', 'rejected'] = 'pending'


class Notification(BaseModel):
    user_id: str = Field(..., description="Recipient user id")
    message: str = Field(..., min_length=1)
    read: bool = False
