"""
Database Schemas for the Speech-Therapy Coordination app

Each Pydantic model represents a MongoDB collection.
Collection name is the lowercase of the class name.
Field names are snake_case in Python and camelCase on the wire and in storage.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Literal

from bson.objectid import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from database import to_naive_utc, utc_now

RoleType = Literal["parent", "specialist", "admin", "superadmin"]
Difficulty = Literal["easy", "medium", "hard"]
ContentType = Literal["word", "letter"]
RequestStatus = Literal["none", "pending", "approved", "rejected"]
LinkStatus = Literal["pending", "accepted", "rejected"]
ReferralType = Literal["specialist_created", "link_request", "admin_assigned"]
NotificationType = Literal["info", "warning", "success", "error", "child_assigned"]
Platform = Literal["android", "ios", "web", "unknown"]

DIFFICULTIES = ("easy", "medium", "hard")


class Schema(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        arbitrary_types_allowed=True,
    )


# Collections
class User(Schema):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address (stored lowercased)")
    role: RoleType = Field(..., description="User role")
    password_hash: str = Field(..., description="Hashed password (bcrypt)")
    phone: Optional[str] = None
    specialization: Optional[str] = Field(None, description="Specialists only")
    license_number: Optional[str] = Field(None, description="Specialists only")
    email_verified: bool = False
    profile_photo: Optional[str] = None
    bio: Optional[str] = Field(None, max_length=500)
    verification_token: Optional[str] = None
    assigned_children: List[ObjectId] = Field(default_factory=list)
    linked_specialist: Optional[ObjectId] = Field(None, description="Parents only")
    linked_parents: List[ObjectId] = Field(default_factory=list, description="Specialists only")
    center: Optional[ObjectId] = Field(None, description="Admins and specialists only")
    created_by: Optional[ObjectId] = None
    staff_id: Optional[str] = Field(None, description="e.g. SP-0001, assigned once")


class SessionStructure(Schema):
    play_duration: int = 15
    break_duration: int = 10
    encouragement_messages: bool = True


class Child(Schema):
    name: str
    age: int = Field(..., ge=4, le=5)
    gender: Literal["male", "female"]
    parent: ObjectId
    assigned_specialist: Optional[ObjectId] = None
    specialist_request_status: RequestStatus = "none"
    specialist_requested_at: Optional[datetime] = Field(None, description="when the child last entered the open queue")
    daily_play_duration: int = Field(60, description="minutes")
    session_structure: SessionStructure = Field(default_factory=SessionStructure)
    target_letters: List[str] = Field(default_factory=list)
    target_words: List[str] = Field(default_factory=list)
    difficulty_level: Literal["beginner", "intermediate", "advanced"] = "beginner"
    child_id: Optional[str] = Field(None, description="e.g. CH-0001, assigned once")
    avatar_id: Optional[str] = None
    active: bool = True


class LinkRequest(Schema):
    from_: ObjectId = Field(..., alias="from")
    to: ObjectId
    child: ObjectId
    status: LinkStatus = "pending"
    message: str = Field("", max_length=500)


class Referral(Schema):
    parent: ObjectId
    specialist: ObjectId
    referral_type: ReferralType
    status: Literal["active", "inactive", "cancelled"] = "active"
    referral_date: datetime = Field(default_factory=utc_now)
    notes: Optional[str] = None


class ContentItem(Schema):
    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    text: str
    difficulty: Difficulty = "easy"
    image: str = "default-word.png"
    created_by: Optional[ObjectId] = None
    created_at: datetime = Field(default_factory=utc_now)


class PlanLetter(Schema):
    letter: str
    articulation_point: Optional[str] = None
    vowels: List[str] = Field(default_factory=list)
    difficulty: Optional[Difficulty] = None


class PlanWord(Schema):
    word: str
    translation: Optional[str] = None
    category: Optional[str] = None
    difficulty: Optional[Difficulty] = None


class Exercise(Schema):
    """A specialist-authored daily plan (kind='plan'); content aggregates live in content.py."""
    child: ObjectId
    kind: Literal["plan", "content"] = "plan"
    specialist: Optional[ObjectId] = None
    letters: List[PlanLetter] = Field(default_factory=list)
    words: List[PlanWord] = Field(default_factory=list)
    target_duration: Optional[int] = Field(None, description="minutes per day")
    start_date: datetime = Field(default_factory=utc_now)
    end_date: Optional[datetime] = None
    active: bool = True


class Attempt(Schema):
    letter: Optional[str] = None
    word: Optional[str] = None
    vowel: Optional[str] = None
    recognized_text: Optional[str] = None
    reference_text: Optional[str] = None
    pronunciation_score: Optional[float] = None
    accuracy_score: Optional[float] = None
    fluency_score: Optional[float] = None
    completeness_score: Optional[float] = None
    analysis_source: Optional[str] = Field(None, description="local | azure")
    success: bool = False
    score: Optional[float] = None
    timestamp: Optional[datetime] = None

    @field_validator("timestamp")
    @classmethod
    def _naive_timestamp(cls, v):
        return to_naive_utc(v)


class Session(Schema):
    session_date: datetime = Field(default_factory=utc_now)
    duration: float = Field(0, ge=0, description="minutes")
    total_attempts: int = Field(0, ge=0)
    successful_attempts: int = Field(0, ge=0)
    failed_attempts: int = Field(0, ge=0)
    average_score: float = 0
    attempts: List[Attempt] = Field(default_factory=list)
    robot_feedback: List[Any] = Field(default_factory=list)

    @field_validator("session_date")
    @classmethod
    def _naive_session_date(cls, v):
        return to_naive_utc(v)

    @model_validator(mode="after")
    def _derive_counters(self):
        # the child app may send raw attempts without the per-session tallies
        if self.attempts and not self.total_attempts:
            self.total_attempts = len(self.attempts)
            self.successful_attempts = sum(1 for a in self.attempts if a.success)
            self.failed_attempts = self.total_attempts - self.successful_attempts
            scores = [a.score for a in self.attempts if a.score is not None]
            if scores and not self.average_score:
                self.average_score = sum(scores) / len(scores)
        return self


class OverallStats(Schema):
    total_sessions: int = 0
    total_play_time: float = 0
    total_attempts: int = 0
    success_rate: float = 0
    average_score: float = 0
    mastered_letters: List[str] = Field(default_factory=list)
    mastered_words: List[str] = Field(default_factory=list)
    challenging_letters: List[str] = Field(default_factory=list)
    challenging_words: List[str] = Field(default_factory=list)


class Progress(Schema):
    child: ObjectId
    sessions: List[Session] = Field(default_factory=list)
    overall_stats: OverallStats = Field(default_factory=OverallStats)
    last_sync_date: Optional[datetime] = None
    version: int = 0


class Message(Schema):
    sender: ObjectId
    receiver: ObjectId
    content: str
    is_read: bool = False
    read_at: Optional[datetime] = None
    is_edited: bool = False


class Notification(Schema):
    recipient: ObjectId
    type: NotificationType = "info"
    title: str
    message: str
    read: bool = False
    data: Optional[Dict[str, Any]] = None


class Center(Schema):
    name: str
    name_en: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    description: Optional[str] = None
    admin: Optional[ObjectId] = None
    specialists: List[ObjectId] = Field(default_factory=list)
    created_by: ObjectId
    is_active: bool = True


# Request payloads (not collections)
class RegisterRequest(Schema):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Literal["parent", "specialist"]
    phone: Optional[str] = None
    specialization: Optional[str] = None
    license_number: Optional[str] = None


class LoginRequest(Schema):
    email: Optional[str] = None
    password: Optional[str] = None


class ChangePasswordRequest(Schema):
    current_password: Optional[str] = None
    new_password: Optional[str] = None


class ForgotPasswordRequest(Schema):
    email: Optional[str] = None


class TokenRequest(Schema):
    token: Optional[str] = None


class ResetPasswordRequest(Schema):
    token: Optional[str] = None
    new_password: Optional[str] = None


class ChildCreate(Schema):
    name: str
    age: int = Field(..., ge=4, le=5)
    gender: Literal["male", "female"]
    daily_play_duration: int = 60
    session_structure: Optional[SessionStructure] = None
    target_letters: List[str] = Field(default_factory=list)
    target_words: List[str] = Field(default_factory=list)
    difficulty_level: Literal["beginner", "intermediate", "advanced"] = "beginner"
    avatar_id: Optional[str] = None


class ChildUpdate(Schema):
    name: Optional[str] = None
    age: Optional[int] = Field(None, ge=4, le=5)
    gender: Optional[Literal["male", "female"]] = None
    daily_play_duration: Optional[int] = None
    session_structure: Optional[SessionStructure] = None
    target_letters: Optional[List[str]] = None
    target_words: Optional[List[str]] = None
    difficulty_level: Optional[Literal["beginner", "intermediate", "advanced"]] = None
    avatar_id: Optional[str] = None
    active: Optional[bool] = None


class DurationUpdate(Schema):
    daily_play_duration: Optional[int] = None
    session_structure: Optional[SessionStructure] = None


class LinkRequestCreate(Schema):
    specialist_id: Optional[str] = None
    child_id: Optional[str] = None
    message: Optional[str] = Field(None, max_length=500)


class LinkParentRequest(Schema):
    parent_id: Optional[str] = None


class NewParent(Schema):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None


class SpecialistChildCreate(Schema):
    parent_id: Optional[str] = None
    parent: Optional[NewParent] = None
    name: str
    age: int = Field(..., ge=4, le=5)
    gender: Literal["male", "female"]
    target_letters: List[str] = Field(default_factory=list)
    target_words: List[str] = Field(default_factory=list)
    difficulty_level: Literal["beginner", "intermediate", "advanced"] = "beginner"


class AssignChildRequest(Schema):
    child_id: str
    specialist_id: str


class ContentCreate(Schema):
    text: Optional[str] = None
    content_type: Optional[str] = None
    difficulty: Optional[str] = None
    child_id: Optional[str] = None


class PlanCreate(Schema):
    child_id: str
    letters: Optional[List[PlanLetter]] = None
    words: Optional[List[PlanWord]] = None
    target_duration: Optional[int] = None
    end_date: Optional[datetime] = None


class PlanUpdate(Schema):
    letters: Optional[List[PlanLetter]] = None
    words: Optional[List[PlanWord]] = None
    target_duration: Optional[int] = None
    end_date: Optional[datetime] = None
    active: Optional[bool] = None


class SessionPayload(Schema):
    child_id: str
    session_data: Session


class SyncPayload(Schema):
    child_id: str
    sessions: List[Session] = Field(default_factory=list)


class MessageCreate(Schema):
    receiver_id: Optional[str] = None
    content: Optional[str] = None


class MessageEdit(Schema):
    content: Optional[str] = None


class DeviceTokenRequest(Schema):
    token: Optional[str] = None
    platform: Optional[str] = None


class CenterCreate(Schema):
    name: Optional[str] = None
    name_en: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    description: Optional[str] = None


class CenterUpdate(CenterCreate):
    is_active: Optional[bool] = None


class StaffCreate(Schema):
    """Admin-created specialist or superadmin-created admin."""
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    phone: Optional[str] = None
    specialization: Optional[str] = None
    license_number: Optional[str] = None
    center_id: Optional[str] = None


class StaffUpdate(Schema):
    name: Optional[str] = None
    phone: Optional[str] = None
    specialization: Optional[str] = None
    license_number: Optional[str] = None
    center_id: Optional[str] = None
