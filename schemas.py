"""
Database and request schemas for EduSync

Each document model maps to a MongoDB collection:

- User -> "users"
- StudySession -> "study-sessions"
- Review -> "reviews"
- Booking -> "booked-sessions"
- SessionMaterial -> "session-materials"
- StudentNote -> "student-notes"

Field names are snake_case in Python and camelCase on the wire and in the
database (e.g. `tutor_email` <-> `tutorEmail`).
"""

from datetime import datetime, timezone
from typing import Optional, Any, Union, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Role = Literal["student", "tutor", "admin"]
SessionStatus = Literal["pending", "approved", "rejected"]

ROLES = ("student", "tutor", "admin")
SELF_SERVICE_ROLES = ("student", "tutor")


def parse_when(value: Any) -> Optional[datetime]:
    """Accept ISO-8601 strings (date-only or with a trailing Z) and datetimes.

    Naive values are taken as UTC so all four session dates compare cleanly.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValueError("must be an ISO-8601 date")
    else:
        raise ValueError("must be an ISO-8601 date")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------- Documents ----------

class User(CamelModel):
    email: str = Field(..., description="Unique, case-sensitive join key")
    name: Optional[str] = Field(None, description="Display name")
    photo_url: Optional[str] = Field(None, alias="photoURL", description="Avatar URL")
    role: Role = Field("student", description="student | tutor | admin")
    created_at: Optional[datetime] = None


class StudySession(CamelModel):
    title: str
    tutor_name: str
    tutor_email: str
    description: str
    registration_start: datetime
    registration_end: datetime
    class_start: datetime
    class_end: datetime
    duration: Union[int, float, str]
    max_students: Union[int, str]
    current_students: int = 0
    registration_fee: Optional[int] = None
    status: SessionStatus = "pending"
    rejection_reason: Optional[str] = None
    rejection_feedback: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    average_rating: Optional[float] = Field(None, ge=0, le=5)
    review_count: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Review(CamelModel):
    session_id: str = Field(..., description="String form of the session id")
    student_email: str
    student_name: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Booking(CamelModel):
    session_id: Any = Field(..., description="ObjectId of the booked session")
    student_email: str
    student_name: Optional[str] = None
    tutor_email: str
    tutor_name: Optional[str] = None
    booking_date: datetime
    registration_fee: Optional[Any] = None
    session_title: Optional[str] = None
    class_start: Optional[datetime] = None
    class_end: Optional[datetime] = None
    payment_status: Optional[str] = None
    status: Optional[str] = None


class SessionMaterial(CamelModel):
    title: str
    session_id: str
    session_title: str
    tutor_email: str
    image_url: str = ""
    drive_link: str = ""
    created_at: Optional[datetime] = None


class StudentNote(CamelModel):
    email: str = Field(..., description="Owning student")
    title: str
    description: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ---------- Requests ----------
# Presence is checked by the policies so the error can name the first
# missing field; types are enforced here.

class TokenRequest(CamelModel):
    email: Optional[str] = None


class RegisterUserRequest(CamelModel):
    email: Optional[str] = None
    role: Optional[str] = None
    name: Optional[str] = None
    photo_url: Optional[str] = Field(None, alias="photoURL")


class RoleUpdateRequest(CamelModel):
    role: Optional[str] = None


class _SessionWindow(CamelModel):
    registration_start: Optional[datetime] = None
    registration_end: Optional[datetime] = None
    class_start: Optional[datetime] = None
    class_end: Optional[datetime] = None

    @field_validator("registration_start", "registration_end", "class_start", "class_end", mode="before")
    @classmethod
    def _dates(cls, v):
        return parse_when(v)


class SessionCreateRequest(_SessionWindow):
    title: Optional[str] = None
    tutor_name: Optional[str] = None
    tutor_email: Optional[str] = None
    description: Optional[str] = None
    duration: Optional[Union[int, float, str]] = None
    max_students: Optional[Union[int, str]] = None
    registration_fee: Optional[Union[int, float, str]] = None


class SessionUpdateRequest(_SessionWindow):
    title: Optional[str] = None
    description: Optional[str] = None
    max_students: Optional[Union[int, str]] = None
    registration_fee: Optional[Union[int, float, str]] = None


class ApproveRequest(CamelModel):
    registration_fee: Optional[Union[int, float, str]] = None


class RejectRequest(CamelModel):
    rejection_reason: Optional[str] = None
    rejection_feedback: Optional[str] = None


class BookingCreateRequest(CamelModel):
    session_id: Optional[str] = None
    student_email: Optional[str] = None
    student_name: Optional[str] = None
    tutor_email: Optional[str] = None
    tutor_name: Optional[str] = None
    registration_fee: Optional[Union[int, float, str]] = None
    session_title: Optional[str] = None
    class_start: Optional[datetime] = None
    class_end: Optional[datetime] = None

    @field_validator("class_start", "class_end", mode="before")
    @classmethod
    def _dates(cls, v):
        return parse_when(v)


class ReviewCreateRequest(CamelModel):
    session_id: Optional[str] = None
    student_name: Optional[str] = None
    rating: Optional[int] = None
    comment: Optional[str] = None

    @field_validator("rating", mode="before")
    @classmethod
    def _no_booleans(cls, v):
        # JSON true/false would otherwise coerce to 1/0
        if isinstance(v, bool):
            raise ValueError("rating must be a number")
        return v


class NoteCreateRequest(CamelModel):
    email: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None


class NoteUpdateRequest(CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None


class MaterialCreateRequest(CamelModel):
    title: Optional[str] = None
    session_id: Optional[str] = None
    session_title: Optional[str] = None
    tutor_email: Optional[str] = None
    image_url: Optional[str] = None
    drive_link: Optional[str] = None
