"""
Validation and state-transition rules for every mutation of shared records.

Route handlers in main.py stay thin: they resolve the principal and the
database, then call one of these functions. Each function raises an
`errors.ApiError` at the first violated rule.

Session lifecycle:

    pending --approve--> approved
    pending --reject--> rejected
    rejected --resubmit--> pending

Approve and reject are not guarded by the current status, so an approved
session can still be rejected.
"""

import logging
import re
from datetime import datetime
from typing import Optional, List, Dict, Any, Iterable

from pymongo import ReturnDocument

from auth import Principal, ensure_same_identity
from database import (
    USERS,
    SESSIONS,
    REVIEWS,
    BOOKINGS,
    MATERIALS,
    NOTES,
    create_document,
    get_documents,
    is_valid_oid,
    now_utc,
    oid,
)
from errors import InvalidInput, NotFound, Conflict
from schemas import (
    ROLES,
    SELF_SERVICE_ROLES,
    Booking,
    BookingCreateRequest,
    MaterialCreateRequest,
    NoteCreateRequest,
    NoteUpdateRequest,
    RegisterUserRequest,
    RejectRequest,
    Review,
    ReviewCreateRequest,
    SessionCreateRequest,
    SessionMaterial,
    SessionUpdateRequest,
    StudentNote,
    StudySession,
    User,
)

logger = logging.getLogger(__name__)

SESSION_REQUIRED = (
    "title",
    "tutor_name",
    "tutor_email",
    "description",
    "registration_start",
    "registration_end",
    "class_start",
    "class_end",
    "duration",
    "max_students",
)

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


# ---------- Helpers ----------

def _missing(value: Any) -> bool:
    if value is None:
        return True
    return isinstance(value, str) and not value.strip()


def require_fields(payload, fields: Iterable[str]) -> None:
    """Raise InvalidInput naming the first absent or blank field."""
    model_fields = type(payload).model_fields
    for name in fields:
        if _missing(getattr(payload, name)):
            label = model_fields[name].alias or name
            raise InvalidInput(f"{label} is required")


def coerce_int(value: Any, default: int = 0) -> int:
    """Leading-integer parse: 12 -> 12, "12.9" -> 12, "abc" -> default."""
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value == value and abs(value) != float("inf") else default
    match = _LEADING_INT.match(str(value))
    return int(match.group(1)) if match else default


def check_session_window(
    registration_start: datetime,
    registration_end: datetime,
    class_start: datetime,
    class_end: datetime,
) -> None:
    if registration_start >= registration_end:
        raise InvalidInput("Registration end must be after registration start")
    if class_start >= class_end:
        raise InvalidInput("Class end must be after class start")
    if class_start <= registration_end:
        raise InvalidInput("Class must start after registration ends")


def _session_key(session_id: Any, message: str = "Invalid session ID format") -> str:
    """Canonical lower-case hex form used whenever a session id is stored or matched as a string."""
    if not is_valid_oid(session_id):
        raise InvalidInput(message)
    return str(oid(session_id))


def _find_session(db, session_id: str, **extra) -> Dict[str, Any]:
    session = db[SESSIONS].find_one({"_id": oid(session_id), **extra})
    if not session:
        raise NotFound("Session not found")
    return session


# ---------- Users ----------

def register_user(db, payload: RegisterUserRequest, principal: Principal) -> str:
    if _missing(payload.email) or _missing(payload.role):
        raise InvalidInput("Missing required fields")
    ensure_same_identity(payload.email, principal)
    if payload.role not in SELF_SERVICE_ROLES:
        raise InvalidInput("User must be student or tutor")
    if db[USERS].find_one({"email": payload.email}):
        raise Conflict("User already exists")
    user = User(email=payload.email, role=payload.role, name=payload.name, photo_url=payload.photo_url)
    return create_document(db, USERS, user.to_document())


def search_users(db, search: Optional[str] = None) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if search:
        query = {"email": {"$regex": re.escape(search), "$options": "i"}}
    return get_documents(db, USERS, query, sort=[("createdAt", -1)])


def change_role(db, user_id: str, role: Optional[str]) -> Dict[str, Any]:
    if role not in ROLES:
        raise InvalidInput("Invalid role")
    updated = db[USERS].find_one_and_update(
        {"_id": oid(user_id)},
        {"$set": {"role": role, "updatedAt": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFound("User not found")
    return updated


# ---------- Study sessions ----------

def create_session(db, payload: SessionCreateRequest, principal: Principal) -> str:
    require_fields(payload, SESSION_REQUIRED)
    ensure_same_identity(payload.tutor_email, principal)
    check_session_window(
        payload.registration_start,
        payload.registration_end,
        payload.class_start,
        payload.class_end,
    )
    session = StudySession(
        title=payload.title,
        tutor_name=payload.tutor_name,
        tutor_email=payload.tutor_email,
        description=payload.description,
        registration_start=payload.registration_start,
        registration_end=payload.registration_end,
        class_start=payload.class_start,
        class_end=payload.class_end,
        duration=payload.duration,
        max_students=payload.max_students,
        registration_fee=coerce_int(payload.registration_fee) if payload.registration_fee is not None else None,
    )
    return create_document(db, SESSIONS, session.to_document())


def update_session(db, session_id: str, payload: SessionUpdateRequest) -> None:
    """Shared by the tutor and admin edit routes. The date window is not re-checked."""
    if _missing(payload.title) or _missing(payload.description):
        raise InvalidInput("Title and description are required.")
    changes = payload.model_dump(
        by_alias=True,
        exclude_none=True,
        include={"title", "description", "max_students", "registration_start",
                 "registration_end", "class_start", "class_end"},
    )
    changes["registrationFee"] = coerce_int(payload.registration_fee)
    changes["updatedAt"] = now_utc()
    result = db[SESSIONS].update_one({"_id": oid(session_id)}, {"$set": changes})
    if result.matched_count == 0:
        raise NotFound("Session not found.")


def approve_session(db, session_id: str, registration_fee: Any) -> Dict[str, Any]:
    updated = db[SESSIONS].find_one_and_update(
        {"_id": oid(session_id)},
        {"$set": {
            "status": "approved",
            "registrationFee": coerce_int(registration_fee),
            "approvedAt": now_utc(),
            "updatedAt": now_utc(),
        }},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFound("Session not found")
    return updated


def reject_session(db, session_id: str, payload: RejectRequest, principal: Principal) -> None:
    if _missing(payload.rejection_reason) or _missing(payload.rejection_feedback):
        raise InvalidInput("Reason and feedback are required.")
    stamp = now_utc()
    result = db[SESSIONS].update_one(
        {"_id": oid(session_id)},
        {"$set": {
            "status": "rejected",
            "rejectionReason": payload.rejection_reason,
            "rejectionFeedback": payload.rejection_feedback,
            "rejectedAt": stamp,
            "rejectedBy": principal.email,
            "updatedAt": stamp,
        }},
    )
    if result.matched_count == 0:
        raise NotFound("Session not found or already updated.")
    if result.modified_count == 0:
        raise Conflict("Session not found or already updated.")


def resubmit_session(db, session_id: str) -> None:
    """rejected -> pending. Resubmitting a pending session is a no-op success."""
    result = db[SESSIONS].update_one({"_id": oid(session_id)}, {"$set": {"status": "pending"}})
    if result.matched_count == 0:
        raise NotFound("No session updated. It may not exist.")


def delete_session(db, session_id: str) -> None:
    result = db[SESSIONS].delete_one({"_id": oid(session_id)})
    if result.deleted_count == 0:
        raise NotFound("Session not found")


def session_details(db, session_id: str, student_email: Optional[str] = None) -> Dict[str, Any]:
    session = _find_session(db, session_id)
    is_booked = False
    if student_email:
        booking = db[BOOKINGS].find_one({"sessionId": session["_id"], "studentEmail": student_email})
        is_booked = booking is not None
    session["isBooked"] = is_booked
    return session


def list_sessions(db, tutor_email: Optional[str] = None, status: Optional[str] = None, newest_first: bool = False):
    query: Dict[str, Any] = {}
    if tutor_email is not None:
        query["tutorEmail"] = tutor_email
    if status is not None:
        query["status"] = status
    sort = [("createdAt", -1)] if newest_first else None
    return get_documents(db, SESSIONS, query, sort=sort)


# ---------- Bookings ----------

def create_booking(db, payload: BookingCreateRequest, principal: Principal) -> str:
    # Session existence, approval and duplicate bookings are deliberately not checked.
    if _missing(payload.session_id) or _missing(payload.student_email) or _missing(payload.tutor_email):
        raise InvalidInput("Required fields missing")
    ensure_same_identity(payload.student_email, principal)
    booking = Booking(
        session_id=oid(payload.session_id),
        student_email=payload.student_email,
        student_name=payload.student_name,
        tutor_email=payload.tutor_email,
        tutor_name=payload.tutor_name,
        booking_date=now_utc(),
        registration_fee=payload.registration_fee,
        session_title=payload.session_title,
        class_start=payload.class_start,
        class_end=payload.class_end,
    )
    return create_document(db, BOOKINGS, booking.to_document())


def student_bookings(db, student_email: str) -> List[Dict[str, Any]]:
    return get_documents(db, BOOKINGS, {"studentEmail": student_email}, sort=[("classStart", 1)])


# ---------- Reviews ----------

def create_review(db, payload: ReviewCreateRequest, principal: Principal) -> str:
    session_id = _session_key(payload.session_id)
    if payload.rating is None or not 1 <= payload.rating <= 5:
        raise InvalidInput("Rating must be between 1-5")
    _find_session(db, session_id, status="approved")

    if db[REVIEWS].find_one({"sessionId": session_id, "studentEmail": principal.email}):
        raise Conflict("You've already reviewed this session")

    review = Review(
        session_id=session_id,
        student_email=principal.email,
        student_name=payload.student_name or principal.email.split("@")[0],
        rating=payload.rating,
        comment=payload.comment or "",
    )
    review_id = create_document(db, REVIEWS, review.to_document())

    # Best effort: the review is already stored, a stale aggregate is reconciled later.
    try:
        refresh_session_rating(db, session_id)
    except Exception:
        logger.warning("Rating refresh failed for session %s", session_id, exc_info=True)
    return review_id


def session_reviews(db, session_id: str) -> List[Dict[str, Any]]:
    session_id = _session_key(session_id)
    _find_session(db, session_id)
    return get_documents(db, REVIEWS, {"sessionId": session_id}, sort=[("createdAt", -1)])


def refresh_session_rating(db, session_id: str) -> Dict[str, Any]:
    """Recompute averageRating/reviewCount from the stored reviews. Safe to repeat."""
    ratings = [r.get("rating", 0) for r in db[REVIEWS].find({"sessionId": session_id}, {"rating": 1})]
    count = len(ratings)
    average = round(sum(ratings) / count, 1) if count else 0
    db[SESSIONS].update_one(
        {"_id": oid(session_id)},
        {"$set": {"averageRating": average, "reviewCount": count}},
    )
    return {"averageRating": average, "reviewCount": count}


def reconcile_ratings(db) -> int:
    refreshed = 0
    for session_id in db[REVIEWS].distinct("sessionId"):
        if not is_valid_oid(session_id):
            logger.warning("Skipping reviews with malformed sessionId %r", session_id)
            continue
        refresh_session_rating(db, session_id)
        refreshed += 1
    logger.info("Reconciled ratings for %d sessions", refreshed)
    return refreshed


# ---------- Notes ----------

def create_note(db, payload: NoteCreateRequest, principal: Principal) -> str:
    if _missing(payload.email) or _missing(payload.title) or _missing(payload.description):
        raise InvalidInput("Email, title, and description are required.")
    ensure_same_identity(payload.email, principal)
    note = StudentNote(email=payload.email, title=payload.title, description=payload.description)
    return create_document(db, NOTES, note.to_document())


def student_notes(db, email: Optional[str], principal: Principal) -> List[Dict[str, Any]]:
    if _missing(email):
        raise InvalidInput("Email query parameter is required.")
    ensure_same_identity(email, principal)
    return get_documents(db, NOTES, {"email": email}, sort=[("createdAt", -1)])


def _owned_note(db, note_id: str, principal: Principal) -> Dict[str, Any]:
    note = db[NOTES].find_one({"_id": oid(note_id)})
    if not note:
        raise NotFound("Note not found.")
    ensure_same_identity(note.get("email"), principal)
    return note


def update_note(db, note_id: str, payload: NoteUpdateRequest, principal: Principal) -> Dict[str, Any]:
    if _missing(payload.title) or _missing(payload.description):
        raise InvalidInput("Title and description are required.")
    note = _owned_note(db, note_id, principal)
    updated = db[NOTES].find_one_and_update(
        {"_id": note["_id"]},
        {"$set": {"title": payload.title, "description": payload.description, "updatedAt": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFound("Note not found.")
    return updated


def delete_note(db, note_id: str, principal: Principal) -> None:
    note = _owned_note(db, note_id, principal)
    result = db[NOTES].delete_one({"_id": note["_id"]})
    if result.deleted_count == 0:
        raise NotFound("Note not found")


# ---------- Materials ----------

def create_material(db, payload: MaterialCreateRequest, principal: Principal) -> str:
    if any(_missing(v) for v in (payload.title, payload.session_id, payload.session_title, payload.tutor_email)):
        raise InvalidInput("Missing required fields")
    session_id = _session_key(payload.session_id, "A valid sessionId is required.")
    ensure_same_identity(payload.tutor_email, principal)
    material = SessionMaterial(
        title=payload.title,
        session_id=session_id,
        session_title=payload.session_title,
        tutor_email=payload.tutor_email,
        image_url=payload.image_url or "",
        drive_link=payload.drive_link or "",
    )
    return create_document(db, MATERIALS, material.to_document())


def tutor_materials(db, tutor_email: str) -> List[Dict[str, Any]]:
    return get_documents(db, MATERIALS, {"tutorEmail": tutor_email}, sort=[("createdAt", -1)])


def session_materials(db, session_id: Optional[str]) -> List[Dict[str, Any]]:
    session_id = _session_key(session_id, "A valid sessionId is required.")
    return get_documents(db, MATERIALS, {"sessionId": session_id}, sort=[("createdAt", -1)])


def paginate_materials(db, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    page = page if page and page > 0 else 1
    limit = limit if limit and limit > 0 else 10
    materials = get_documents(db, MATERIALS, {}, sort=[("createdAt", -1)], skip=(page - 1) * limit, limit=limit)
    return {"total": db[MATERIALS].count_documents({}), "materials": materials}


def delete_material(db, material_id: str) -> None:
    if not is_valid_oid(material_id):
        raise InvalidInput("Invalid material ID")
    result = db[MATERIALS].delete_one({"_id": oid(material_id)})
    if result.deleted_count == 0:
        raise NotFound("Material not found")
