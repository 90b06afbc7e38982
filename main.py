import os
import logging
from typing import Optional

from fastapi import FastAPI, Depends, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

import database
import policies
from auth import (
    COOKIE_NAME,
    TOKEN_LIFETIME,
    Principal,
    create_access_token,
    ensure_same_identity,
    get_principal,
    require_admin,
    require_student,
    require_tutor,
)
from database import USERS, get_db, serialize_doc
from errors import InvalidInput
from schemas import (
    ApproveRequest,
    BookingCreateRequest,
    MaterialCreateRequest,
    NoteCreateRequest,
    NoteUpdateRequest,
    RegisterUserRequest,
    RejectRequest,
    ReviewCreateRequest,
    RoleUpdateRequest,
    SessionCreateRequest,
    SessionUpdateRequest,
    TokenRequest,
    User as UserSchema,
    StudySession as StudySessionSchema,
    Review as ReviewSchema,
    Booking as BookingSchema,
    SessionMaterial as SessionMaterialSchema,
    StudentNote as StudentNoteSchema,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

APP_ENV = os.getenv("APP_ENV", "development")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",") if o.strip()]

app = FastAPI(title="EduSync API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Error mapping ----------

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    field = "body"
    if errors:
        loc = [str(part) for part in errors[0].get("loc", ()) if part not in ("body", "query", "path")]
        field = loc[0] if loc else field
    return JSONResponse(status_code=400, content={"detail": f"{field} is invalid"})


@app.exception_handler(PyMongoError)
async def storage_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Storage failure on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def _cookie_options():
    production = APP_ENV == "production"
    return {
        "httponly": True,
        "secure": production,
        "samesite": "none" if production else "lax",
    }


# ---------- Basic routes ----------

@app.get("/")
def read_root():
    return {"name": "EduSync API", "message": "Server connected successfully"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database.db is None:
        response["database"] = "⚠️  Available but not initialized"
        return response
    try:
        response["collections"] = database.db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        logger.warning("Database check failed: %s", e)
        response["database"] = "⚠️  Connected but Error"
    return response


@app.get("/schema")
def get_schema():
    return {
        "users": UserSchema.model_json_schema(by_alias=True),
        "study-sessions": StudySessionSchema.model_json_schema(by_alias=True),
        "reviews": ReviewSchema.model_json_schema(by_alias=True),
        "booked-sessions": BookingSchema.model_json_schema(by_alias=True),
        "session-materials": SessionMaterialSchema.model_json_schema(by_alias=True),
        "student-notes": StudentNoteSchema.model_json_schema(by_alias=True),
    }


# ---------- Auth routes ----------

@app.post("/api/generate-token")
@app.post("/api/generate-jwt", include_in_schema=False)
def generate_token(payload: TokenRequest, response: Response):
    if not payload.email:
        raise InvalidInput("email is required")
    token = create_access_token(payload.email)
    response.set_cookie(COOKIE_NAME, token, max_age=int(TOKEN_LIFETIME.total_seconds()), **_cookie_options())
    return {"message": "Token generated successfully"}


@app.get("/api/clear-cookie")
def clear_cookie(response: Response):
    response.delete_cookie(COOKIE_NAME, **_cookie_options())
    return {"message": "Cookie cleared successfully"}


# ---------- Users ----------

@app.post("/api/users", status_code=201)
@app.post("/api/registerUser", status_code=201, include_in_schema=False)
def register_user(payload: RegisterUserRequest, principal: Principal = Depends(get_principal), db=Depends(get_db)):
    return {"id": policies.register_user(db, payload, principal)}


@app.get("/api/users/me")
@app.get("/api/user", include_in_schema=False)
def current_user(principal: Principal = Depends(get_principal), db=Depends(get_db)):
    user = db[USERS].find_one({"email": principal.email})
    if not user:
        return {"exists": False}
    return {"exists": True, "role": user.get("role") or "unknown"}


@app.get("/api/users/tutors")
def list_tutors(db=Depends(get_db)):
    return [serialize_doc(u) for u in db[USERS].find({"role": "tutor"})]


@app.get("/api/users")
def list_users(search: Optional[str] = None, admin: Principal = Depends(require_admin), db=Depends(get_db)):
    return [serialize_doc(u) for u in policies.search_users(db, search)]


@app.patch("/api/users/{user_id}/role")
def update_user_role(user_id: str, payload: RoleUpdateRequest, admin: Principal = Depends(require_admin), db=Depends(get_db)):
    return serialize_doc(policies.change_role(db, user_id, payload.role))


# ---------- Study sessions ----------

@app.post("/api/sessions", status_code=201)
@app.post("/api/create-session", status_code=201, include_in_schema=False)
def create_session(payload: SessionCreateRequest, tutor: Principal = Depends(require_tutor), db=Depends(get_db)):
    return {"id": policies.create_session(db, payload, tutor)}


@app.get("/api/sessions/approved")
@app.get("/api/study-sessions/approved", include_in_schema=False)
def list_approved_sessions(db=Depends(get_db)):
    return [serialize_doc(s) for s in policies.list_sessions(db, status="approved")]


@app.get("/api/sessions/approved/tutor")
@app.get("/api/study-sessions/approved/tutor", include_in_schema=False)
def list_my_approved_sessions(
    tutor_email: Optional[str] = Query(None, alias="tutorEmail"),
    tutor: Principal = Depends(require_tutor),
    db=Depends(get_db),
):
    if tutor_email is not None:
        ensure_same_identity(tutor_email, tutor)
    return [serialize_doc(s) for s in policies.list_sessions(db, tutor_email=tutor.email, status="approved")]


@app.get("/api/my-sessions")
def list_my_sessions(
    tutor_email: Optional[str] = Query(None, alias="tutorEmail"),
    tutor: Principal = Depends(require_tutor),
    db=Depends(get_db),
):
    if tutor_email is not None:
        ensure_same_identity(tutor_email, tutor)
    return [serialize_doc(s) for s in policies.list_sessions(db, tutor_email=tutor.email)]


@app.get("/api/sessions")
def list_all_sessions(admin: Principal = Depends(require_admin), db=Depends(get_db)):
    return [serialize_doc(s) for s in policies.list_sessions(db, newest_first=True)]


@app.get("/api/sessions/{session_id}")
def get_session(session_id: str, student_email: Optional[str] = Query(None, alias="studentEmail"), db=Depends(get_db)):
    return serialize_doc(policies.session_details(db, session_id, student_email))


@app.patch("/api/sessions/{session_id}/tutor")
def tutor_update_session(session_id: str, payload: SessionUpdateRequest, tutor: Principal = Depends(require_tutor), db=Depends(get_db)):
    policies.update_session(db, session_id, payload)
    return {"message": "Session updated successfully."}


@app.patch("/api/sessions/{session_id}/resubmit")
@app.patch("/api/sessions/resubmit/{session_id}", include_in_schema=False)
def resubmit_session(session_id: str, tutor: Principal = Depends(require_tutor), db=Depends(get_db)):
    policies.resubmit_session(db, session_id)
    return {"message": "Session resubmitted for approval."}


@app.patch("/api/sessions/{session_id}/approve")
def approve_session(
    session_id: str,
    payload: Optional[ApproveRequest] = None,
    admin: Principal = Depends(require_admin),
    db=Depends(get_db),
):
    fee = payload.registration_fee if payload else None
    return serialize_doc(policies.approve_session(db, session_id, fee))


@app.patch("/api/sessions/{session_id}/reject")
def reject_session(session_id: str, payload: RejectRequest, admin: Principal = Depends(require_admin), db=Depends(get_db)):
    policies.reject_session(db, session_id, payload, admin)
    return {"message": "Session rejected successfully."}


@app.patch("/api/sessions/{session_id}")
def admin_update_session(session_id: str, payload: SessionUpdateRequest, admin: Principal = Depends(require_admin), db=Depends(get_db)):
    policies.update_session(db, session_id, payload)
    return {"message": "Session updated successfully."}


@app.delete("/api/sessions/{session_id}")
def delete_session(session_id: str, admin: Principal = Depends(require_admin), db=Depends(get_db)):
    policies.delete_session(db, session_id)
    return {"message": "Session deleted successfully"}


# ---------- Bookings ----------

@app.post("/api/bookings", status_code=201)
@app.post("/api/booking", status_code=201, include_in_schema=False)
def create_booking(payload: BookingCreateRequest, student: Principal = Depends(require_student), db=Depends(get_db)):
    return {"message": "Booking created successfully", "id": policies.create_booking(db, payload, student)}


@app.get("/api/booked-sessions")
def list_booked_sessions(
    student_email: Optional[str] = Query(None, alias="studentEmail"),
    student: Principal = Depends(require_student),
    db=Depends(get_db),
):
    if not student_email:
        raise InvalidInput("Student email is required")
    ensure_same_identity(student_email, student)
    return [serialize_doc(b) for b in policies.student_bookings(db, student_email)]


# ---------- Reviews ----------

@app.post("/api/reviews", status_code=201)
def create_review(payload: ReviewCreateRequest, student: Principal = Depends(require_student), db=Depends(get_db)):
    return {"message": "Review submitted successfully", "id": policies.create_review(db, payload, student)}


@app.get("/api/reviews/{session_id}")
def list_reviews(session_id: str, db=Depends(get_db)):
    return [serialize_doc(r) for r in policies.session_reviews(db, session_id)]


@app.post("/api/admin/reconcile-ratings")
def reconcile_ratings(admin: Principal = Depends(require_admin), db=Depends(get_db)):
    return {"refreshed": policies.reconcile_ratings(db)}


# ---------- Student notes ----------

@app.post("/api/student-notes", status_code=201)
def create_note(payload: NoteCreateRequest, student: Principal = Depends(require_student), db=Depends(get_db)):
    return {"message": "Note saved successfully", "id": policies.create_note(db, payload, student)}


@app.get("/api/student-notes")
def list_notes(email: Optional[str] = None, student: Principal = Depends(require_student), db=Depends(get_db)):
    return [serialize_doc(n) for n in policies.student_notes(db, email, student)]


@app.patch("/api/student-notes/{note_id}")
def update_note(note_id: str, payload: NoteUpdateRequest, student: Principal = Depends(require_student), db=Depends(get_db)):
    return serialize_doc(policies.update_note(db, note_id, payload, student))


@app.delete("/api/student-notes/{note_id}")
def delete_note(note_id: str, student: Principal = Depends(require_student), db=Depends(get_db)):
    policies.delete_note(db, note_id, student)
    return {"message": "Note deleted successfully"}


# ---------- Session materials ----------

@app.post("/api/tutor-materials", status_code=201)
def create_material(payload: MaterialCreateRequest, tutor: Principal = Depends(require_tutor), db=Depends(get_db)):
    return {"message": "Study material uploaded successfully", "id": policies.create_material(db, payload, tutor)}


@app.get("/api/tutor-materials")
def list_tutor_materials(tutor: Principal = Depends(require_tutor), db=Depends(get_db)):
    return [serialize_doc(m) for m in policies.tutor_materials(db, tutor.email)]


@app.get("/api/materials/all")
def list_all_materials(page: int = 1, limit: int = 10, admin: Principal = Depends(require_admin), db=Depends(get_db)):
    result = policies.paginate_materials(db, page, limit)
    return {"total": result["total"], "materials": [serialize_doc(m) for m in result["materials"]]}


@app.get("/api/materials")
def list_session_materials(
    session_id: Optional[str] = Query(None, alias="sessionId"),
    student: Principal = Depends(require_student),
    db=Depends(get_db),
):
    return [serialize_doc(m) for m in policies.session_materials(db, session_id)]


@app.delete("/api/materials/{material_id}")
def delete_material(material_id: str, admin: Principal = Depends(require_admin), db=Depends(get_db)):
    policies.delete_material(db, material_id)
    return {"message": "Material deleted successfully"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
