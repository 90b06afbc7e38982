import unittest
from datetime import datetime, timezone

import mongomock
from fastapi.testclient import TestClient

from auth import COOKIE_NAME, create_access_token
from database import USERS, SESSIONS, get_db
from main import app

STUDENT = "student@example.com"
OTHER_STUDENT = "other.student@example.com"
TUTOR = "tutor@example.com"
ADMIN = "admin@example.com"


def session_payload(**overrides):
    payload = {
        "title": "Linear Algebra Crash Course",
        "tutorName": "Tess Tutor",
        "tutorEmail": TUTOR,
        "description": "Vectors, matrices and eigenvalues in four evenings.",
        "registrationStart": "2025-01-01",
        "registrationEnd": "2025-01-10",
        "classStart": "2025-01-15",
        "classEnd": "2025-01-20",
        "duration": "2 hours",
        "maxStudents": 20,
    }
    payload.update(overrides)
    return payload


class ApiTestCase(unittest.TestCase):
    """Fresh in-memory Mongo per test plus a client authenticated by cookie."""

    def setUp(self):
        self.db = mongomock.MongoClient().db
        app.dependency_overrides[get_db] = lambda: self.db
        self.client = TestClient(app)
        for email, role in ((STUDENT, "student"), (OTHER_STUDENT, "student"), (TUTOR, "tutor"), (ADMIN, "admin")):
            self.db[USERS].insert_one({
                "email": email,
                "role": role,
                "name": email.split("@")[0],
                "createdAt": datetime(2024, 12, 1, tzinfo=timezone.utc),
            })

    def tearDown(self):
        app.dependency_overrides.clear()
        self.client.close()

    def login(self, email):
        self.client.cookies.set(COOKIE_NAME, create_access_token(email))

    def logout(self):
        self.client.cookies.clear()

    def insert_session(self, status="pending", **fields):
        doc = {
            "title": "Organic Chemistry Lab Prep",
            "tutorName": "Tess Tutor",
            "tutorEmail": TUTOR,
            "description": "Reaction mechanisms.",
            "registrationStart": datetime(2025, 1, 1, tzinfo=timezone.utc),
            "registrationEnd": datetime(2025, 1, 10, tzinfo=timezone.utc),
            "classStart": datetime(2025, 1, 15, tzinfo=timezone.utc),
            "classEnd": datetime(2025, 1, 20, tzinfo=timezone.utc),
            "duration": "3 hours",
            "maxStudents": 10,
            "currentStudents": 0,
            "status": status,
            "createdAt": datetime(2025, 1, 1, tzinfo=timezone.utc),
        }
        doc.update(fields)
        return str(self.db[SESSIONS].insert_one(doc).inserted_id)
