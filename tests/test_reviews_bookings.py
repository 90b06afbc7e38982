from datetime import datetime, timezone
from unittest import mock

from bson import ObjectId

import policies
from database import BOOKINGS, REVIEWS, SESSIONS
from tests.support import OTHER_STUDENT, STUDENT, TUTOR, ApiTestCase


class ReviewTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.session_id = self.insert_session(status="approved")
        self.login(STUDENT)

    def review(self, **body):
        payload = {"sessionId": self.session_id, "rating": 4, "comment": "Clear explanations"}
        payload.update(body)
        return self.client.post("/api/reviews", json=payload)

    def test_one_review_per_student_per_session(self):
        self.assertEqual(self.review(rating=4).status_code, 201)
        resp = self.review(rating=5)
        self.assertEqual(resp.status_code, 409)

        self.login(OTHER_STUDENT)
        self.assertEqual(self.review(rating=5).status_code, 201)
        self.assertEqual(self.db[REVIEWS].count_documents({"sessionId": self.session_id}), 2)

    def test_session_id_case_does_not_allow_a_second_review(self):
        self.assertEqual(self.review(rating=4).status_code, 201)
        resp = self.review(sessionId=self.session_id.upper(), rating=1)
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(self.db[REVIEWS].count_documents({}), 1)

        session = self.db[SESSIONS].find_one({"_id": ObjectId(self.session_id)})
        self.assertEqual(session["averageRating"], 4)
        self.assertEqual(len(self.client.get(f"/api/reviews/{self.session_id.upper()}").json()), 1)

    def test_upper_case_session_id_is_stored_canonically(self):
        self.assertEqual(self.review(sessionId=self.session_id.upper()).status_code, 201)
        self.assertEqual(self.db[REVIEWS].find_one({})["sessionId"], self.session_id)

    def test_rating_must_be_integer_between_one_and_five(self):
        for bad in (0, 6, "abc", 3.5, True):
            resp = self.review(rating=bad)
            self.assertEqual(resp.status_code, 400, bad)
        resp = self.client.post("/api/reviews", json={"sessionId": self.session_id})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.db[REVIEWS].count_documents({}), 0)

    def test_numeric_string_rating_is_accepted(self):
        self.assertEqual(self.review(rating="5").status_code, 201)
        self.assertEqual(self.db[REVIEWS].find_one({})["rating"], 5)

    def test_session_id_must_be_well_formed(self):
        self.assertEqual(self.review(sessionId="xyz").status_code, 400)
        self.assertEqual(self.review(sessionId=None).status_code, 400)

    def test_only_approved_sessions_can_be_reviewed(self):
        for status in ("pending", "rejected"):
            session_id = self.insert_session(status=status)
            self.assertEqual(self.review(sessionId=session_id).status_code, 404)
        self.assertEqual(self.review(sessionId=str(ObjectId())).status_code, 404)

    def test_review_defaults_and_rating_aggregate(self):
        self.assertEqual(self.review(rating=4).status_code, 201)
        stored = self.db[REVIEWS].find_one({"studentEmail": STUDENT})
        self.assertEqual(stored["studentName"], "student")
        self.assertEqual(stored["rating"], 4)

        self.login(OTHER_STUDENT)
        self.review(rating=5, studentName="Olive")
        session = self.db[SESSIONS].find_one({"_id": ObjectId(self.session_id)})
        self.assertEqual(session["averageRating"], 4.5)
        self.assertEqual(session["reviewCount"], 2)

    def test_rating_refresh_failure_does_not_fail_review(self):
        with mock.patch.object(policies, "refresh_session_rating", side_effect=RuntimeError("boom")):
            resp = self.review()
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(self.db[REVIEWS].count_documents({}), 1)

    def test_reconciliation_repairs_stale_aggregates(self):
        for email, rating in ((STUDENT, 5), (OTHER_STUDENT, 2)):
            self.db[REVIEWS].insert_one({"sessionId": self.session_id, "studentEmail": email, "rating": rating})
        self.assertEqual(policies.reconcile_ratings(self.db), 1)
        session = self.db[SESSIONS].find_one({"_id": ObjectId(self.session_id)})
        self.assertEqual(session["averageRating"], 3.5)
        self.assertEqual(session["reviewCount"], 2)

        # idempotent
        self.assertEqual(policies.refresh_session_rating(self.db, self.session_id), {"averageRating": 3.5, "reviewCount": 2})

    def test_list_reviews_newest_first(self):
        self.db[REVIEWS].insert_many([
            {"sessionId": self.session_id, "rating": 3, "createdAt": datetime(2025, 2, 1, tzinfo=timezone.utc)},
            {"sessionId": self.session_id, "rating": 5, "createdAt": datetime(2025, 3, 1, tzinfo=timezone.utc)},
        ])
        self.logout()
        resp = self.client.get(f"/api/reviews/{self.session_id}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual([r["rating"] for r in resp.json()], [5, 3])

        self.assertEqual(self.client.get("/api/reviews/bogus").status_code, 400)
        self.assertEqual(self.client.get(f"/api/reviews/{ObjectId()}").status_code, 404)


class BookingTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.session_id = self.insert_session(status="approved")
        self.login(STUDENT)

    def booking(self, **body):
        payload = {
            "sessionId": self.session_id,
            "studentEmail": STUDENT,
            "studentName": "Stu Dent",
            "tutorEmail": TUTOR,
            "tutorName": "Tess Tutor",
            "registrationFee": 0,
            "sessionTitle": "Organic Chemistry Lab Prep",
            "classStart": "2025-01-15T09:00:00Z",
            "classEnd": "2025-01-20T09:00:00Z",
        }
        payload.update(body)
        return self.client.post("/api/bookings", json=payload)

    def test_create_booking(self):
        resp = self.booking()
        self.assertEqual(resp.status_code, 201)
        doc = self.db[BOOKINGS].find_one({"_id": ObjectId(resp.json()["id"])})
        self.assertEqual(doc["sessionId"], ObjectId(self.session_id))
        self.assertIn("bookingDate", doc)

    def test_required_fields(self):
        self.assertEqual(self.booking(tutorEmail="").status_code, 400)
        self.assertEqual(self.booking(sessionId=None).status_code, 400)

    def test_booking_is_permissive_about_session_state_and_duplicates(self):
        pending = self.insert_session(status="pending")
        self.assertEqual(self.booking(sessionId=pending).status_code, 201)
        self.assertEqual(self.booking().status_code, 201)
        self.assertEqual(self.booking().status_code, 201)
        self.assertEqual(self.db[BOOKINGS].count_documents({"sessionId": ObjectId(self.session_id)}), 2)

    def test_cannot_book_for_someone_else(self):
        self.assertEqual(self.booking(studentEmail=OTHER_STUDENT).status_code, 403)

    def test_list_bookings_sorted_by_class_start(self):
        self.booking(classStart="2025-03-01T09:00:00Z", sessionTitle="Later")
        self.booking(classStart="2025-02-01T09:00:00Z", sessionTitle="Sooner")

        resp = self.client.get("/api/booked-sessions", params={"studentEmail": STUDENT})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual([b["sessionTitle"] for b in resp.json()], ["Sooner", "Later"])

        self.assertEqual(self.client.get("/api/booked-sessions").status_code, 400)
        resp = self.client.get("/api/booked-sessions", params={"studentEmail": OTHER_STUDENT})
        self.assertEqual(resp.status_code, 403)
