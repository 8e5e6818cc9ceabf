import base64
import unittest
from datetime import date, timedelta
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from _support import TEST_PASSWORD, make_profile, new_session, reset_database

import CheckoutApp as app_module
from services import storage_service
from services.errors import ConflictError


PROOF_DATA_URL = "data:image/png;base64," + base64.b64encode(b"\x89PNG\r\n\x1a\nproof").decode("ascii")


class SecurityAndFlowTests(unittest.TestCase):
    def setUp(self):
        reset_database()
        db = new_session()
        try:
            make_profile(db, "admin@school.test", "admin", "Admin User")
            make_profile(db, "manager@school.test", "manager", "Manager User")
            make_profile(db, "kim@school.test", "teacher", "Kim Teacher")
            make_profile(db, "lee@school.test", "teacher", "Lee Teacher")
        finally:
            db.close()
        self.due = (date.today() + timedelta(days=7)).isoformat()

    def _login(self, email: str, password: str = TEST_PASSWORD):
        client = TestClient(app_module.app)
        response = client.post("/api/auth/login", json={"email": email, "password": password})
        self.assertEqual(response.status_code, 200, response.text)
        client.headers.update({"X-Session-Token": response.json()["sessionToken"]})
        return client

    def _create_item(self, manager, name="Laptop", category="IT기기", total=5):
        response = manager.post("/api/items", json={"name": name, "category": category, "totalQty": total})
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def test_signup_requires_approval_before_login(self):
        anonymous = TestClient(app_module.app)
        signup = anonymous.post(
            "/api/auth/signup",
            json={"email": "New.Teacher@school.test", "password": "pw-123456", "fullName": "New Teacher"},
        )
        self.assertEqual(signup.status_code, 200, signup.text)
        self.assertEqual(signup.json()["user"]["role"], "waiting")

        refused = anonymous.post("/api/auth/login", json={"email": "new.teacher@school.test", "password": "pw-123456"})
        self.assertEqual(refused.status_code, 403)

        duplicate = anonymous.post(
            "/api/auth/signup",
            json={"email": "new.teacher@school.test", "password": "pw-123456", "fullName": "Again"},
        )
        self.assertEqual(duplicate.status_code, 409)

        manager = self._login("manager@school.test")
        waiting = manager.get("/api/admin/waiting-users")
        self.assertEqual(waiting.status_code, 200)
        profile_id = waiting.json()[0]["profileID"]

        self.assertEqual(manager.post(f"/api/admin/users/{profile_id}/approve", json={"role": "admin"}).status_code, 403)
        approved = manager.post(f"/api/admin/users/{profile_id}/approve", json={"role": "teacher"})
        self.assertEqual(approved.status_code, 200)
        self.assertEqual(approved.json()["role"], "teacher")

        self._login("new.teacher@school.test", "pw-123456")

    def test_invalid_credentials_and_anonymous_access(self):
        anonymous = TestClient(app_module.app)
        bad = anonymous.post("/api/auth/login", json={"email": "kim@school.test", "password": "wrong-pass"})
        self.assertEqual(bad.status_code, 401)
        self.assertEqual(anonymous.get("/api/items").status_code, 401)
        self.assertEqual(anonymous.get("/api/items", headers={"X-Session-Token": "forged.token"}).status_code, 401)

    def test_login_logout_revokes_session_token(self):
        teacher = self._login("kim@school.test")
        me = teacher.get("/api/auth/me")
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json()["user"]["activeRentalCount"], 0)

        self.assertEqual(teacher.post("/api/auth/logout").status_code, 200)
        self.assertEqual(teacher.get("/api/auth/me").status_code, 401)

    def test_teacher_can_not_reach_manager_routes(self):
        teacher = self._login("kim@school.test")
        for path in ("/api/rentals/active", "/api/rentals/overdue", "/api/rentals/broken", "/api/admin/waiting-users"):
            response = teacher.get(path)
            self.assertEqual(response.status_code, 403, path)
        denied = teacher.post("/api/items", json={"name": "Drone", "category": "IT기기", "totalQty": 1})
        self.assertEqual(denied.status_code, 403)
        self.assertEqual(denied.json()["error"], "AccessDenied")

    def test_checkout_and_return_flow(self):
        manager = self._login("manager@school.test")
        kim = self._login("kim@school.test")
        lee = self._login("lee@school.test")
        item = self._create_item(manager, total=5)

        first = kim.post("/api/checkout", json={"items": [{"itemID": item["itemID"], "quantity": 3, "dueDate": self.due}]})
        self.assertEqual(first.status_code, 200, first.text)
        rental = first.json()["succeeded"][0]["rental"]
        self.assertEqual(rental["daysUntilDue"], 7)

        overdraw = lee.post("/api/checkout", json={"items": [{"itemID": item["itemID"], "quantity": 3, "dueDate": self.due}]})
        self.assertEqual(overdraw.status_code, 409)
        self.assertEqual(overdraw.json()["outcome"], "failed")

        partial = lee.post(
            "/api/checkout",
            json={
                "items": [
                    {"itemID": item["itemID"], "quantity": 2, "dueDate": self.due},
                    {"itemID": 9999, "quantity": 1, "dueDate": self.due},
                ]
            },
        )
        self.assertEqual(partial.status_code, 207)
        self.assertEqual(partial.json()["failed"][0]["error"], "NotFoundError")
        self.assertEqual(manager.get(f"/api/items/{item['itemID']}").json()["availableQty"], 0)

        self.assertEqual(kim.post("/api/checkout", json={"items": []}).status_code, 400)

        foreign = lee.post(f"/api/rentals/{rental['rentalID']}/return", json={"returnQty": 1, "proofUrl": "p"})
        self.assertEqual(foreign.status_code, 403)

        missing_proof = kim.post(f"/api/rentals/{rental['rentalID']}/return", json={"returnQty": 1})
        self.assertEqual(missing_proof.status_code, 400)

        returned = kim.post(
            f"/api/rentals/{rental['rentalID']}/return",
            json={"returnQty": 3, "brokenQty": 1, "proofUrl": "https://cdn.test/proof.jpg", "expectedRevision": 0},
        )
        self.assertEqual(returned.status_code, 200, returned.text)
        self.assertEqual(returned.json()["status"], "returned")

        detail = manager.get(f"/api/items/{item['itemID']}").json()
        self.assertEqual((detail["rentedQty"], detail["brokenQty"], detail["availableQty"]), (2, 1, 2))

        by_holder = manager.get("/api/rentals/active/by-holder").json()
        self.assertEqual([(group["holderName"], group["count"]) for group in by_holder], [("Lee Teacher", 1)])

        lee_rental = lee.get("/api/rentals/mine").json()[0]
        forced = manager.post(f"/api/rentals/{lee_rental['rentalID']}/force-return", json={"broken": True})
        self.assertEqual(forced.status_code, 200)
        self.assertEqual(forced.json()["returnProofUrl"], "Manager forced return (broken/lost)")

        broken = manager.get("/api/rentals/broken").json()
        self.assertEqual({entry["rentalID"] for entry in broken}, {rental["rentalID"], lee_rental["rentalID"]})
        self.assertEqual(manager.get("/api/rentals/active").json(), [])

        detail = manager.get(f"/api/items/{item['itemID']}").json()
        self.assertEqual((detail["rentedQty"], detail["brokenQty"], detail["availableQty"]), (0, 3, 2))

        shrink = manager.put(f"/api/items/{item['itemID']}", json={"totalQty": 2})
        self.assertEqual(shrink.status_code, 409)
        self.assertEqual(shrink.json()["inUseQty"], 3)

    def test_rejected_return_leaves_no_proof_file(self):
        manager = self._login("manager@school.test")
        kim = self._login("kim@school.test")
        item = self._create_item(manager, total=3)
        checked_out = kim.post(
            "/api/checkout",
            json={"items": [{"itemID": item["itemID"], "quantity": 2, "dueDate": self.due}]},
        )
        rental_id = checked_out.json()["succeeded"][0]["rental"]["rentalID"]
        proof_dir = Path(storage_service.UPLOADS_DIR) / "return-proofs"

        def proof_files():
            return set(proof_dir.glob("*")) if proof_dir.exists() else set()

        existing = proof_files()

        def stored_proofs():
            return sorted(proof_files() - existing)

        too_many = kim.post(
            f"/api/rentals/{rental_id}/return",
            json={"returnQty": 5, "proofDataUrl": PROOF_DATA_URL},
        )
        self.assertEqual(too_many.status_code, 400)
        stale = kim.post(
            f"/api/rentals/{rental_id}/return",
            json={"returnQty": 1, "expectedRevision": 3, "proofDataUrl": PROOF_DATA_URL},
        )
        self.assertEqual(stale.status_code, 409)
        self.assertEqual(stored_proofs(), [])

        with mock.patch.object(
            app_module,
            "process_return",
            side_effect=ConflictError("Rental was changed by someone else; reload and try again."),
        ):
            raced = kim.post(
                f"/api/rentals/{rental_id}/return",
                json={"returnQty": 1, "proofDataUrl": PROOF_DATA_URL},
            )
        self.assertEqual(raced.status_code, 409)
        self.assertEqual(stored_proofs(), [])

        accepted = kim.post(
            f"/api/rentals/{rental_id}/return",
            json={"returnQty": 2, "proofDataUrl": PROOF_DATA_URL},
        )
        self.assertEqual(accepted.status_code, 200, accepted.text)
        self.assertIn("/uploads/return-proofs/", accepted.json()["returnProofUrl"])
        self.assertEqual(len(stored_proofs()), 1)

    def test_overdue_view_uses_requested_day(self):
        manager = self._login("manager@school.test")
        kim = self._login("kim@school.test")
        item = self._create_item(manager, total=2)
        kim.post("/api/checkout", json={"items": [{"itemID": item["itemID"], "quantity": 1, "dueDate": self.due}]})

        self.assertEqual(manager.get("/api/rentals/overdue").json(), [])
        later = (date.today() + timedelta(days=8)).isoformat()
        overdue = manager.get("/api/rentals/overdue", params={"today": later}).json()
        self.assertEqual(len(overdue), 1)
        self.assertTrue(overdue[0]["isOverdue"])
        self.assertEqual(overdue[0]["holder"]["fullName"], "Kim Teacher")

    def test_category_rename_and_favorites(self):
        manager = self._login("manager@school.test")
        kim = self._login("kim@school.test")
        category = manager.post("/api/categories", json={"name": "IT기기"}).json()
        self.assertEqual(manager.post("/api/categories", json={"name": "IT기기"}).status_code, 409)
        self._create_item(manager, name="Laptop", category="IT기기")

        renamed = manager.put(f"/api/categories/{category['categoryID']}", json={"name": "IT장비"})
        self.assertEqual(renamed.status_code, 200)
        self.assertEqual(renamed.json()["retaggedItems"], 1)
        items = kim.get("/api/items", params={"category": "IT장비"}).json()
        self.assertEqual([entry["name"] for entry in items], ["Laptop"])

        for name in ("IT장비", "음향", "체육"):
            toggled = kim.post("/api/favorites/toggle", json={"category": name})
            self.assertEqual(toggled.status_code, 200)
        self.assertEqual(kim.get("/api/favorites").json()["favorites"], ["음향", "체육"])


if __name__ == "__main__":
    unittest.main()
