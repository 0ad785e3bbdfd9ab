import unittest
from datetime import timedelta

from cabinet_fixtures import (
    FakeMessenger,
    make_engine,
    make_notifier,
    make_session_factory,
    seed_borrow,
    seed_city,
    seed_stock,
    stock_of,
)
from fastapi.testclient import TestClient

from equipment_cabinet import CabinetApp as app_module
from equipment_cabinet.services.manager_access_service import create_session
from equipment_cabinet.services.token_service import utcnow


class ApiRouteTests(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine()
        self.session_factory = make_session_factory(self.engine)
        self.db = self.session_factory()
        self.city = seed_city(self.db)
        self.other_city = seed_city(self.db, name="Akko")
        self.drill = seed_stock(self.db, self.city, "Drill", 3)
        self.notifier = make_notifier()
        self.messenger = FakeMessenger()

        def _db_override():
            db = self.session_factory()
            try:
                yield db
            finally:
                db.close()

        app_module.app.dependency_overrides[app_module.get_db] = _db_override
        app_module.app.dependency_overrides[app_module.get_notifier] = lambda: self.notifier
        app_module.app.dependency_overrides[app_module.get_messenger] = lambda: self.messenger
        self.client = TestClient(app_module.app)
        self.manager_headers = {
            "X-Session-Token": create_session({"managerName": "Noa", "role": "city_manager", "cityIDs": [self.city.CityID]})
        }

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        self.db.close()
        self.engine.dispose()

    def _create(self, **overrides):
        body = {
            "cityID": self.city.CityID,
            "requesterName": "Dana",
            "requesterPhone": "050-1234567",
            "items": [{"equipmentID": self.drill.EquipmentID, "quantity": 1}],
        }
        body.update(overrides)
        return self.client.post("/api/requests/create", json=body)

    def test_healthchecks(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").json(), {"status": "ok"})

    def test_full_request_to_pickup_flow(self):
        created = self._create()
        self.assertEqual(created.status_code, 200)
        body = created.json()
        self.assertEqual(body["status"], "pending")
        token = body["token"]

        verify = self.client.post("/api/requests/verify", json={"token": token})
        self.assertEqual(verify.status_code, 200)
        self.assertEqual(verify.json()["request"]["items"][0]["equipmentName"], "Drill")

        approve = self.client.patch(
            "/api/requests/manage",
            json={"requestID": body["requestID"], "cityID": self.city.CityID, "action": "approve"},
            headers=self.manager_headers,
        )
        self.assertEqual(approve.status_code, 200)
        self.assertEqual(approve.json()["request"]["approvedBy"], "Noa")

        pickup = self.client.post("/api/requests/confirm-pickup", json={"token": token, "signature": "Dana"})
        self.assertEqual(pickup.status_code, 200)
        self.assertEqual(pickup.json()["status"], "picked_up")
        self.assertEqual(stock_of(self.db, self.drill), 2)

        replay = self.client.post("/api/requests/confirm-pickup", json={"token": token, "signature": "Dana"})
        self.assertEqual(replay.status_code, 409)
        self.assertEqual(replay.json()["error"], "invalid_state")
        self.assertEqual(stock_of(self.db, self.drill), 2)

    def test_business_errors_map_to_status_codes(self):
        too_many = self._create(items=[{"equipmentID": self.drill.EquipmentID, "quantity": 2}])
        self.assertEqual(too_many.status_code, 400)
        self.assertEqual(too_many.json()["error"], "validation")

        missing_city = self._create(cityID=999)
        self.assertEqual(missing_city.status_code, 404)

        unknown = self.client.post("/api/requests/verify", json={"token": "nope"})
        self.assertEqual(unknown.status_code, 404)
        self.assertEqual(unknown.json()["error"], "not_found")

    def test_schema_errors_are_400(self):
        response = self.client.post("/api/requests/create", json={"cityID": "abc"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "validation")
        self.assertTrue(response.json()["fields"])

    def test_overdue_borrower_gets_item_list(self):
        seed_borrow(self.db, self.other_city, phone="0501234567", borrowed_at=utcnow() - timedelta(hours=30))
        response = self._create()
        self.assertEqual(response.status_code, 403)
        payload = response.json()
        self.assertEqual(payload["error"], "overdue_equipment")
        self.assertEqual(payload["overdueItems"][0]["equipmentName"], "Ladder")

        check = self.client.get("/api/borrower/check-overdue", params={"phone": "+972501234567"})
        self.assertEqual(check.status_code, 200)
        self.assertTrue(check.json()["hasOverdue"])
        scoped = self.client.get("/api/borrower/check-overdue", params={"phone": "0501234567", "cityId": self.city.CityID})
        self.assertFalse(scoped.json()["hasOverdue"])

    def test_manager_routes_require_session_and_city_access(self):
        created = self._create().json()
        anonymous = self.client.get("/api/requests/manage", params={"cityId": self.city.CityID})
        self.assertEqual(anonymous.status_code, 401)

        forged = self.client.get(
            "/api/requests/manage",
            params={"cityId": self.city.CityID},
            headers={"X-Session-Token": "forged.token"},
        )
        self.assertEqual(forged.status_code, 401)

        wrong_city = self.client.get(
            "/api/requests/manage",
            params={"cityId": self.other_city.CityID},
            headers=self.manager_headers,
        )
        self.assertEqual(wrong_city.status_code, 403)

        foreign_headers = {
            "X-Session-Token": create_session({"managerName": "Eli", "role": "city_manager", "cityIDs": [self.other_city.CityID]})
        }
        blocked = self.client.post(
            "/api/requests/extend-token",
            json={"requestID": created["requestID"], "minutes": 60},
            headers=foreign_headers,
        )
        self.assertEqual(blocked.status_code, 403)

        listed = self.client.get("/api/requests/manage", params={"cityId": self.city.CityID}, headers=self.manager_headers)
        self.assertEqual(listed.status_code, 200)
        self.assertEqual([row["requestID"] for row in listed.json()["requests"]], [created["requestID"]])

    def test_extend_and_cancel_routes(self):
        created = self._create().json()
        extended = self.client.post(
            "/api/requests/extend-token",
            json={"requestID": created["requestID"], "minutes": 90},
            headers=self.manager_headers,
        )
        self.assertEqual(extended.status_code, 200)
        self.assertEqual(extended.json()["status"], "pending")

        cancelled = self.client.post(
            "/api/requests/cancel-token",
            json={"requestID": created["requestID"], "reason": "Duplicate"},
            headers=self.manager_headers,
        )
        self.assertEqual(cancelled.status_code, 200)
        self.assertEqual(cancelled.json()["request"]["status"], "cancelled")

        again = self.client.post(
            "/api/requests/extend-token",
            json={"requestID": created["requestID"], "minutes": 90},
            headers=self.manager_headers,
        )
        self.assertEqual(again.status_code, 409)

    def test_regenerate_route_returns_new_token(self):
        created = self._create().json()
        self.client.patch(
            "/api/requests/manage",
            json={"requestID": created["requestID"], "cityID": self.city.CityID, "action": "approve"},
            headers=self.manager_headers,
        )
        regenerated = self.client.patch(
            "/api/requests/manage",
            json={"requestID": created["requestID"], "cityID": self.city.CityID, "action": "regenerate"},
            headers=self.manager_headers,
        )
        self.assertEqual(regenerated.status_code, 200)
        new_token = regenerated.json()["newToken"]
        self.assertNotEqual(new_token, created["token"])
        self.assertEqual(self.client.post("/api/requests/verify", json={"token": created["token"]}).status_code, 404)
        self.assertEqual(self.client.post("/api/requests/verify", json={"token": new_token}).status_code, 200)

    def test_direct_borrow_and_return_routes(self):
        direct_city = seed_city(self.db, name="Nesher", mode="direct")
        ladder = seed_stock(self.db, direct_city, "Ladder", 1)
        borrowed = self.client.post(
            "/api/direct-borrow",
            json={"cityID": direct_city.CityID, "name": "Dana", "phone": "0501234567", "items": [{"equipmentID": ladder.EquipmentID}]},
        )
        self.assertEqual(borrowed.status_code, 200)
        borrow_id = borrowed.json()["borrows"][0]["borrowID"]
        self.assertEqual(stock_of(self.db, ladder), 0)

        returned = self.client.post("/api/equipment/return", json={"borrowID": borrow_id})
        self.assertEqual(returned.json()["borrow"]["status"], "pending_approval")

        blocked = self.client.post("/api/borrow-history/approve-return", json={"borrowID": borrow_id}, headers=self.manager_headers)
        self.assertEqual(blocked.status_code, 403)

        admin_headers = {"X-Session-Token": create_session({"managerName": "Root", "role": "super_admin"})}
        approved = self.client.post("/api/borrow-history/approve-return", json={"borrowID": borrow_id}, headers=admin_headers)
        self.assertEqual(approved.status_code, 200)
        self.assertEqual(approved.json()["borrow"]["status"], "returned")
        self.assertEqual(stock_of(self.db, ladder), 1)

    def test_cron_requires_bearer_secret(self):
        seed_borrow(self.db, self.city, phone="0501234567", borrowed_at=utcnow() - timedelta(hours=30))
        self.assertEqual(self.client.post("/api/cron/overdue-reminders").status_code, 401)
        wrong = self.client.post("/api/cron/overdue-reminders", headers={"Authorization": "Bearer wrong"})
        self.assertEqual(wrong.status_code, 401)

        ran = self.client.post("/api/cron/overdue-reminders", headers={"Authorization": "Bearer cron-test-secret"})
        self.assertEqual(ran.status_code, 200)
        self.assertEqual(ran.json()["summary"]["sent"], 1)
        self.assertEqual(len(self.messenger.sent), 1)


if __name__ == "__main__":
    unittest.main()
