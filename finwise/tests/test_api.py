import os
import unittest
from datetime import datetime, timedelta
from decimal import Decimal
from unittest import mock

os.environ["DATABASE_URL"] = "sqlite://"

from fastapi.testclient import TestClient
from sqlalchemy import update

from finwise import main as finwise_main
from finwise.main import CATEGORY_STORE, app, engine
from finwise.schema import metadata, users

FIXED_CATEGORIES = {
    "variable": [
        {
            "id": "v1",
            "name": "Food",
            "subcategories": [{"name": "Groceries", "limit_amount": "100"}],
        }
    ],
    "fixed": [
        {
            "id": "c1",
            "name": "Subscriptions",
            "frequency": "daily",
            "subcategories": [
                {"name": "Streaming", "limit_amount": "50", "is_fixed": True},
                {"name": "Cloud", "limit_amount": "0", "is_fixed": True},
            ],
        },
        {
            "id": "c2",
            "name": "Add",
            "frequency": "daily",
            "subcategories": [{"name": "New", "limit_amount": "10", "is_fixed": True}],
        },
    ],
    "salary": "3000",
    "pay_day": 5,
}


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        metadata.drop_all(engine)
        metadata.create_all(engine)
        CATEGORY_STORE.cache.clear()
        self.client = TestClient(app)

    def register(self, email: str = "ana@example.com") -> dict:
        response = self.client.post(
            "/auth/register",
            json={"email": email, "password": "password1", "name": "Ana"},
        )
        self.assertEqual(response.status_code, 201)
        return response.json()

    def auth_headers(self, email: str = "ana@example.com") -> dict:
        token = self.register(email)["token"]
        return {"Authorization": f"Bearer {token}"}


class AuthApiTests(ApiTestCase):
    def test_register_login_and_validate(self) -> None:
        registered = self.register()

        login = self.client.post(
            "/auth/login", json={"email": "ANA@example.com", "password": "password1"}
        )
        self.assertEqual(login.status_code, 200)
        self.assertEqual(login.json()["user"]["uid"], registered["user"]["uid"])

        validated = self.client.post(
            "/auth/validate-token",
            headers={"Authorization": f"Bearer {login.json()['token']}"},
        )
        self.assertEqual(validated.status_code, 200)
        self.assertTrue(validated.json()["valid"])

    def test_duplicate_registration_conflicts(self) -> None:
        self.register()

        response = self.client.post(
            "/auth/register",
            json={"email": "ana@example.com", "password": "password2", "name": "Ana"},
        )

        self.assertEqual(response.status_code, 409)

    def test_invalid_registration_payload(self) -> None:
        response = self.client.post(
            "/auth/register",
            json={"email": "not-an-email", "password": "password1", "name": "Ana"},
        )

        self.assertEqual(response.status_code, 400)

    def test_wrong_password(self) -> None:
        self.register()

        response = self.client.post(
            "/auth/login", json={"email": "ana@example.com", "password": "nope123"}
        )

        self.assertEqual(response.status_code, 401)

    def test_requires_bearer_token(self) -> None:
        self.assertEqual(self.client.get("/transactions").status_code, 401)
        self.assertEqual(
            self.client.get(
                "/transactions", headers={"Authorization": "Bearer unknown"}
            ).status_code,
            401,
        )

    def test_logout_revokes_token(self) -> None:
        headers = self.auth_headers()

        self.client.post("/auth/logout", headers=headers)

        self.assertEqual(self.client.get("/user/profile", headers=headers).status_code, 401)

    def test_refresh_replaces_token(self) -> None:
        token = self.register()["token"]

        refreshed = self.client.post("/auth/refresh", json={"refresh_token": token})

        self.assertEqual(refreshed.status_code, 200)
        new_token = refreshed.json()["token"]
        self.assertNotEqual(new_token, token)
        self.assertEqual(
            self.client.get(
                "/user/profile", headers={"Authorization": f"Bearer {token}"}
            ).status_code,
            401,
        )
        self.assertEqual(
            self.client.get(
                "/user/profile", headers={"Authorization": f"Bearer {new_token}"}
            ).status_code,
            200,
        )


class UserApiTests(ApiTestCase):
    def test_balance_bounds(self) -> None:
        headers = self.auth_headers()

        self.assertEqual(
            self.client.patch("/user/balance", json={"balance": "-1"}, headers=headers).status_code,
            400,
        )
        self.assertEqual(
            self.client.patch(
                "/user/balance", json={"balance": "1000000.01"}, headers=headers
            ).status_code,
            400,
        )
        response = self.client.patch("/user/balance", json={"balance": "250.75"}, headers=headers)
        self.assertEqual(response.status_code, 200)

        balance = self.client.get("/user/balance", headers=headers).json()["balance"]
        self.assertEqual(Decimal(str(balance)), Decimal("250.75"))

    def test_complete_profile_round_trip(self) -> None:
        headers = self.auth_headers()

        response = self.client.put(
            "/user/complete-profile",
            json={
                "full_name": "Ana Souza",
                "birth_date": "21/04/1990",
                "postal_code": "01310-100",
                "city": "Sao Paulo",
            },
            headers=headers,
        )
        self.assertEqual(response.status_code, 200)

        profile = self.client.get("/user/complete-profile", headers=headers).json()
        self.assertEqual(profile["full_name"], "Ana Souza")
        self.assertEqual(profile["birth_date"], "21/04/1990")
        self.assertEqual(profile["postal_code"], "01310100")
        self.assertEqual(profile["nickname"], "")

    def test_complete_profile_rejects_bad_birth_date(self) -> None:
        headers = self.auth_headers()

        response = self.client.put(
            "/user/complete-profile",
            json={"full_name": "Ana", "birth_date": "1990-04-21"},
            headers=headers,
        )

        self.assertEqual(response.status_code, 400)

    def test_delete_account(self) -> None:
        headers = self.auth_headers()
        self.client.post("/user-categories/save", json=FIXED_CATEGORIES, headers=headers)

        response = self.client.delete("/user/profile", headers=headers)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get("/user/profile", headers=headers).status_code, 401)


class CategoryApiTests(ApiTestCase):
    def test_save_then_read_uses_cache(self) -> None:
        headers = self.auth_headers()

        saved = self.client.post("/user-categories/save", json=FIXED_CATEGORIES, headers=headers)
        self.assertEqual(saved.status_code, 200)
        self.assertFalse(saved.json()["cached"])

        first = self.client.get("/user-categories", headers=headers).json()
        second = self.client.get("/user-categories", headers=headers).json()
        self.assertFalse(first["cached"])
        self.assertTrue(second["cached"])
        self.assertEqual(second["data"]["fixed"][0]["name"], "Subscriptions")
        self.assertEqual(second["data"]["fixed"][0]["kind"], "fixed")

    def test_save_validates_salary_and_pay_day(self) -> None:
        headers = self.auth_headers()

        bad_salary = self.client.post(
            "/user-categories/save", json={**FIXED_CATEGORIES, "salary": "0"}, headers=headers
        )
        bad_day = self.client.post(
            "/user-categories/save", json={**FIXED_CATEGORIES, "pay_day": 32}, headers=headers
        )

        self.assertEqual(bad_salary.status_code, 400)
        self.assertEqual(bad_day.status_code, 400)

    def test_update_subcategory(self) -> None:
        headers = self.auth_headers()
        self.client.post("/user-categories/save", json=FIXED_CATEGORIES, headers=headers)

        response = self.client.patch(
            "/user-categories/update-subcategory",
            json={
                "category_id": "v1",
                "subcategory_name": "Groceries",
                "updates": {"spent_amount": "40"},
            },
            headers=headers,
        )
        missing = self.client.patch(
            "/user-categories/update-subcategory",
            json={"category_id": "zz", "subcategory_name": "x", "updates": {}},
            headers=headers,
        )

        self.assertEqual(response.status_code, 200)
        spent = response.json()["data"]["variable"][0]["subcategories"][0]["spent_amount"]
        self.assertEqual(Decimal(str(spent)), Decimal("40"))
        self.assertEqual(missing.status_code, 404)

    def test_update_last_payment_requires_configuration(self) -> None:
        headers = self.auth_headers()

        self.assertEqual(
            self.client.post("/user-categories/update-last-payment", headers=headers).status_code,
            404,
        )
        self.client.post("/user-categories/save", json=FIXED_CATEGORIES, headers=headers)
        self.assertEqual(
            self.client.post("/user-categories/update-last-payment", headers=headers).status_code,
            200,
        )

    def test_salary_already_paid_this_month(self) -> None:
        headers = self.auth_headers()
        self.client.post("/user-categories/save", json=FIXED_CATEGORIES, headers=headers)

        response = self.client.get("/user-categories/check-salary", headers=headers)

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["should_receive"])
        self.assertEqual(response.json()["pay_day"], 5)


class FixedExpenseApiTests(ApiTestCase):
    def test_process_charges_once_per_day(self) -> None:
        headers = self.auth_headers()
        self.client.patch("/user/balance", json={"balance": "200"}, headers=headers)
        self.client.post("/user-categories/save", json=FIXED_CATEGORIES, headers=headers)

        first = self.client.post("/fixed-expenses/process", headers=headers)
        second = self.client.post("/fixed-expenses/process", headers=headers)

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json(), {"processed": 1, "message": "1 fixed expense(s) processed."})
        self.assertEqual(second.json(), {"processed": 0, "message": "No fixed expenses due."})

        balance = self.client.get("/user/balance", headers=headers).json()["balance"]
        self.assertEqual(Decimal(str(balance)), Decimal("150"))
        listed = self.client.get("/transactions", headers=headers).json()
        self.assertEqual(len(listed), 1)
        self.assertTrue(listed[0]["fixed"])
        self.assertEqual(listed[0]["subcategory"], "Streaming")

    def test_process_without_configuration(self) -> None:
        headers = self.auth_headers()

        response = self.client.post("/fixed-expenses/process", headers=headers)

        self.assertEqual(response.json()["processed"], 0)

    def test_process_requires_authentication(self) -> None:
        self.assertEqual(self.client.post("/fixed-expenses/process").status_code, 401)


class TransactionApiTests(ApiTestCase):
    def create_transaction(self, headers: dict, **overrides) -> dict:
        body = {
            "type": "expense",
            "amount": "42.50",
            "category": "Food",
            "subcategory": "Groceries",
            "date": "2024-05-10T12:00:00",
            "note": "Weekly market",
        }
        body.update(overrides)
        response = self.client.post("/transactions", json=body, headers=headers)
        self.assertEqual(response.status_code, 201)
        return response.json()

    def test_crud_and_ownership(self) -> None:
        owner = self.auth_headers()
        other = self.auth_headers("bob@example.com")
        created = self.create_transaction(owner)

        self.assertEqual(created["wallet"], "Wallet")
        self.assertEqual(created["source"], "Other")
        url = f"/transactions/{created['id']}"
        self.assertEqual(self.client.get(url, headers=other).status_code, 403)
        self.assertEqual(self.client.get("/transactions/9999", headers=owner).status_code, 404)
        self.assertEqual(self.client.patch(url, json={}, headers=owner).status_code, 400)

        updated = self.client.patch(url, json={"note": "Farmers market"}, headers=owner)
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(updated.json()["note"], "Farmers market")

        self.assertEqual(self.client.delete(url, headers=other).status_code, 403)
        self.assertEqual(self.client.delete(url, headers=owner).status_code, 204)
        self.assertEqual(self.client.get(url, headers=owner).status_code, 404)

    def test_rejects_invalid_type_and_amount(self) -> None:
        headers = self.auth_headers()
        base = {"category": "Food", "date": "2024-05-10T12:00:00"}

        bad_type = self.client.post(
            "/transactions", json={**base, "type": "transfer", "amount": "1"}, headers=headers
        )
        bad_amount = self.client.post(
            "/transactions", json={**base, "type": "expense", "amount": "0"}, headers=headers
        )

        self.assertEqual(bad_type.status_code, 400)
        self.assertEqual(bad_amount.status_code, 400)

    def test_search_and_balance(self) -> None:
        headers = self.auth_headers()
        self.create_transaction(headers)
        self.create_transaction(
            headers, type="income", amount="1000", category="Salary", subcategory=None, note=""
        )

        found = self.client.post(
            "/transactions/search", json={"query": "market"}, headers=headers
        ).json()
        incomes = self.client.post(
            "/transactions/search", json={"type": "income"}, headers=headers
        ).json()
        balance = self.client.get("/transactions/balance", headers=headers).json()

        self.assertEqual([row["category"] for row in found], ["Food"])
        self.assertEqual([row["category"] for row in incomes], ["Salary"])
        self.assertEqual(Decimal(str(balance["balance"])), Decimal("957.50"))
        self.assertEqual(balance["transaction_count"], 2)

    def test_stats_endpoints(self) -> None:
        headers = self.auth_headers()
        self.create_transaction(headers)
        self.create_transaction(
            headers, type="income", amount="1000", category="Salary", subcategory=None
        )

        summary = self.client.get("/stats/summary", headers=headers).json()
        monthly = self.client.get("/stats/monthly", headers=headers).json()

        self.assertEqual(Decimal(str(summary["total_expense"])), Decimal("42.50"))
        self.assertEqual(summary["largest_transaction"]["category"], "Salary")
        self.assertEqual([month["month"] for month in monthly["months"]], ["2024-05"])
        self.assertEqual(monthly["trend"], "stable")


class ReminderApiTests(ApiTestCase):
    def test_create_list_and_conflict(self) -> None:
        headers = self.auth_headers()
        due = (datetime.now() + timedelta(days=3)).isoformat()

        created = self.client.post(
            "/reminders",
            json={"title": "Pay rent", "due_date": due, "priority": "High"},
            headers=headers,
        )
        duplicate = self.client.post(
            "/reminders", json={"title": "Pay rent", "due_date": due}, headers=headers
        )
        past = self.client.post(
            "/reminders",
            json={"title": "Late", "due_date": (datetime.now() - timedelta(days=1)).isoformat()},
            headers=headers,
        )

        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["priority"], "high")
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(past.status_code, 400)

        reminder_id = created.json()["id"]
        completed = self.client.put(
            f"/reminders/{reminder_id}", json={"is_completed": True}, headers=headers
        )
        self.assertTrue(completed.json()["is_completed"])
        open_items = self.client.get("/reminders?completed=false", headers=headers).json()
        self.assertEqual(open_items, [])
        self.assertEqual(
            self.client.delete(f"/reminders/{reminder_id}", headers=headers).status_code, 204
        )


class GoalApiTests(ApiTestCase):
    def test_deposit_moves_balance_into_goal(self) -> None:
        headers = self.auth_headers()
        self.client.patch("/user/balance", json={"balance": "500"}, headers=headers)
        goal = self.client.post(
            "/goals", json={"name": "Trip", "target_amount": "1000"}, headers=headers
        ).json()

        deposit = self.client.post(
            f"/goals/{goal['id']}/deposit", json={"amount": "200"}, headers=headers
        )
        too_much = self.client.post(
            f"/goals/{goal['id']}/deposit", json={"amount": "400"}, headers=headers
        )

        self.assertEqual(deposit.status_code, 200)
        self.assertEqual(Decimal(str(deposit.json()["balance"])), Decimal("300"))
        self.assertEqual(Decimal(str(deposit.json()["progress"])), Decimal("20"))
        self.assertEqual(too_much.status_code, 400)

        listed = self.client.get("/transactions", headers=headers).json()
        self.assertEqual(listed[0]["category"], "Goals")
        self.assertEqual(listed[0]["subcategory"], "Trip")

    def test_deposit_keeps_balance_change_made_during_the_request(self) -> None:
        headers = self.auth_headers()
        self.client.patch("/user/balance", json={"balance": "200"}, headers=headers)
        goal = self.client.post(
            "/goals", json={"name": "Trip", "target_amount": "1000"}, headers=headers
        ).json()
        original_get_owned_row = finwise_main.get_owned_row

        def charge_then_fetch(conn, table, record_id, user_id, label):
            conn.execute(
                update(users)
                .where(users.c.id == user_id)
                .values(balance=users.c.balance - Decimal("30"))
            )
            return original_get_owned_row(conn, table, record_id, user_id, label)

        with mock.patch.object(finwise_main, "get_owned_row", side_effect=charge_then_fetch):
            deposit = self.client.post(
                f"/goals/{goal['id']}/deposit", json={"amount": "50"}, headers=headers
            )

        self.assertEqual(deposit.status_code, 200)
        self.assertEqual(Decimal(str(deposit.json()["previous_balance"])), Decimal("170"))
        self.assertEqual(Decimal(str(deposit.json()["balance"])), Decimal("120"))
        balance = self.client.get("/user/balance", headers=headers).json()["balance"]
        self.assertEqual(Decimal(str(balance)), Decimal("120"))

    def test_deposit_rejected_when_balance_is_short(self) -> None:
        headers = self.auth_headers()
        self.client.patch("/user/balance", json={"balance": "40"}, headers=headers)
        goal = self.client.post(
            "/goals", json={"name": "Trip", "target_amount": "1000"}, headers=headers
        ).json()

        response = self.client.post(
            f"/goals/{goal['id']}/deposit", json={"amount": "50"}, headers=headers
        )

        self.assertEqual(response.status_code, 400)
        goals_after = self.client.get("/goals", headers=headers).json()
        self.assertEqual(Decimal(str(goals_after[0]["current_amount"])), Decimal("0"))
        self.assertEqual(self.client.get("/transactions", headers=headers).json(), [])

    def test_deposit_cannot_exceed_target(self) -> None:
        headers = self.auth_headers()
        self.client.patch("/user/balance", json={"balance": "500"}, headers=headers)
        goal = self.client.post(
            "/goals", json={"name": "Phone", "target_amount": "100"}, headers=headers
        ).json()

        response = self.client.post(
            f"/goals/{goal['id']}/deposit", json={"amount": "150"}, headers=headers
        )

        self.assertEqual(response.status_code, 400)


if __name__ == "__main__":
    unittest.main()
