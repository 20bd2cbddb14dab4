import unittest
from decimal import Decimal
from unittest import mock

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from family_finance import main


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        self.original_engine = main.engine
        main.engine = self.engine
        main.metadata.create_all(self.engine)
        self.client = TestClient(main.app)

        response = self.client.post(
            "/families",
            json={
                "name": "Sharma Family",
                "owner_email": "Asha@example.com",
                "owner_name": "Asha",
            },
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.family = response.json()
        self.headers = {"x-user-id": str(self.family["owner_id"])}

    def tearDown(self) -> None:
        main.engine = self.original_engine
        self.engine.dispose()

    def create_schedule(self, **overrides) -> dict:
        payload = {
            "name": "Society Maintenance",
            "amount": "2500",
            "frequency": "monthly",
            "due_day": 5,
            "start_date": "2025-01-01",
            "category": "maintenance",
        }
        payload.update(overrides)
        response = self.client.post("/schedules", json=payload, headers=self.headers)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()


class FamilyApiTests(ApiTestCase):
    def test_create_family_makes_owner_admin(self) -> None:
        self.assertEqual(self.family["currency"], "INR")
        self.assertEqual(len(self.family["members"]), 1)
        owner = self.family["members"][0]
        self.assertEqual(owner["email"], "asha@example.com")
        self.assertEqual(owner["role"], "admin")

    def test_duplicate_owner_email_conflicts(self) -> None:
        response = self.client.post(
            "/families",
            json={"name": "Other", "owner_email": "asha@example.com", "owner_name": "A"},
        )
        self.assertEqual(response.status_code, 409)

    def test_missing_identity_is_rejected(self) -> None:
        self.assertEqual(self.client.get("/schedules").status_code, 401)
        self.assertEqual(
            self.client.get("/schedules", headers={"x-user-id": "abc"}).status_code, 400
        )
        self.assertEqual(
            self.client.get("/schedules", headers={"x-user-id": "999"}).status_code, 404
        )

    def test_viewer_cannot_create_schedules(self) -> None:
        response = self.client.post(
            "/families/me/members",
            json={"email": "ravi@example.com", "name": "Ravi", "role": "viewer"},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        viewer_headers = {"x-user-id": str(response.json()["user_id"])}

        family = self.client.get("/families/me", headers=viewer_headers).json()
        self.assertEqual(len(family["members"]), 2)

        response = self.client.post(
            "/schedules",
            json={
                "name": "Netflix",
                "amount": "649",
                "due_day": 3,
                "start_date": "2025-01-01",
            },
            headers=viewer_headers,
        )
        self.assertEqual(response.status_code, 403)

    def test_last_admin_cannot_be_removed(self) -> None:
        member_id = self.family["members"][0]["id"]
        response = self.client.delete(f"/families/me/members/{member_id}", headers=self.headers)
        self.assertEqual(response.status_code, 409)


class ScheduleApiTests(ApiTestCase):
    def test_create_and_list_with_next_due_date(self) -> None:
        created = self.create_schedule(
            name="Property Tax",
            amount="8000",
            frequency="half-yearly",
            due_day=1,
            category="tax",
        )
        self.assertEqual(created["due_months"], [1, 7])
        self.assertFalse(created["is_auto_linked"])

        response = self.client.get(
            "/schedules", params={"reference_date": "2026-01-19"}, headers=self.headers
        )
        self.assertEqual(response.status_code, 200)
        schedules = response.json()
        self.assertEqual(len(schedules), 1)
        self.assertEqual(schedules[0]["next_due_date"], "2026-07-01")
        self.assertEqual(schedules[0]["due_status"], "future")
        self.assertEqual(schedules[0]["due_pattern"], "Jan, Jul (1st)")

    def test_due_status_tracks_reference_month(self) -> None:
        schedule = self.create_schedule(name="Rent", amount="100", due_day=31)

        this_month = self.client.get(
            f"/schedules/{schedule['id']}",
            params={"reference_date": "2025-01-15"},
            headers=self.headers,
        ).json()
        self.assertEqual(this_month["next_due_date"], "2025-01-31")
        self.assertEqual(this_month["due_status"], "due_this_period")

        next_month = self.client.get(
            f"/schedules/{schedule['id']}",
            params={"reference_date": "2025-02-01"},
            headers=self.headers,
        ).json()
        self.assertEqual(next_month["next_due_date"], "2025-02-28")
        self.assertEqual(next_month["due_status"], "due_this_period")

        quarterly = self.create_schedule(name="Water", frequency="quarterly", due_day=1)
        response = self.client.get(
            f"/schedules/{quarterly['id']}",
            params={"reference_date": "2025-01-31"},
            headers=self.headers,
        ).json()
        self.assertEqual(response["next_due_date"], "2025-04-01")
        self.assertEqual(response["due_status"], "future")

    def test_custom_schedule_requires_months(self) -> None:
        response = self.client.post(
            "/schedules",
            json={
                "name": "School Fees",
                "amount": "15000",
                "frequency": "custom",
                "due_months": [],
                "due_day": 10,
                "start_date": "2025-01-01",
            },
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("due month", response.json()["detail"])

    def test_invalid_due_day_and_amount_are_rejected(self) -> None:
        for overrides in ({"due_day": 32}, {"amount": "0"}):
            with self.subTest(overrides=overrides):
                payload = {
                    "name": "Gym",
                    "amount": "1200",
                    "due_day": 5,
                    "start_date": "2025-01-01",
                }
                payload.update(overrides)
                response = self.client.post("/schedules", json=payload, headers=self.headers)
                self.assertEqual(response.status_code, 400)

    def test_update_and_soft_delete_manual_schedule(self) -> None:
        created = self.create_schedule()
        response = self.client.put(
            f"/schedules/{created['id']}",
            json={
                "name": "Society Maintenance",
                "amount": "3000",
                "frequency": "monthly",
                "due_day": 7,
                "start_date": "2025-01-01",
                "category": "maintenance",
            },
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(Decimal(response.json()["amount"]), Decimal("3000"))
        self.assertEqual(response.json()["due_day"], 7)

        response = self.client.delete(f"/schedules/{created['id']}", headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get("/schedules", headers=self.headers).json(), [])

    def test_annual_overview(self) -> None:
        self.create_schedule(amount="100", frequency="monthly")
        self.create_schedule(name="Car Insurance", amount="9000", frequency="yearly", due_months=[4])

        response = self.client.get(
            "/schedules/overview", params={"year": 2025}, headers=self.headers
        )
        self.assertEqual(response.status_code, 200)
        overview = response.json()
        self.assertEqual(len(overview), 12)
        self.assertEqual(overview[0]["count"], 1)
        self.assertEqual(overview[3]["count"], 2)
        self.assertEqual(Decimal(overview[3]["total_amount"]), Decimal("9100"))


class AutoLinkedScheduleTests(ApiTestCase):
    def create_loan(self) -> dict:
        response = self.client.post(
            "/loans",
            json={
                "lender": "HDFC",
                "type": "home",
                "principal": "5000000",
                "interest_rate": "8.5",
                "emi": "43391",
                "emi_day": 5,
                "tenure_months": 240,
                "start_date": "2024-04-05",
            },
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def test_loan_creates_linked_emi_schedule(self) -> None:
        loan = self.create_loan()
        schedules = self.client.get(
            "/schedules", params={"linked": "auto"}, headers=self.headers
        ).json()
        self.assertEqual(len(schedules), 1)
        schedule = schedules[0]
        self.assertEqual(schedule["id"], loan["linked_schedule_id"])
        self.assertTrue(schedule["is_auto_linked"])
        self.assertEqual(schedule["linked_type"], "loan")
        self.assertEqual(schedule["linked_id"], loan["id"])
        self.assertEqual(Decimal(schedule["amount"]), Decimal("43391"))
        self.assertEqual(
            self.client.get("/schedules", params={"linked": "manual"}, headers=self.headers).json(),
            [],
        )

    def test_linked_schedule_cannot_be_edited_or_deleted(self) -> None:
        loan = self.create_loan()
        schedule_id = loan["linked_schedule_id"]

        with self.assertLogs("family_finance.main", level="WARNING"):
            response = self.client.put(
                f"/schedules/{schedule_id}",
                json={
                    "name": "Changed",
                    "amount": "1",
                    "due_day": 1,
                    "start_date": "2024-01-01",
                },
                headers=self.headers,
            )
        self.assertEqual(response.status_code, 409)
        self.assertIn("Auto-linked", response.json()["detail"])

        response = self.client.delete(f"/schedules/{schedule_id}", headers=self.headers)
        self.assertEqual(response.status_code, 409)

        schedule = self.client.get(f"/schedules/{schedule_id}", headers=self.headers).json()
        self.assertEqual(schedule["name"], "HDFC Home Loan EMI")
        self.assertTrue(schedule["is_active"])

    def test_source_changes_flow_into_linked_schedule(self) -> None:
        loan = self.create_loan()
        response = self.client.put(
            f"/loans/{loan['id']}",
            json={
                "lender": "HDFC",
                "type": "home",
                "principal": "5000000",
                "interest_rate": "8.5",
                "emi": "45000",
                "emi_day": 10,
                "tenure_months": 240,
                "start_date": "2024-04-05",
            },
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        schedule = self.client.get(
            f"/schedules/{loan['linked_schedule_id']}", headers=self.headers
        ).json()
        self.assertEqual(Decimal(schedule["amount"]), Decimal("45000"))
        self.assertEqual(schedule["due_day"], 10)

        response = self.client.delete(f"/loans/{loan['id']}", headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get("/schedules", headers=self.headers).json(), [])

    def test_insurance_premium_schedule_uses_policy_months(self) -> None:
        response = self.client.post(
            "/insurance",
            json={
                "provider": "LIC",
                "policy_number": "PN-1001",
                "policy_name": "Jeevan Anand",
                "type": "lic",
                "premium": "12000",
                "frequency": "quarterly",
                "premium_day": 28,
                "start_date": "2023-02-28",
            },
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        policy = response.json()
        self.assertEqual(policy["due_months"], [1, 4, 7, 10])

        schedule = self.client.get(
            f"/schedules/{policy['linked_schedule_id']}",
            params={"reference_date": "2025-04-29"},
            headers=self.headers,
        ).json()
        self.assertEqual(schedule["category"], "insurance")
        self.assertEqual(schedule["next_due_date"], "2025-07-28")

    def test_investment_without_sip_has_no_schedule(self) -> None:
        response = self.client.post(
            "/investments",
            json={
                "name": "PPF",
                "type": "ppf",
                "invested_amount": "150000",
                "start_date": "2020-04-01",
            },
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertIsNone(response.json()["linked_schedule_id"])

        response = self.client.post(
            "/investments",
            json={
                "name": "Parag Parikh Flexi Cap",
                "type": "mutual-fund",
                "invested_amount": "0",
                "sip_amount": "5000",
                "sip_day": 7,
                "start_date": "2024-01-07",
            },
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertIsNotNone(response.json()["linked_schedule_id"])


class ScheduleInstanceApiTests(ApiTestCase):
    def test_generate_pay_and_summarize_month(self) -> None:
        rent = self.create_schedule(name="Rent", amount="100", due_day=10)
        self.create_schedule(name="Internet", amount="200", due_day=12)
        self.create_schedule(name="Tuition", amount="300", due_day=14)
        self.create_schedule(name="Car Insurance", amount="9000", frequency="yearly", due_months=[6])

        response = self.client.post(
            "/schedule-instances/generate",
            params={"year": 2025, "month": 3},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        generated = response.json()
        self.assertEqual(len(generated), 3)

        again = self.client.post(
            "/schedule-instances/generate",
            params={"year": 2025, "month": 3},
            headers=self.headers,
        )
        self.assertEqual(again.json(), [])

        internet = next(item for item in generated if item["schedule_name"] == "Internet")
        response = self.client.post(
            f"/schedule-instances/{internet['id']}/pay",
            json={"paid_date": "2025-03-02"},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["status"], "paid")
        self.assertEqual(Decimal(response.json()["paid_amount"]), Decimal("200"))

        response = self.client.post(
            f"/schedule-instances/{internet['id']}/pay",
            json={},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 409)

        summary = self.client.get(
            "/schedules/summary",
            params={"year": 2025, "month": 3, "reference_date": "2025-03-11"},
            headers=self.headers,
        ).json()
        self.assertEqual(Decimal(summary["total_amount"]), Decimal("600"))
        self.assertEqual(Decimal(summary["paid_amount"]), Decimal("200"))
        self.assertEqual(Decimal(summary["pending_amount"]), Decimal("400"))
        self.assertEqual(Decimal(summary["overdue_amount"]), Decimal("100"))
        statuses = {item["schedule_id"]: item["status"] for item in summary["items"]}
        self.assertEqual(statuses[rent["id"]], "overdue")

        overdue = self.client.get(
            "/schedule-instances/overdue",
            params={"reference_date": "2025-03-11"},
            headers=self.headers,
        ).json()
        self.assertEqual([item["schedule_id"] for item in overdue], [rent["id"]])

        upcoming = self.client.get(
            "/schedule-instances/upcoming",
            params={"reference_date": "2025-03-11", "days": 5},
            headers=self.headers,
        ).json()
        self.assertEqual([item["schedule_name"] for item in upcoming], ["Tuition"])

    def test_create_instance_for_synthesized_occurrence(self) -> None:
        schedule = self.create_schedule(
            name="Car Insurance", amount="9000", frequency="yearly", due_months=[6], due_day=31
        )
        response = self.client.post(
            "/schedule-instances",
            json={"schedule_id": schedule["id"], "year": 2025, "month": 6},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["due_date"], "2025-06-30")

        duplicate = self.client.post(
            "/schedule-instances",
            json={"schedule_id": schedule["id"], "year": 2025, "month": 6},
            headers=self.headers,
        )
        self.assertEqual(duplicate.status_code, 409)

        not_due = self.client.post(
            "/schedule-instances",
            json={"schedule_id": schedule["id"], "year": 2025, "month": 5},
            headers=self.headers,
        )
        self.assertEqual(not_due.status_code, 400)

    def test_generate_skips_occurrence_before_start_date(self) -> None:
        schedule = self.create_schedule(name="Gym", amount="1500", due_day=5, start_date="2026-01-20")

        january = self.client.post(
            "/schedule-instances/generate",
            params={"year": 2026, "month": 1},
            headers=self.headers,
        )
        self.assertEqual(january.status_code, 200, january.text)
        self.assertEqual(january.json(), [])

        february = self.client.post(
            "/schedule-instances/generate",
            params={"year": 2026, "month": 2},
            headers=self.headers,
        )
        self.assertEqual([item["schedule_id"] for item in february.json()], [schedule["id"]])

    def test_conflicting_generate_returns_conflict(self) -> None:
        self.create_schedule(name="Rent", amount="100", due_day=10)
        fetch_active_schedules = main.fetch_active_schedules

        # A second writer inserting the same row surfaces as a duplicate schedule here.
        def fetch_twice(conn, family_id):
            rows = fetch_active_schedules(conn, family_id)
            return list(rows) + list(rows)

        with mock.patch.object(main, "fetch_active_schedules", side_effect=fetch_twice):
            response = self.client.post(
                "/schedule-instances/generate",
                params={"year": 2025, "month": 3},
                headers=self.headers,
            )
        self.assertEqual(response.status_code, 409)

        listed = self.client.get(
            "/schedule-instances",
            params={"year": 2025, "month": 3},
            headers=self.headers,
        )
        self.assertEqual(listed.status_code, 200, listed.text)
        self.assertEqual(listed.json(), [])

    def test_summary_categories_cover_only_due_items(self) -> None:
        self.create_schedule(name="Society Maintenance", amount="100", due_day=10)
        self.create_schedule(
            name="Car Insurance",
            amount="9000",
            frequency="yearly",
            due_months=[6],
            category="insurance",
        )

        summary = self.client.get(
            "/schedules/summary",
            params={"year": 2025, "month": 3, "reference_date": "2025-03-01"},
            headers=self.headers,
        ).json()

        self.assertEqual(len(summary["by_category"]), 1)
        bucket = summary["by_category"][0]
        self.assertEqual(bucket["category"], "maintenance")
        self.assertEqual(bucket["count"], 1)
        self.assertEqual(Decimal(bucket["amount"]), Decimal("100"))
        totals = sum(Decimal(bucket["amount"]) for bucket in summary["by_category"])
        self.assertEqual(totals, Decimal(summary["total_amount"]))


if __name__ == "__main__":
    unittest.main()
