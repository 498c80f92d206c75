"""Contract tests for the billing API: status codes, payload shapes and error bodies."""

from decimal import Decimal
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from society_billing.main import app
from society_billing.models import Base, Member, Society
from society_billing.services.locks import MemberLockRegistry, get_member_locks

pytestmark = pytest.mark.contract


@pytest.fixture
def seeded(tmp_path):
    """Society with three members in the database the app is configured for."""
    engine = create_engine(f"sqlite:///{tmp_path / 'app.db'}")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        society = Society(
            name="Green Park CHS",
            maintenance_rate=Decimal("3"),
            sinking_fund_rate=Decimal("1"),
            service_tax_rate=Decimal("2"),
            interest_rate=Decimal("2"),
            grace_period_days=10,
            bill_due_day=10,
        )
        session.add(society)
        session.flush()
        members = [
            Member(society_id=society.id, wing="A", unit_no="101", owner_name="Asha Rao", area=Decimal("1000")),
            Member(society_id=society.id, wing="A", unit_no="102", owner_name="Vikram Shah", area=Decimal("800")),
            Member(society_id=society.id, wing="B", unit_no="201", owner_name="Meera Iyer", area=Decimal("1200")),
        ]
        session.add_all(members)
        session.flush()
        ids = {"society": society.id, **{m.unit_label: m.id for m in members}}
        session.commit()
    engine.dispose()
    return ids


@pytest.fixture
def client(seeded):
    """Test client running the app lifespan against the seeded database."""
    app.dependency_overrides[get_member_locks] = MemberLockRegistry
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


def cycle_url(ids, period_id="2025-04"):
    return f"/api/billing/societies/{ids['society']}/cycles/{period_id}"


def run_april(client, ids, **body):
    response = client.post(cycle_url(ids), json={"as_of": "2025-04-01", **body})
    assert response.status_code == 200
    return response.json()


def assert_error(response, status, code):
    assert response.status_code == status
    detail = response.json()["detail"]
    assert detail["code"] == code
    assert detail["message"]


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestCycleEndpoints:
    def test_run_cycle(self, client, seeded):
        data = run_april(client, seeded, actor_id=1)

        assert data["period_id"] == "2025-04"
        assert data["state"] == "DONE"
        assert data["success_count"] == 3
        assert data["total_members"] == 3
        assert data["failed_members"] == []
        assert data["not_attempted"] == []
        assert len(data["bills_created"]) == 3
        assert data["total_billed"] == "12240.00"

    def test_run_cycle_without_body(self, client, seeded):
        response = client.post(cycle_url(seeded))

        assert response.status_code == 200
        assert response.json()["success_count"] == 3

    def test_ad_hoc_charges(self, client, seeded):
        data = run_april(
            client,
            seeded,
            ad_hoc_charges={
                str(seeded["A-101"]): [{"label": "Parking", "amount": "500"}],
                "B-201": [{"label": "Late fee", "amount": "100"}],
            },
        )

        # 4590 + 3264 + 4998
        assert data["total_billed"] == "12852.00"

    def test_negative_ad_hoc_charge_is_rejected(self, client, seeded):
        response = client.post(
            cycle_url(seeded),
            json={"ad_hoc_charges": {"B-201": [{"label": "Refund", "amount": "-5"}]}},
        )
        assert response.status_code == 422

    def test_duplicate_period(self, client, seeded):
        run_april(client, seeded)

        assert_error(client.post(cycle_url(seeded), json={}), 409, "duplicate_period")

    def test_invalid_period(self, client, seeded):
        assert_error(client.post(cycle_url(seeded, "2025-13")), 400, "invalid_period")

    def test_unknown_society(self, client, seeded):
        response = client.post("/api/billing/societies/9999/cycles/2025-04")
        assert_error(response, 404, "society_not_found")

    def test_unexpected_error_is_500(self, client, seeded):
        with patch("society_billing.api.billing.run_cycle", side_effect=RuntimeError("boom")):
            response = client.post(cycle_url(seeded))

        assert_error(response, 500, "internal_error")

    def test_finalize(self, client, seeded):
        run_april(client, seeded)

        first = client.post(f"{cycle_url(seeded)}/finalize")
        second = client.post(f"{cycle_url(seeded)}/finalize", json={"actor_id": 3})

        assert first.status_code == 200
        assert first.json() == {"period_id": "2025-04", "locked_count": 3}
        assert second.json()["locked_count"] == 0

    def test_delete_period(self, client, seeded):
        run_april(client, seeded)

        response = client.delete(cycle_url(seeded), params={"reason": "Wrong rate", "actor_id": 1})

        assert response.status_code == 200
        assert response.json() == {"period_id": "2025-04", "deleted_count": 3}
        assert client.post(cycle_url(seeded), json={"as_of": "2025-04-01"}).status_code == 200

    def test_delete_period_requires_reason(self, client, seeded):
        assert client.delete(cycle_url(seeded)).status_code == 422

    def test_mark_overdue(self, client, seeded):
        run_april(client, seeded)
        url = f"/api/billing/societies/{seeded['society']}/bills/mark-overdue"

        assert client.post(url, json={"as_of": "2025-04-10"}).json()["marked_count"] == 0
        data = client.post(url, json={"as_of": "2025-04-11"}).json()

        assert data["marked_count"] == 3
        assert {b["status"] for b in data["bills"]} == {"Overdue"}
        assert data["bills"][0]["total_amount"] in {"4080.00", "3264.00", "4896.00"}


class TestPaymentEndpoint:
    def payment_url(self, member_id):
        return f"/api/billing/members/{member_id}/payments"

    def test_record_payment(self, client, seeded):
        run_april(client, seeded)

        response = client.post(
            self.payment_url(seeded["A-101"]),
            json={"amount": "4080", "payment_mode": "UPI", "payment_details": {"upi_ref": "X1"}},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["new_balance"] == "0.00"
        assert data["transaction"]["amount"] == "4080.00"
        assert data["transaction"]["type"] == "Credit"
        assert data["transaction"]["payment_mode"] == "UPI"
        assert data["transaction"]["transaction_ref"].startswith("TXN")
        assert data["bills_settled"][0]["status"] == "Paid"
        assert data["bills_settled"][0]["applied"] == "4080.00"

    def test_partial_payment(self, client, seeded):
        run_april(client, seeded)

        data = client.post(self.payment_url(seeded["A-102"]), json={"amount": "1000"}).json()

        assert data["new_balance"] == "2264.00"
        assert data["bills_settled"][0]["status"] == "Partial"

    def test_overpayment(self, client, seeded):
        run_april(client, seeded)

        response = client.post(self.payment_url(seeded["A-101"]), json={"amount": "5000"})
        assert_error(response, 400, "validation_error")

    @pytest.mark.parametrize("body", [{"amount": "0"}, {"amount": "-1"}, {}, {"amount": "10", "payment_mode": "Barter"}])
    def test_invalid_body(self, client, seeded, body):
        assert client.post(self.payment_url(seeded["A-101"]), json=body).status_code == 422

    def test_unknown_member(self, client, seeded):
        response = client.post(self.payment_url(9999), json={"amount": "10"})
        assert_error(response, 404, "member_not_found")


class TestReadEndpoints:
    def test_outstanding_with_interest(self, client, seeded):
        run_april(client, seeded)

        response = client.get(
            f"/api/billing/members/{seeded['A-101']}/outstanding", params={"as_of": "2025-05-25"}
        )

        assert response.status_code == 200
        assert response.json() == {
            "member_id": seeded["A-101"],
            "principal": "4080.00",
            "interest": "81.60",
            "days_overdue": 35,
            "total": "4161.60",
            "oldest_unpaid_due_date": "2025-04-10",
        }

    def test_outstanding_unknown_member(self, client, seeded):
        assert_error(client.get("/api/billing/members/9999/outstanding"), 404, "member_not_found")

    def test_ledger_query(self, client, seeded):
        run_april(client, seeded)
        url = f"/api/billing/societies/{seeded['society']}/ledger/query"

        data = client.post(url, json={"wings": ["A"], "group_by": "member", "limit": 1}).json()

        assert data["total_count"] == 2
        assert len(data["entries"]) == 1
        assert data["summary"]["total_debit"] == "7344.00"
        assert data["summary"]["total_pages"] == 2
        assert data["summary"]["closing_balance"] is None
        assert [g["key"] for g in data["groups"]] == ["A-101 Asha Rao", "A-102 Vikram Shah"]
        assert data["groups"][0]["net"] == "4080.00"

    def test_ledger_query_single_member(self, client, seeded):
        run_april(client, seeded)
        url = f"/api/billing/societies/{seeded['society']}/ledger/query"

        data = client.post(url, json={"member_ids": [seeded["B-201"]]}).json()

        assert data["summary"]["opening_balance"] == "0.00"
        assert data["summary"]["closing_balance"] == "4896.00"
        assert data["entries"][0]["balance_after"] == "4896.00"
        assert data["groups"] is None

    def test_ledger_query_invalid(self, client, seeded):
        url = f"/api/billing/societies/{seeded['society']}/ledger/query"
        assert_error(client.post(url, json={"sort_by": "owner"}), 400, "validation_error")

    def test_defaulters(self, client, seeded):
        run_april(client, seeded)
        url = f"/api/billing/societies/{seeded['society']}/defaulters"

        data = client.get(url, params={"months_threshold": 1}).json()

        assert [d["unit"] for d in data] == ["B-201", "A-101", "A-102"]
        assert data[0]["total_arrears"] == "4896.00"
        assert data[0]["unpaid_count"] == 1
        assert client.get(url).json() == []

    def test_defaulters_threshold_validated(self, client, seeded):
        url = f"/api/billing/societies/{seeded['society']}/defaulters"
        assert client.get(url, params={"months_threshold": 0}).status_code == 422
