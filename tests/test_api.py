"""
HTTP surface: status codes, error envelope and authentication.
"""

from datetime import datetime

import pytest

COMPONENTS = [{"header_id": "hdr-1", "header_key": "ex_showroom", "original_value": 50000, "discounted_value": 40000}]


async def create_booking(client, **overrides):
    body = {
        "model_id": "6650f0c2a1b2c3d4e5f60702",
        "color_id": "6650f0c2a1b2c3d4e5f60703",
        "discounted_amount": 100000,
        "status": "APPROVED",
    }
    body.update(overrides)
    response = await client.post("/api/bookings/", json=body)
    assert response.status_code == 201
    return response.json()


@pytest.mark.asyncio
async def test_health_is_public(anonymous_client):
    response = await anonymous_client.get("/health")
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_authentication_required(anonymous_client):
    response = await anonymous_client.post("/api/ledger/debits", json={})
    assert response.status_code == 401

    response = await anonymous_client.get(
        "/api/ledger-approvals/pending", headers={"Authorization": "Bearer not-a-token"}
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_booking_and_cash_payment(client, seed):
    booking = await create_booking(client)
    assert booking["balance_amount"] == 100000
    assert booking["booking_number"].startswith("BK-")
    location = await seed.cash_location()

    response = await client.post("/api/ledger/payments", json={
        "booking_id": booking["_id"], "amount": 25000, "payment_mode": "Cash", "cash_location": location,
    })

    assert response.status_code == 201
    body = response.json()
    assert body["entry"]["approval_status"] == "Approved"
    assert body["booking"]["balance_amount"] == 75000

    fetched = await client.get(f"/api/bookings/{booking['_id']}")
    assert fetched.json()["received_amount"] == 25000


@pytest.mark.asyncio
async def test_subdealer_booking_needs_subdealer(client):
    response = await client.post("/api/bookings/", json={
        "booking_type": "SUBDEALER", "model_id": "m", "color_id": "c", "discounted_amount": 10,
    })
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_payment_validation_errors(client, seed):
    booking = await create_booking(client)
    bank = await seed.bank()

    zero = await client.post("/api/ledger/payments", json={
        "booking_id": booking["_id"], "amount": 0, "payment_mode": "Bank", "bank": bank,
    })
    assert zero.status_code == 400

    stray = await client.post("/api/ledger/payments", json={
        "booking_id": booking["_id"], "amount": 10, "payment_mode": "Cash", "cash_location": "x", "bank": bank,
    })
    assert stray.status_code == 400

    unknown_mode = await client.post("/api/ledger/payments", json={
        "booking_id": booking["_id"], "amount": 10, "payment_mode": "Crypto",
    })
    assert unknown_mode.status_code == 400

    over = await client.post("/api/ledger/payments", json={
        "booking_id": booking["_id"], "amount": 100001, "payment_mode": "Bank", "bank": bank,
    })
    assert over.status_code == 400
    assert "exceeds" in over.json()["detail"].lower()


@pytest.mark.asyncio
async def test_missing_booking_is_404(client, seed):
    location = await seed.cash_location()
    response = await client.post("/api/ledger/payments", json={
        "booking_id": "6650f0c2a1b2c3d4e5f60798", "amount": 10, "payment_mode": "Cash", "cash_location": location,
    })
    assert response.status_code == 404
    assert response.json() == {"detail": "Booking not found"}

    report = await client.get("/api/ledger/bookings/6650f0c2a1b2c3d4e5f60798/report")
    assert report.status_code == 404


@pytest.mark.asyncio
async def test_approval_endpoints(client, seed):
    booking = await create_booking(client)
    bank = await seed.bank()
    first = (await client.post("/api/ledger/payments", json={
        "booking_id": booking["_id"], "amount": 30000, "payment_mode": "Bank", "bank": bank,
        "transaction_reference": "UTR-1",
    })).json()
    second = (await client.post("/api/ledger/payments", json={
        "booking_id": booking["_id"], "amount": 5000, "payment_mode": "Exchange", "bank": bank,
    })).json()

    pending = await client.get("/api/ledger-approvals/pending")
    assert pending.json()["total"] == 2

    approved = await client.post(f"/api/ledger-approvals/{first['entry']['_id']}/approve")
    assert approved.status_code == 200
    assert approved.json()["booking"]["balance_amount"] == 70000

    again = await client.post(f"/api/ledger-approvals/{first['entry']['_id']}/approve", json={"remark": "x"})
    assert again.status_code == 400

    no_reason = await client.post(f"/api/ledger-approvals/{second['entry']['_id']}/reject", json={})
    assert no_reason.status_code == 400
    rejected = await client.post(
        f"/api/ledger-approvals/{second['entry']['_id']}/reject", json={"rejection_reason": "Not received"}
    )
    assert rejected.json()["approval_status"] == "Rejected"

    report = (await client.get(f"/api/ledger/bookings/{booking['_id']}/report")).json()
    assert report["summary"]["final_balance"] == 70000
    assert [row["balance"] for row in report["entries"]] == [100000, 70000]

    reconcile = (await client.get(f"/api/ledger/bookings/{booking['_id']}/reconcile")).json()
    assert reconcile["in_sync"] is True


@pytest.mark.asyncio
async def test_debit_and_amend_endpoints(client):
    booking = await create_booking(client, discounted_amount=1000)

    debit = await client.post("/api/ledger/debits", json={
        "booking_id": booking["_id"], "amount": 100, "debit_reason": "Cheque bounce charges",
    })
    assert debit.status_code == 201
    entry_id = debit.json()["entry"]["_id"]

    amended = await client.patch(f"/api/ledger/entries/{entry_id}", json={"amount": 150})
    assert amended.status_code == 200
    assert amended.json()["booking"]["balance_amount"] == 1150

    debits = (await client.get(f"/api/ledger/bookings/{booking['_id']}/debits")).json()
    assert debits["total_debit"] == 150


@pytest.mark.asyncio
async def test_on_account_endpoints(client, seed):
    subdealer_id = await seed.subdealer()
    booking = await create_booking(client, booking_type="SUBDEALER", subdealer_id=subdealer_id)
    base = f"/api/subdealers/{subdealer_id}/on-account"

    created = await client.post(f"{base}/receipts", json={"ref_number": "UTR-55", "amount": 1000,
                                                          "payment_mode": "Cash"})
    assert created.status_code == 201
    receipt_id = created.json()["_id"]

    duplicate = await client.post(f"{base}/receipts", json={"ref_number": "UTR-55", "amount": 5,
                                                            "payment_mode": "Cash"})
    assert duplicate.status_code == 409

    empty = await client.post(f"/api/on-account/receipts/{receipt_id}/allocate", json={"allocations": []})
    assert empty.status_code == 400

    over = await client.post(f"/api/on-account/receipts/{receipt_id}/allocate", json={
        "allocations": [{"booking_id": booking["_id"], "amount": 1500}],
    })
    assert over.status_code == 400

    allocated = await client.post(f"/api/on-account/receipts/{receipt_id}/allocate", json={
        "allocations": [{"booking_id": booking["_id"], "amount": 400}],
    })
    assert allocated.status_code == 200
    body = allocated.json()
    assert body["receipt"]["status"] == "PARTIAL"
    assert body["bookings"][booking["_id"]]["balance_amount"] == 99600

    allocation_id = body["receipt"]["allocations"][0]["_id"]
    removed = await client.delete(f"/api/on-account/receipts/{receipt_id}/allocations/{allocation_id}")
    assert removed.status_code == 200
    assert removed.json()["receipt"]["status"] == "OPEN"

    listed = (await client.get(f"{base}/receipts", params={"status": "OPEN", "q": "utr"})).json()
    assert listed["total"] == 1
    summary = (await client.get(f"{base}/summary")).json()
    assert summary["totals"]["grand_balance"] == 1000

    missing = await client.get("/api/on-account/receipts/6650f0c2a1b2c3d4e5f60798")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_commission_endpoints(client, seed):
    subdealer_id = await seed.subdealer()
    await seed.commission_master(subdealer_id, [
        {"header_id": "hdr-1", "commission_rate": 5, "applicable_from": datetime(2024, 1, 1)},
    ])
    await seed.subdealer_booking(subdealer_id, created_at=datetime(2024, 7, 4), price_components=COMPONENTS)

    preview = await client.get("/api/commission-payments/calculate",
                               params={"subdealer_id": subdealer_id, "month": 7, "year": 2024})
    assert preview.status_code == 200
    assert preview.json()["total_commission"] == 2000

    created = await client.post("/api/commission-payments/", json={
        "subdealer_id": subdealer_id, "month": 7, "year": 2024, "payment_method": "UPI",
        "transaction_reference": "UPI-123",
    })
    assert created.status_code == 201
    payment_id = created.json()["_id"]

    duplicate = await client.post("/api/commission-payments/", json={
        "subdealer_id": subdealer_id, "month": 7, "year": 2024, "payment_method": "ON_ACCOUNT",
    })
    assert duplicate.status_code == 409

    paid = await client.patch(f"/api/commission-payments/{payment_id}/status", json={"status": "PAID"})
    assert paid.status_code == 200
    assert paid.json()["status"] == "PAID"

    listed = (await client.get("/api/commission-payments/", params={"subdealer_id": subdealer_id})).json()
    assert listed["total"] == 1
    fetched = await client.get(f"/api/commission-payments/{payment_id}")
    assert fetched.json()["transaction_reference"] == "UPI-123"
