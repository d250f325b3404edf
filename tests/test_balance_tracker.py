"""
Balance fold, optimistic version checks and reconciliation.
"""

import pytest

from dealerledger.config.database import Collections
from dealerledger.models.ledger import BankPayment, CashPayment, DebitEntryCreate
from dealerledger.services import approval_workflow, balance_tracker, ledger_service
from dealerledger.services.balance_tracker import BalanceSnapshot, fold_entries
from dealerledger.services.exceptions import BalanceExceededError, ConcurrencyError

ACTOR = "user-1"


def entry(amount, status="Approved", is_debit=False, booking_id="b1"):
    return {"amount": amount, "approval_status": status, "is_debit": is_debit, "booking_id": booking_id}


def test_fold_counts_only_approved_booking_entries():
    snapshot = fold_entries(100000, [
        entry(30000),
        entry(5000, is_debit=True),
        entry(20000, status="Pending"),
        entry(10000, status="Rejected"),
        entry(7000, booking_id=None, is_debit=True),
    ])
    assert snapshot == BalanceSnapshot(received_amount=30000, debit_total=5000, balance_amount=75000)


def test_fold_of_no_entries_is_the_discounted_amount():
    snapshot = fold_entries(55000, [])
    assert snapshot.received_amount == 0
    assert snapshot.balance_amount == 55000


def test_ensure_within_balance():
    booking = {"_id": "b1", "balance_amount": 1000}
    balance_tracker.ensure_within_balance(booking, 1000)
    with pytest.raises(BalanceExceededError) as exc:
        balance_tracker.ensure_within_balance(booking, 1000.01)
    assert "Maximum allowed: 1000" in exc.value.message


@pytest.mark.asyncio
async def test_stale_booking_copy_is_rejected(seed):
    booking = await seed.booking(discounted_amount=50000)

    fresh = await balance_tracker.apply_credit(booking, 10000)
    assert fresh["version"] == 1
    assert fresh["balance_amount"] == 40000

    # ``booking`` still carries version 0
    with pytest.raises(ConcurrencyError):
        await balance_tracker.apply_credit(booking, 10000)

    stored = await seed.get(Collections.BOOKINGS, booking["_id"])
    assert stored["received_amount"] == 10000


@pytest.mark.asyncio
async def test_legacy_booking_without_version_is_updated(seed, database):
    booking = await seed.booking(discounted_amount=20000)
    await database[Collections.BOOKINGS].update_one({"_id": booking["_id"]}, {"$unset": {"version": ""}})
    booking.pop("version")

    updated = await balance_tracker.apply_debit(booking, 500)
    assert updated["version"] == 1
    assert updated["balance_amount"] == 20500


@pytest.mark.asyncio
async def test_reverse_credit_floors_received_at_zero(seed):
    booking = await seed.booking(discounted_amount=10000, received_amount=300.0, balance_amount=9700.0)
    updated = await balance_tracker.reverse_credit(booking, 1000)
    assert updated["received_amount"] == 0
    assert updated["balance_amount"] == 10000


@pytest.mark.asyncio
async def test_invariant_holds_after_mixed_operations(seed):
    location = await seed.cash_location()
    bank = await seed.bank()
    booking = await seed.booking(discounted_amount=100000)
    booking_id = str(booking["_id"])

    await ledger_service.record_payment(
        CashPayment(payment_mode="Cash", booking_id=booking_id, amount=20000, cash_location=location), ACTOR
    )
    pending = await ledger_service.record_payment(
        BankPayment(payment_mode="Bank", booking_id=booking_id, amount=30000, bank=bank), ACTOR
    )
    await ledger_service.record_debit(
        DebitEntryCreate(booking_id=booking_id, amount=1500, debit_reason="Cheque bounce charges"), ACTOR
    )
    await approval_workflow.approve_entry(str(pending["entry"]["_id"]), ACTOR)
    rejected = await ledger_service.record_payment(
        BankPayment(payment_mode="Exchange", booking_id=booking_id, amount=5000, bank=bank), ACTOR
    )
    await approval_workflow.reject_entry(str(rejected["entry"]["_id"]), ACTOR, "Old vehicle not received")

    stored = await seed.get(Collections.BOOKINGS, booking_id)
    assert stored["received_amount"] == 50000
    assert stored["debit_total"] == 1500
    assert stored["balance_amount"] == stored["discounted_amount"] - stored["received_amount"] + stored["debit_total"]

    report = await balance_tracker.reconcile_booking(booking_id)
    assert report["in_sync"] is True
    assert report["entries_counted"] == 4
    assert report["computed"]["balance_amount"] == 51500


@pytest.mark.asyncio
async def test_reconcile_reports_and_repairs_drift(seed, database):
    location = await seed.cash_location()
    booking = await seed.booking(discounted_amount=80000)
    booking_id = str(booking["_id"])
    await ledger_service.record_payment(
        CashPayment(payment_mode="Cash", booking_id=booking_id, amount=30000, cash_location=location), ACTOR
    )

    await database[Collections.BOOKINGS].update_one(
        {"_id": booking["_id"]}, {"$set": {"received_amount": 35000, "balance_amount": 45000}}
    )

    report = await balance_tracker.reconcile_booking(booking_id)
    assert report["in_sync"] is False
    assert report["drift"]["received_amount"] == 5000
    assert report["drift"]["balance_amount"] == -5000
    assert report["repaired"] is False

    repaired = await balance_tracker.reconcile_booking(booking_id, repair=True)
    assert repaired["repaired"] is True
    stored = await seed.get(Collections.BOOKINGS, booking_id)
    assert stored["received_amount"] == 30000
    assert stored["balance_amount"] == 50000

    assert (await balance_tracker.reconcile_booking(booking_id))["in_sync"] is True
