"""
Approval workflow for ledger entries.

Cash is effective as soon as it is recorded; every other channel waits in
Pending until someone approves (or rejects) it. Approval is the moment a
credit reaches the booking balance.
"""
import logging
from datetime import datetime
from typing import Dict, Optional

from dealerledger.config.database import Collections
from dealerledger.database.db_operations import db_ops, to_object_id
from dealerledger.services import balance_tracker
from dealerledger.services.exceptions import InvalidStateError, NotFoundError, ValidationError
from dealerledger.services.locks import booking_locks
from dealerledger.services.saga import Saga
from dealerledger.services.vehicle_status import derive_vehicle_status
from dealerledger.utils.helpers import generate_receipt_number, paginate, round_money, to_amount

logger = logging.getLogger(__name__)

PENDING = "Pending"
APPROVED = "Approved"
REJECTED = "Rejected"

COMMISSION_PAYMENT = "COMMISSION_PAYMENT"


def initial_approval(payment_mode: str, actor: str) -> Dict:
    """Approval fields for a freshly recorded entry"""
    if payment_mode == "Cash":
        return {
            "approval_status": APPROVED,
            "approved_by": actor,
            "approved_at": datetime.utcnow(),
        }
    return {"approval_status": PENDING, "approved_by": None, "approved_at": None}


async def issue_receipt(entry: Dict, actor: str, session=None) -> Dict:
    """Receipt document for a credit that just became effective"""
    receipt = {
        "booking_id": entry["booking_id"],
        "receipt_number": generate_receipt_number(),
        "amount": entry["amount"],
        "payment_mode": entry.get("payment_mode"),
        "ledger_entry_id": str(entry["_id"]),
        "generated_by": actor,
        "status": "active",
    }
    return await db_ops.create(Collections.RECEIPTS, receipt, session=session)


async def discard_receipt(receipt: Dict) -> None:
    """Compensation for issue_receipt"""
    await db_ops.delete(Collections.RECEIPTS, str(receipt["_id"]))


async def _load_entry(entry_id: str) -> Dict:
    if to_object_id(entry_id) is None:
        raise ValidationError("Invalid ledger entry ID format")
    entry = await db_ops.get_by_id(Collections.LEDGER_ENTRIES, entry_id)
    if not entry:
        raise NotFoundError("Ledger entry", entry_id)
    return entry


def _ensure_pending(entry: Dict) -> None:
    if entry.get("entry_type") == COMMISSION_PAYMENT:
        raise InvalidStateError("Commission entries are settled through the commission payment status")
    if entry.get("approval_status") != PENDING:
        raise InvalidStateError(f"Ledger entry is already {entry.get('approval_status')}")


async def _leave_pending(entry_id: str, changes: Dict, session=None) -> Dict:
    """Pending -> Approved/Rejected, at most once"""
    updated = await db_ops.update_where(
        Collections.LEDGER_ENTRIES,
        {"_id": to_object_id(entry_id), "approval_status": PENDING},
        {"$set": changes},
        session=session,
    )
    if updated is None:
        raise InvalidStateError("Ledger entry is no longer pending")
    return updated


async def _back_to_pending(entry: Dict) -> None:
    await db_ops.update(
        Collections.LEDGER_ENTRIES,
        str(entry["_id"]),
        {"approval_status": PENDING, "approved_by": None, "approved_at": None, "approval_remark": None},
    )


async def approve_entry(entry_id: str, actor: str, remark: Optional[str] = None) -> Dict:
    entry = await _load_entry(entry_id)
    _ensure_pending(entry)

    booking_id = entry.get("booking_id")
    async with booking_locks.hold(booking_id):
        booking = await db_ops.get_by_id(Collections.BOOKINGS, booking_id)
        if not booking:
            raise NotFoundError("Booking", booking_id)

        receipt = None
        async with Saga("approve_entry") as saga:
            approved = await saga.step(
                lambda s: _leave_pending(
                    entry_id,
                    {
                        "approval_status": APPROVED,
                        "approved_by": actor,
                        "approved_at": datetime.utcnow(),
                        "approval_remark": remark,
                    },
                    session=s,
                ),
                compensate=_back_to_pending,
                name="approve",
            )
            # an amendment may have landed between the first read and the lock
            amount = round_money(to_amount(approved.get("amount")))

            if approved.get("is_debit"):
                updated_booking = await saga.step(
                    lambda s: balance_tracker.apply_debit(booking, amount, session=s),
                    compensate=lambda after: balance_tracker.restore_balances(booking, after),
                    name="apply_debit",
                )
            else:
                receipt = await saga.step(
                    lambda s: issue_receipt(approved, actor, session=s),
                    compensate=discard_receipt,
                    name="issue_receipt",
                )
                updated_booking = await saga.step(
                    lambda s: balance_tracker.apply_credit(
                        booking, amount, receipt_id=str(receipt["_id"]), session=s
                    ),
                    compensate=lambda after: balance_tracker.restore_balances(
                        booking, after, receipt_id=str(receipt["_id"])
                    ),
                    name="apply_credit",
                )

        vehicle = None
        if not approved.get("is_debit"):
            vehicle = await derive_vehicle_status(updated_booking)

    logger.info("Ledger entry %s approved by %s (booking %s, amount %s)", entry_id, actor, booking_id, amount)
    return {
        "entry": approved,
        "receipt": receipt,
        "booking": balance_tracker.snapshot_of(updated_booking).model_dump(),
        "vehicle_status": vehicle,
    }


async def reject_entry(entry_id: str, actor: str, rejection_reason: str) -> Dict:
    if not rejection_reason or not rejection_reason.strip():
        raise ValidationError("Rejection reason is required")
    entry = await _load_entry(entry_id)
    _ensure_pending(entry)

    rejected = await _leave_pending(
        entry_id,
        {
            "approval_status": REJECTED,
            "approved_by": actor,
            "approved_at": datetime.utcnow(),
            "rejection_reason": rejection_reason.strip(),
        },
    )
    logger.info("Ledger entry %s rejected by %s: %s", entry_id, actor, rejection_reason)
    return rejected


async def list_pending(page: int = 1, limit: int = 20, non_cash_only: bool = True) -> Dict:
    """Pending entries, newest first"""
    query: Dict = {"approval_status": PENDING, "entry_type": {"$ne": COMMISSION_PAYMENT}}
    if non_cash_only:
        query["payment_mode"] = {"$ne": "Cash"}
    skip, limit = paginate(page, limit)
    entries = await db_ops.get_all(
        Collections.LEDGER_ENTRIES, query, skip=skip, limit=limit, sort=[("created_at", -1)]
    )
    total = await db_ops.count(Collections.LEDGER_ENTRIES, query)
    return {
        "entries": entries,
        "total": total,
        "page": skip // limit + 1,
        "limit": limit,
        "pages": (total + limit - 1) // limit,
    }
