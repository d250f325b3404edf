"""
On-account (pooled) receipts of sub-dealers and their allocation to bookings.

A sub-dealer pays a lump sum against a UTR/REF number; the amount is then
spread over that sub-dealer's bookings. Each allocation becomes an Approved
credit entry on the booking. Allocations may take a booking balance below
zero: sub-dealer floats are allowed to prepay.
"""
import logging
import re
from datetime import datetime
from typing import Dict, List, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from dealerledger.config.database import Collections
from dealerledger.database.db_operations import db_ops, to_object_id
from dealerledger.models.on_account import BANK_REQUIRED_MODES, AllocationItem, OnAccountReceiptCreate
from dealerledger.services import balance_tracker
from dealerledger.services.approval_workflow import APPROVED
from dealerledger.services.exceptions import (
    ConcurrencyError,
    DuplicateError,
    InsufficientBalanceError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from dealerledger.services.ledger_service import (
    BOOKING_PAYMENT,
    SOURCE_ON_ACCOUNT,
    discard_entry,
    positive_amount,
    require_id,
)
from dealerledger.services.locks import booking_locks, receipt_locks
from dealerledger.services.saga import Saga
from dealerledger.utils.helpers import paginate, round_money, to_amount

logger = logging.getLogger(__name__)

OPEN = "OPEN"
PARTIAL = "PARTIAL"
CLOSED = "CLOSED"

ON_ACCOUNT_MODE = "On-Account"
SUBDEALER_BOOKING = "SUBDEALER"


def receipt_status(amount: float, allocated_total: float) -> str:
    if allocated_total <= 0:
        return OPEN
    if allocated_total >= amount:
        return CLOSED
    return PARTIAL


# ─── Receipts ────────────────────────────────────────────────────────────────

async def create_receipt(subdealer_id: str, data: OnAccountReceiptCreate, actor: str,
                         session=None) -> Dict:
    require_id(subdealer_id, "subdealer")
    ref_number = (data.ref_number or "").strip()
    if not ref_number:
        raise ValidationError("UTR/REF number is required")

    duplicate = await db_ops.get_one(
        Collections.ON_ACCOUNT_RECEIPTS,
        {"subdealer_id": subdealer_id, "ref_number": ref_number},
        session=session,
    )
    if duplicate:
        logger.info("Duplicate on-account ref %s for subdealer %s", ref_number, subdealer_id)
        raise DuplicateError("Duplicate UTR/REF for this subdealer")

    subdealer = await db_ops.get_by_id(Collections.SUBDEALERS, subdealer_id, session=session)
    if not subdealer:
        raise NotFoundError("Subdealer", subdealer_id)

    amount = positive_amount(data.amount)

    bank_id = None
    if data.payment_mode in BANK_REQUIRED_MODES and not data.bank:
        raise ValidationError("Bank is required for selected payment mode")
    if data.bank:
        bank = await db_ops.get_by_id(Collections.BANKS, data.bank, session=session)
        if not bank:
            raise NotFoundError("Bank", data.bank)
        bank_id = str(bank["_id"])

    receipt = {
        "subdealer_id": subdealer_id,
        "ref_number": ref_number,
        "payment_mode": data.payment_mode,
        "bank_id": bank_id,
        "amount": amount,
        "received_date": data.received_date or datetime.utcnow(),
        "received_by": actor,
        "remark": data.remark,
        "status": OPEN,
        "allocated_total": 0.0,
        "allocations": [],
        "closed_at": None,
        "closed_by": None,
        "version": 0,
    }
    try:
        created = await db_ops.create(Collections.ON_ACCOUNT_RECEIPTS, receipt, session=session)
    except DuplicateKeyError:
        # lost the race against a concurrent insert of the same ref
        raise DuplicateError("Duplicate UTR/REF for this subdealer")

    logger.info("On-account receipt %s (%s) created for subdealer %s", ref_number, amount, subdealer_id)
    return created


async def discard_receipt(receipt: Dict) -> None:
    """Compensation for create_receipt"""
    await db_ops.delete(Collections.ON_ACCOUNT_RECEIPTS, str(receipt["_id"]))


async def get_receipt(receipt_id: str) -> Dict:
    require_id(receipt_id, "receipt")
    receipt = await db_ops.get_by_id(Collections.ON_ACCOUNT_RECEIPTS, receipt_id)
    if not receipt:
        raise NotFoundError("Receipt", receipt_id)
    return receipt


async def list_receipts(subdealer_id: str, status: Optional[str] = None, q: Optional[str] = None,
                        date_from: Optional[datetime] = None, date_to: Optional[datetime] = None,
                        page: int = 1, limit: int = 20) -> Dict:
    require_id(subdealer_id, "subdealer")
    query: Dict = {"subdealer_id": subdealer_id}
    if status:
        query["status"] = status
    if q and q.strip():
        query["ref_number"] = {"$regex": re.escape(q.strip()), "$options": "i"}
    if date_from or date_to:
        query["received_date"] = {}
        if date_from:
            query["received_date"]["$gte"] = date_from
        if date_to:
            query["received_date"]["$lte"] = date_to

    skip, limit = paginate(page, limit)
    receipts = await db_ops.get_all(
        Collections.ON_ACCOUNT_RECEIPTS, query, skip=skip, limit=limit, sort=[("received_date", -1)]
    )
    total = await db_ops.count(Collections.ON_ACCOUNT_RECEIPTS, query)
    return {
        "receipts": receipts,
        "total": total,
        "page": skip // limit + 1,
        "limit": limit,
        "pages": (total + limit - 1) // limit,
    }


async def subdealer_summary(subdealer_id: str) -> Dict:
    require_id(subdealer_id, "subdealer")
    receipts = await db_ops.find_all(Collections.ON_ACCOUNT_RECEIPTS, {"subdealer_id": subdealer_id})

    by_status: Dict[str, Dict] = {}
    for receipt in receipts:
        amount = to_amount(receipt.get("amount"))
        allocated = to_amount(receipt.get("allocated_total"))
        bucket = by_status.setdefault(receipt.get("status"), {
            "status": receipt.get("status"),
            "count": 0,
            "total_amount": 0.0,
            "total_allocated": 0.0,
            "total_balance": 0.0,
        })
        bucket["count"] += 1
        bucket["total_amount"] += amount
        bucket["total_allocated"] += allocated
        bucket["total_balance"] += amount - allocated

    for bucket in by_status.values():
        for key in ("total_amount", "total_allocated", "total_balance"):
            bucket[key] = round_money(bucket[key])

    grand_amount = sum(b["total_amount"] for b in by_status.values())
    grand_allocated = sum(b["total_allocated"] for b in by_status.values())
    return {
        "by_status": sorted(by_status.values(), key=lambda b: b["status"] or ""),
        "totals": {
            "total_receipts": len(receipts),
            "grand_amount": round_money(grand_amount),
            "grand_allocated": round_money(grand_allocated),
            "grand_balance": round_money(grand_amount - grand_allocated),
        },
    }


# ─── Allocation ──────────────────────────────────────────────────────────────

def _validate_items(items: List[AllocationItem]) -> float:
    if not items:
        raise ValidationError("At least one allocation is required")
    total = 0.0
    for item in items:
        if to_object_id(item.booking_id) is None:
            raise ValidationError("Invalid booking_id in allocations")
        total += positive_amount(item.amount, "Allocation amount")
    return round_money(total)


async def _target_bookings(receipt: Dict, items: List[AllocationItem]) -> Dict[str, Dict]:
    bookings: Dict[str, Dict] = {}
    for item in items:
        if item.booking_id in bookings:
            continue
        booking = await db_ops.get_by_id(Collections.BOOKINGS, item.booking_id)
        if not booking:
            raise NotFoundError("Booking", item.booking_id)
        label = booking.get("booking_number") or item.booking_id
        if str(booking.get("subdealer_id")) != str(receipt["subdealer_id"]):
            raise ValidationError(f"Booking {label} does not belong to this subdealer")
        if booking.get("booking_type") != SUBDEALER_BOOKING:
            raise ValidationError(f"Booking {label} is not a SUBDEALER booking")
        bookings[item.booking_id] = booking
    return bookings


def _allocation_entry(receipt: Dict, item: AllocationItem, actor: str) -> Dict:
    now = datetime.utcnow()
    return {
        "booking_id": item.booking_id,
        "entry_type": BOOKING_PAYMENT,
        "is_debit": False,
        "amount": round_money(item.amount),
        "payment_mode": ON_ACCOUNT_MODE,
        "cash_location_id": None,
        "bank_id": None,
        "sub_payment_mode": None,
        "transaction_reference": receipt["ref_number"],
        "remark": item.remark or f"On-Account allocation from Subdealer REF {receipt['ref_number']}",
        "debit_reason": None,
        "approval_status": APPROVED,
        "approved_by": actor,
        "approved_at": now,
        "received_by": actor,
        "receipt_date": now,
        "rejection_reason": None,
        "source": {
            "kind": SOURCE_ON_ACCOUNT,
            "receipt_id": str(receipt["_id"]),
            "subdealer_id": receipt["subdealer_id"],
            "payment_mode": receipt.get("payment_mode"),
            "ref_number": receipt["ref_number"],
        },
    }


async def _write_receipt(receipt: Dict, update_ops: Dict, session=None) -> Dict:
    update_ops.setdefault("$inc", {})["version"] = 1
    updated = await db_ops.update_where(
        Collections.ON_ACCOUNT_RECEIPTS,
        balance_tracker.version_filter(receipt),
        update_ops,
        session=session,
    )
    if updated is None:
        logger.warning("Version conflict writing on-account receipt %s", receipt["_id"])
        raise ConcurrencyError("Receipt", str(receipt["_id"]))
    return updated


def _closing_fields(status: str, actor: str) -> Dict:
    if status == CLOSED:
        return {"closed_at": datetime.utcnow(), "closed_by": actor}
    return {"closed_at": None, "closed_by": None}


async def allocate(receipt_id: str, items: List[AllocationItem], actor: str) -> Dict:
    require_id(receipt_id, "receipt")
    booking_ids = [item.booking_id for item in items or []]

    async with receipt_locks.hold(receipt_id), booking_locks.hold(*booking_ids):
        receipt = await get_receipt(receipt_id)
        if receipt.get("status") == CLOSED:
            raise InvalidStateError("Receipt is already CLOSED")

        requested = _validate_items(items)
        receipt_amount = to_amount(receipt.get("amount"))
        allocated_total = to_amount(receipt.get("allocated_total"))
        available = round_money(receipt_amount - allocated_total)
        if requested > available:
            logger.info("Allocation of %s refused on receipt %s: %s available", requested, receipt_id, available)
            raise InsufficientBalanceError(requested, available)

        bookings = await _target_bookings(receipt, items)

        new_allocations = []
        async with Saga("allocate") as saga:
            for item in items:
                entry = _allocation_entry(receipt, item, actor)
                created = await saga.step(
                    lambda s, entry=entry: db_ops.create(Collections.LEDGER_ENTRIES, entry, session=s),
                    compensate=discard_entry,
                    name="create_entry",
                )
                entry_id = str(created["_id"])
                before = bookings[item.booking_id]
                bookings[item.booking_id] = await saga.step(
                    lambda s, before=before, entry=entry, entry_id=entry_id: balance_tracker.apply_credit(
                        before, entry["amount"], entry_id=entry_id, session=s
                    ),
                    compensate=lambda after, before=before, entry_id=entry_id: balance_tracker.restore_balances(
                        before, after, entry_id=entry_id
                    ),
                    name="apply_credit",
                )
                new_allocations.append({
                    "_id": ObjectId(),
                    "booking_id": item.booking_id,
                    "amount": entry["amount"],
                    "ledger_entry_id": entry_id,
                    "remark": item.remark,
                    "allocated_at": datetime.utcnow(),
                    "allocated_by": actor,
                })
                allocated_total += entry["amount"]

            allocated_total = round_money(allocated_total)
            status = receipt_status(receipt_amount, allocated_total)
            updated = await saga.step(
                lambda s: _write_receipt(
                    receipt,
                    {
                        "$set": {"allocated_total": allocated_total, "status": status,
                                 **_closing_fields(status, actor)},
                        "$push": {"allocations": {"$each": new_allocations}},
                    },
                    session=s,
                ),
                name="update_receipt",
            )

    logger.info(
        "Receipt %s: allocated %s over %d booking(s) by %s, now %s",
        receipt_id, requested, len(items), actor, status,
    )
    return {
        "receipt": updated,
        "bookings": {
            booking_id: balance_tracker.snapshot_of(booking).model_dump()
            for booking_id, booking in bookings.items()
        },
    }


async def deallocate(receipt_id: str, allocation_id: str, actor: str) -> Dict:
    require_id(receipt_id, "receipt")
    require_id(allocation_id, "allocation")

    async with receipt_locks.hold(receipt_id):
        receipt = await get_receipt(receipt_id)
        if receipt.get("status") == CLOSED:
            raise InvalidStateError("Receipt is CLOSED; cannot deallocate")

        allocation = next(
            (a for a in receipt.get("allocations") or [] if str(a.get("_id")) == str(allocation_id)),
            None,
        )
        if allocation is None:
            raise NotFoundError("Allocation", allocation_id)

        booking_id = allocation["booking_id"]
        amount = to_amount(allocation.get("amount"))
        async with booking_locks.hold(booking_id):
            booking = await db_ops.get_by_id(Collections.BOOKINGS, booking_id)
            if not booking:
                raise NotFoundError("Booking", booking_id)
            entry_id = allocation.get("ledger_entry_id")
            entry = await db_ops.get_by_id(Collections.LEDGER_ENTRIES, entry_id) if entry_id else None

            allocated_total = round_money(max(0.0, to_amount(receipt.get("allocated_total")) - amount))
            status = receipt_status(to_amount(receipt.get("amount")), allocated_total)

            async with Saga("deallocate") as saga:
                updated_booking = await saga.step(
                    lambda s: balance_tracker.reverse_credit(booking, amount, entry_id=entry_id, session=s),
                    compensate=lambda after: balance_tracker.restore_balances(
                        booking, after, relink_entry_id=entry_id
                    ),
                    name="reverse_credit",
                )
                if entry:
                    await saga.step(
                        lambda s: db_ops.delete(Collections.LEDGER_ENTRIES, entry_id, session=s),
                        compensate=lambda _: db_ops.reinsert(Collections.LEDGER_ENTRIES, entry),
                        name="delete_entry",
                    )
                updated = await saga.step(
                    lambda s: _write_receipt(
                        receipt,
                        {
                            "$set": {"allocated_total": allocated_total, "status": status,
                                     **_closing_fields(status, actor)},
                            "$pull": {"allocations": {"_id": allocation["_id"]}},
                        },
                        session=s,
                    ),
                    name="update_receipt",
                )

    logger.info("Receipt %s: allocation %s (%s) reversed by %s, now %s", receipt_id, allocation_id, amount, actor, status)
    return {
        "receipt": updated,
        "booking": balance_tracker.snapshot_of(updated_booking).model_dump(),
    }
