"""
Ledger Service – records payments and debits against bookings and produces
the per-booking views (entries, debits, summary, running-balance report).
"""
import logging
import math
from datetime import datetime
from typing import Dict, List, Union

from dealerledger.config.database import Collections
from dealerledger.database.db_operations import db_ops, to_object_id
from dealerledger.models.booking import BookingCreate
from dealerledger.models.ledger import (
    AmendEntry,
    BANK_MODES,
    BankChannel,
    BankPayment,
    CashChannel,
    CashPayment,
    DebitEntryCreate,
)
from dealerledger.services import balance_tracker
from dealerledger.services.approval_workflow import (
    APPROVED,
    PENDING,
    REJECTED,
    discard_receipt,
    initial_approval,
    issue_receipt,
)
from dealerledger.services.exceptions import ConcurrencyError, InvalidStateError, NotFoundError, ValidationError
from dealerledger.services.locks import booking_locks
from dealerledger.services.saga import Saga
from dealerledger.services.vehicle_status import derive_vehicle_status
from dealerledger.utils.helpers import generate_booking_number, round_money, to_amount, to_local_date

logger = logging.getLogger(__name__)

BOOKING_PAYMENT = "BOOKING_PAYMENT"
DEBIT_ENTRY = "DEBIT_ENTRY"

SOURCE_DIRECT = "DIRECT"
SOURCE_ON_ACCOUNT = "ON_ACCOUNT"
SOURCE_COMMISSION = "COMMISSION"


# ─── Bookings ────────────────────────────────────────────────────────────────

def require_id(value: str, label: str) -> str:
    if to_object_id(value) is None:
        raise ValidationError(f"Invalid {label} ID format")
    return str(value)


def positive_amount(value, label: str = "Amount") -> float:
    """Amount as stored (rounded to paise); must stay above 0 after rounding"""
    amount = round_money(to_amount(value))
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError(f"{label} must be greater than 0")
    return amount


async def load_booking(booking_id: str, session=None) -> Dict:
    booking = await db_ops.get_by_id(Collections.BOOKINGS, booking_id, session=session)
    if not booking:
        raise NotFoundError("Booking", booking_id)
    return booking


async def create_booking(data: BookingCreate, actor: str) -> Dict:
    doc = data.model_dump()
    doc["booking_number"] = doc.get("booking_number") or generate_booking_number()
    doc.update({
        "received_amount": 0.0,
        "debit_total": 0.0,
        "balance_amount": round_money(data.discounted_amount),
        "vehicle_id": None,
        "ledger_entries": [],
        "receipts": [],
        "version": 0,
        "created_by": actor,
    })
    booking = await db_ops.create(Collections.BOOKINGS, doc)
    logger.info("Booking %s created (%s)", booking["booking_number"], booking["_id"])
    return booking


async def get_booking(booking_id: str) -> Dict:
    require_id(booking_id, "booking")
    return await load_booking(booking_id)


# ─── Recording ───────────────────────────────────────────────────────────────

async def channel_fields(channel: Union[CashChannel, BankChannel]) -> Dict:
    """Validate the channel reference and return the entry fields it sets"""
    if isinstance(channel, CashChannel):
        location = await db_ops.get_by_id(Collections.CASH_LOCATIONS, channel.cash_location)
        if not location:
            raise NotFoundError("Cash location", channel.cash_location)
        return {
            "payment_mode": "Cash",
            "cash_location_id": str(location["_id"]),
            "bank_id": None,
            "sub_payment_mode": None,
            "transaction_reference": None,
        }

    bank = await db_ops.get_by_id(Collections.BANKS, channel.bank)
    if not bank:
        raise NotFoundError("Bank", channel.bank)
    return {
        "payment_mode": channel.payment_mode,
        "cash_location_id": None,
        "bank_id": str(bank["_id"]),
        "sub_payment_mode": channel.sub_payment_mode,
        "transaction_reference": channel.transaction_reference,
    }


async def discard_entry(entry: Dict) -> None:
    """Compensation for a created ledger entry"""
    await db_ops.delete(Collections.LEDGER_ENTRIES, str(entry["_id"]))


async def record_payment(payment: Union[CashPayment, BankPayment], actor: str) -> Dict:
    booking_id = require_id(payment.booking_id, "booking")
    amount = positive_amount(payment.amount)

    async with booking_locks.hold(booking_id):
        booking = await load_booking(booking_id)
        entry = {
            "booking_id": booking_id,
            "entry_type": BOOKING_PAYMENT,
            "is_debit": False,
            "amount": amount,
            "remark": payment.remark,
            "debit_reason": None,
            "received_by": actor,
            "receipt_date": payment.receipt_date or datetime.utcnow(),
            "rejection_reason": None,
            "source": {"kind": SOURCE_DIRECT},
        }
        entry.update(await channel_fields(payment))
        balance_tracker.ensure_within_balance(booking, amount)
        entry.update(initial_approval(entry["payment_mode"], actor))
        effective = entry["approval_status"] == APPROVED

        receipt = None
        async with Saga("record_payment") as saga:
            created = await saga.step(
                lambda s: db_ops.create(Collections.LEDGER_ENTRIES, entry, session=s),
                compensate=discard_entry,
                name="create_entry",
            )
            entry_id = str(created["_id"])
            if effective:
                receipt = await saga.step(
                    lambda s: issue_receipt(created, actor, session=s),
                    compensate=discard_receipt,
                    name="issue_receipt",
                )
                updated = await saga.step(
                    lambda s: balance_tracker.apply_credit(
                        booking, amount, entry_id=entry_id, receipt_id=str(receipt["_id"]), session=s
                    ),
                    compensate=lambda after: balance_tracker.restore_balances(
                        booking, after, entry_id=entry_id, receipt_id=str(receipt["_id"])
                    ),
                    name="apply_credit",
                )
            else:
                updated = await saga.step(
                    lambda s: balance_tracker.attach_entry(booking, entry_id, session=s),
                    compensate=lambda after: balance_tracker.restore_balances(booking, after, entry_id=entry_id),
                    name="attach_entry",
                )

        vehicle = await derive_vehicle_status(updated) if effective else None

    logger.info(
        "%s payment of %s recorded on booking %s (%s)",
        created["payment_mode"], amount, booking_id, created["approval_status"],
    )
    return {
        "entry": created,
        "booking": balance_tracker.snapshot_of(updated).model_dump(),
        "receipt": receipt,
        "vehicle_status": vehicle,
    }


async def record_debit(debit: DebitEntryCreate, actor: str) -> Dict:
    booking_id = require_id(debit.booking_id, "booking")
    amount = positive_amount(debit.amount)

    async with booking_locks.hold(booking_id):
        booking = await load_booking(booking_id)
        entry = {
            "booking_id": booking_id,
            "entry_type": DEBIT_ENTRY,
            "is_debit": True,
            "amount": amount,
            "payment_mode": debit.debit_mode,
            "cash_location_id": None,
            "bank_id": None,
            "sub_payment_mode": None,
            "transaction_reference": None,
            "remark": debit.remark,
            "debit_reason": debit.debit_reason,
            "approval_status": APPROVED,
            "approved_by": actor,
            "approved_at": datetime.utcnow(),
            "received_by": actor,
            "receipt_date": datetime.utcnow(),
            "rejection_reason": None,
            "source": {"kind": SOURCE_DIRECT},
        }

        async with Saga("record_debit") as saga:
            created = await saga.step(
                lambda s: db_ops.create(Collections.LEDGER_ENTRIES, entry, session=s),
                compensate=discard_entry,
                name="create_entry",
            )
            entry_id = str(created["_id"])
            updated = await saga.step(
                lambda s: balance_tracker.apply_debit(booking, amount, entry_id=entry_id, session=s),
                compensate=lambda after: balance_tracker.restore_balances(booking, after, entry_id=entry_id),
                name="apply_debit",
            )

    logger.info("Debit of %s (%s) added to booking %s by %s", amount, debit.debit_reason, booking_id, actor)
    return {"entry": created, "booking": balance_tracker.snapshot_of(updated).model_dump()}


# ─── Amendments ──────────────────────────────────────────────────────────────

async def amend_entry(entry_id: str, changes: AmendEntry, actor: str) -> Dict:
    require_id(entry_id, "ledger entry")
    entry = await db_ops.get_by_id(Collections.LEDGER_ENTRIES, entry_id)
    if not entry:
        raise NotFoundError("Ledger entry", entry_id)

    kind = (entry.get("source") or {}).get("kind", SOURCE_DIRECT)
    if kind != SOURCE_DIRECT or not entry.get("booking_id"):
        raise InvalidStateError("On-account and commission entries cannot be amended")

    booking_id = entry["booking_id"]
    async with booking_locks.hold(booking_id):
        # approval may have happened while waiting for the lock
        entry = await db_ops.get_by_id(Collections.LEDGER_ENTRIES, entry_id)
        if not entry:
            raise NotFoundError("Ledger entry", entry_id)
        status = entry.get("approval_status")
        if status == REJECTED:
            raise InvalidStateError("Rejected entries cannot be amended")

        updates: Dict = {}
        if entry.get("is_debit"):
            if changes.channel is not None:
                raise ValidationError("Debit entries have no payment channel")
            if changes.debit_reason is not None:
                if not changes.debit_reason.strip():
                    raise ValidationError("Debit reason cannot be empty")
                updates["debit_reason"] = changes.debit_reason.strip()
        else:
            if changes.debit_reason is not None:
                raise ValidationError("Only debit entries carry a debit reason")
            if changes.channel is not None:
                if (changes.channel.payment_mode == "Cash") != (entry.get("payment_mode") == "Cash"):
                    raise ValidationError("Payment mode cannot change between cash and non-cash channels")
                updates.update(await channel_fields(changes.channel))
        if changes.remark is not None:
            updates["remark"] = changes.remark
        if changes.receipt_date is not None:
            updates["receipt_date"] = changes.receipt_date

        old_amount = to_amount(entry.get("amount"))
        delta = 0.0
        if changes.amount is not None:
            updates["amount"] = positive_amount(changes.amount)
            delta = round_money(updates["amount"] - old_amount)

        if not updates:
            raise ValidationError("No changes supplied")
        updates["amended_by"] = actor
        updates["amended_at"] = datetime.utcnow()
        previous = {key: entry.get(key) for key in updates}

        booking = await load_booking(booking_id)
        affects_balance = status == APPROVED and delta != 0
        if affects_balance and not entry.get("is_debit") and delta > 0:
            balance_tracker.ensure_within_balance(booking, delta)

        async def update_entry(session):
            # only while the entry still has the status the balance decision was made on
            amended = await db_ops.update_where(
                Collections.LEDGER_ENTRIES,
                {"_id": entry["_id"], "approval_status": status},
                {"$set": dict(updates)},
                session=session,
            )
            if amended is None:
                raise ConcurrencyError("Ledger entry", entry_id)
            return amended

        updated_booking = booking
        async with Saga("amend_entry") as saga:
            amended = await saga.step(
                update_entry,
                compensate=lambda _: db_ops.update(Collections.LEDGER_ENTRIES, entry_id, dict(previous)),
                name="update_entry",
            )
            if affects_balance:
                credit_delta, debit_delta = (0.0, delta) if entry.get("is_debit") else (delta, 0.0)
                updated_booking = await saga.step(
                    lambda s: balance_tracker.apply_delta(
                        booking, credit_delta=credit_delta, debit_delta=debit_delta, session=s
                    ),
                    compensate=lambda after: balance_tracker.restore_balances(booking, after),
                    name="apply_delta",
                )
                if not entry.get("is_debit"):
                    await saga.step(
                        lambda s: db_ops.update_where(
                            Collections.RECEIPTS,
                            {"ledger_entry_id": entry_id},
                            {"$set": {"amount": updates["amount"]}},
                            session=s,
                        ),
                        name="update_receipt",
                    )

    logger.info("Ledger entry %s amended by %s (amount delta %s)", entry_id, actor, delta)
    return {"entry": amended, "booking": balance_tracker.snapshot_of(updated_booking).model_dump()}


# ─── Views ───────────────────────────────────────────────────────────────────

def _totals(entries: List[Dict]) -> Dict:
    credits = [e for e in entries if not e.get("is_debit")]
    debits = [e for e in entries if e.get("is_debit")]

    def total(items, status=None):
        return round_money(sum(
            to_amount(e.get("amount")) for e in items
            if status is None or e.get("approval_status") == status
        ))

    return {
        "approved_credit": total(credits, APPROVED),
        "pending_credit": total(credits, PENDING),
        "rejected_credit": total(credits, REJECTED),
        "approved_debit": total(debits, APPROVED),
        "count": len(entries),
    }


async def list_booking_entries(booking_id: str) -> Dict:
    require_id(booking_id, "booking")
    booking = await load_booking(booking_id)
    entries = await balance_tracker.booking_entries(booking_id)
    fold = balance_tracker.fold_entries(booking.get("discounted_amount"), entries)
    return {
        "entries": list(reversed(entries)),
        "totals": _totals(entries),
        "balance": fold.model_dump(),
    }


async def list_booking_debits(booking_id: str) -> Dict:
    require_id(booking_id, "booking")
    await load_booking(booking_id)
    entries = await balance_tracker.booking_entries(booking_id)
    debits = [e for e in entries if e.get("is_debit")]
    return {
        "debits": list(reversed(debits)),
        "total_debit": _totals(debits)["approved_debit"],
        "count": len(debits),
    }


async def booking_summary(booking_id: str) -> Dict:
    require_id(booking_id, "booking")
    booking = await load_booking(booking_id)
    entries = await balance_tracker.booking_entries(booking_id)
    fold = balance_tracker.fold_entries(booking.get("discounted_amount"), entries)
    return {
        "booking_id": str(booking["_id"]),
        "booking_number": booking.get("booking_number"),
        "discounted_amount": round_money(to_amount(booking.get("discounted_amount"))),
        **fold.model_dump(),
        "totals": _totals(entries),
        "vehicle_id": booking.get("vehicle_id"),
    }


async def _names(collection: str, ids: set) -> Dict[str, str]:
    names = {}
    for doc_id in ids:
        doc = await db_ops.get_by_id(collection, doc_id)
        if doc:
            names[doc_id] = doc.get("name")
    return names


def _describe(entry: Dict, banks: Dict[str, str], locations: Dict[str, str]) -> str:
    mode = entry.get("payment_mode")
    source = entry.get("source") or {}
    if entry.get("is_debit"):
        return f"Debit - {entry.get('debit_reason') or mode or 'N/A'}"
    if source.get("kind") == SOURCE_ON_ACCOUNT:
        return f"On-Account Allocation - {source.get('ref_number') or 'N/A'}"
    if mode == "Cash":
        return f"Cash Payment - {locations.get(entry.get('cash_location_id')) or 'N/A'}"
    if mode in BANK_MODES:
        return f"{mode} - {banks.get(entry.get('bank_id')) or 'N/A'} (Ref: {entry.get('transaction_reference') or 'N/A'})"
    return f"{mode} Payment"


async def ledger_report(booking_id: str) -> Dict:
    """Running-balance statement: the sale first, then every Approved entry"""
    require_id(booking_id, "booking")
    booking = await load_booking(booking_id)
    entries = [
        e for e in await balance_tracker.booking_entries(booking_id)
        if e.get("approval_status") == APPROVED
    ]
    banks = await _names(Collections.BANKS, {e["bank_id"] for e in entries if e.get("bank_id")})
    locations = await _names(
        Collections.CASH_LOCATIONS, {e["cash_location_id"] for e in entries if e.get("cash_location_id")}
    )

    balance = round_money(to_amount(booking.get("discounted_amount")))
    rows = [{
        "date": to_local_date(booking.get("created_at")),
        "description": "SALES PRICE AGAINST BOOKING",
        "receipt_no": booking.get("booking_number"),
        "credit": 0.0,
        "debit": balance,
        "balance": balance,
    }]
    total_credit = 0.0
    total_debit = balance
    for entry in entries:
        amount = round_money(to_amount(entry.get("amount")))
        if entry.get("is_debit"):
            balance = round_money(balance + amount)
            total_debit += amount
            credit, debit = 0.0, amount
        else:
            balance = round_money(balance - amount)
            total_credit += amount
            credit, debit = amount, 0.0
        rows.append({
            "date": to_local_date(entry.get("receipt_date") or entry.get("created_at")),
            "description": _describe(entry, banks, locations),
            "receipt_no": str(entry["_id"])[-6:].upper(),
            "credit": credit,
            "debit": debit,
            "balance": balance,
        })

    return {
        "booking": {
            "booking_id": str(booking["_id"]),
            "booking_number": booking.get("booking_number"),
            "chassis_number": booking.get("chassis_number") or "N/A",
            "engine_number": booking.get("engine_number") or "N/A",
            "discounted_amount": round_money(to_amount(booking.get("discounted_amount"))),
        },
        "entries": rows,
        "summary": {
            "total_credit": round_money(total_credit),
            "total_debit": round_money(total_debit),
            "final_balance": balance,
        },
    }
