"""
Booking balance tracker.

Ledger entries are the source of truth; the booking document caches the fold
of its Approved entries:

    balance_amount = discounted_amount - received_amount + debit_total

Every cached write is conditioned on the booking's ``version`` so a writer
holding a stale copy fails with ``ConcurrencyError`` instead of overwriting.
"""
import logging
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from dealerledger.config.database import Collections
from dealerledger.database.db_operations import db_ops, to_object_id
from dealerledger.services.exceptions import (
    BalanceExceededError,
    ConcurrencyError,
    NotFoundError,
    ValidationError,
)
from dealerledger.utils.helpers import round_money, to_amount

logger = logging.getLogger(__name__)

APPROVED = "Approved"


class BalanceSnapshot(BaseModel):
    received_amount: float = 0.0
    debit_total: float = 0.0
    balance_amount: float = 0.0


def fold_entries(discounted_amount: float, entries: Iterable[Dict]) -> BalanceSnapshot:
    """Recompute booking balances from its ledger entries.

    Only Approved entries that belong to a booking count; credits add to the
    received amount and debits to the debit total.
    """
    received = 0.0
    debits = 0.0
    for entry in entries:
        if entry.get("approval_status") != APPROVED or not entry.get("booking_id"):
            continue
        if entry.get("is_debit"):
            debits += to_amount(entry.get("amount"))
        else:
            received += to_amount(entry.get("amount"))
    discounted = to_amount(discounted_amount)
    return BalanceSnapshot(
        received_amount=round_money(received),
        debit_total=round_money(debits),
        balance_amount=round_money(discounted - received + debits),
    )


def snapshot_of(booking: Dict) -> BalanceSnapshot:
    """The cached balances as stored on the booking"""
    return BalanceSnapshot(
        received_amount=round_money(to_amount(booking.get("received_amount"))),
        debit_total=round_money(to_amount(booking.get("debit_total"))),
        balance_amount=round_money(to_amount(booking.get("balance_amount"))),
    )


def ensure_within_balance(booking: Dict, amount: float) -> None:
    balance = round_money(to_amount(booking.get("balance_amount")))
    if amount > balance:
        logger.info(
            "Payment of %s rejected for booking %s: balance is %s",
            amount, booking.get("_id"), balance,
        )
        raise BalanceExceededError(amount, balance)


def version_filter(doc: Dict) -> Dict:
    """Match the document only while it still has the version we read"""
    version = doc.get("version")
    if version is None:
        return {"_id": doc["_id"], "version": {"$exists": False}}
    return {"_id": doc["_id"], "version": version}


async def _write_balances(booking: Dict, received: float, debit_total: float,
                          push: Optional[Dict] = None, pull: Optional[Dict] = None,
                          session=None) -> Dict:
    discounted = to_amount(booking.get("discounted_amount"))
    update_ops: Dict = {
        "$set": {
            "received_amount": round_money(received),
            "debit_total": round_money(debit_total),
            "balance_amount": round_money(discounted - received + debit_total),
        },
        "$inc": {"version": 1},
    }
    if push:
        update_ops["$push"] = push
    if pull:
        update_ops["$pull"] = pull

    updated = await db_ops.update_where(
        Collections.BOOKINGS, version_filter(booking), update_ops, session=session
    )
    if updated is None:
        logger.warning("Version conflict writing balances of booking %s", booking.get("_id"))
        raise ConcurrencyError("Booking", str(booking.get("_id")))
    return updated


def _refs(entry_id: Optional[str], receipt_id: Optional[str]) -> Dict:
    refs = {}
    if entry_id:
        refs["ledger_entries"] = str(entry_id)
    if receipt_id:
        refs["receipts"] = str(receipt_id)
    return refs


async def apply_credit(booking: Dict, amount: float, entry_id: Optional[str] = None,
                       receipt_id: Optional[str] = None, session=None) -> Dict:
    """received_amount += amount; no overpayment check here (see ensure_within_balance)"""
    return await _write_balances(
        booking,
        to_amount(booking.get("received_amount")) + amount,
        to_amount(booking.get("debit_total")),
        push=_refs(entry_id, receipt_id),
        session=session,
    )


async def apply_debit(booking: Dict, amount: float, entry_id: Optional[str] = None,
                      session=None) -> Dict:
    return await _write_balances(
        booking,
        to_amount(booking.get("received_amount")),
        to_amount(booking.get("debit_total")) + amount,
        push=_refs(entry_id, None),
        session=session,
    )


async def apply_delta(booking: Dict, credit_delta: float = 0.0, debit_delta: float = 0.0,
                      session=None) -> Dict:
    """Correct the cached balances after an Approved entry was amended"""
    return await _write_balances(
        booking,
        to_amount(booking.get("received_amount")) + credit_delta,
        to_amount(booking.get("debit_total")) + debit_delta,
        session=session,
    )


async def reverse_credit(booking: Dict, amount: float, entry_id: Optional[str] = None,
                         session=None) -> Dict:
    """Undo a credit; received_amount never goes below 0"""
    received = max(0.0, to_amount(booking.get("received_amount")) - amount)
    return await _write_balances(
        booking,
        received,
        to_amount(booking.get("debit_total")),
        pull=_refs(entry_id, None),
        session=session,
    )


async def attach_entry(booking: Dict, entry_id: str, session=None) -> Dict:
    """Reference a Pending entry from the booking without touching balances"""
    return await _write_balances(
        booking,
        to_amount(booking.get("received_amount")),
        to_amount(booking.get("debit_total")),
        push=_refs(entry_id, None),
        session=session,
    )


async def restore_balances(before: Dict, after: Dict, entry_id: Optional[str] = None,
                           receipt_id: Optional[str] = None, relink_entry_id: Optional[str] = None,
                           session=None) -> Dict:
    """Compensation: put ``before``'s balances back onto the booking now at ``after``.

    ``entry_id``/``receipt_id`` are unlinked, ``relink_entry_id`` is linked again.
    """
    restored = dict(after)
    restored["discounted_amount"] = before.get("discounted_amount")
    return await _write_balances(
        restored,
        to_amount(before.get("received_amount")),
        to_amount(before.get("debit_total")),
        pull=_refs(entry_id, receipt_id),
        push=_refs(relink_entry_id, None),
        session=session,
    )


async def booking_entries(booking_id: str, session=None) -> List[Dict]:
    return await db_ops.find_all(
        Collections.LEDGER_ENTRIES,
        {"booking_id": str(booking_id)},
        sort=[("created_at", 1)],
        session=session,
    )


async def reconcile_booking(booking_id: str, repair: bool = False) -> Dict:
    """Compare the cached balances with a fresh fold of the entries.

    Drift is reported (and logged); with ``repair`` the folded values are
    written back under the usual version check.
    """
    if to_object_id(booking_id) is None:
        raise ValidationError("Invalid booking ID format")
    booking = await db_ops.get_by_id(Collections.BOOKINGS, booking_id)
    if not booking:
        raise NotFoundError("Booking", booking_id)

    entries = await booking_entries(booking_id)
    computed = fold_entries(booking.get("discounted_amount"), entries)
    cached = snapshot_of(booking)
    drift = {
        field: round_money(getattr(cached, field) - getattr(computed, field))
        for field in ("received_amount", "debit_total", "balance_amount")
    }
    in_sync = all(value == 0 for value in drift.values())

    repaired = False
    if not in_sync:
        logger.warning("Balance drift on booking %s: %s", booking_id, drift)
        if repair:
            await _write_balances(booking, computed.received_amount, computed.debit_total)
            repaired = True
            logger.info("Booking %s balances rewritten from %d entries", booking_id, len(entries))

    return {
        "booking_id": str(booking["_id"]),
        "entries_counted": len(entries),
        "cached": cached.model_dump(),
        "computed": computed.model_dump(),
        "drift": drift,
        "in_sync": in_sync,
        "repaired": repaired,
    }
