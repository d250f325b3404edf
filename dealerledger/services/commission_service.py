"""
Commission Service – monthly commission of a sub-dealer and its settlement.

Rates come from the sub-dealer's commission master for the booked model; the
commission of a booking is the sum over its price components of
``base × rate / 100``.
"""
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from dealerledger.config.database import Collections
from dealerledger.database.db_operations import db_ops, to_object_id
from dealerledger.models.commission import PAYMENT_METHODS, CommissionPaymentCreate
from dealerledger.models.on_account import OnAccountReceiptCreate
from dealerledger.services.approval_workflow import APPROVED, REJECTED, initial_approval
from dealerledger.services.exceptions import DuplicateError, InvalidStateError, NotFoundError, ValidationError
from dealerledger.services.ledger_service import SOURCE_COMMISSION, discard_entry, require_id
from dealerledger.services.locks import commission_locks
from dealerledger.services import on_account_service
from dealerledger.services.saga import Saga
from dealerledger.utils.helpers import paginate, round_money, to_amount

logger = logging.getLogger(__name__)

ON_ACCOUNT = "ON_ACCOUNT"
PENDING = "PENDING"
PAID = "PAID"
FAILED = "FAILED"

COMMISSION_PAYMENT = "COMMISSION_PAYMENT"
COMMISSIONABLE_STATUSES = ["APPROVED", "COMPLETED"]


# ─── Calculation helpers ──────────────────────────────────────────────────────

def select_applicable_rate(rates: List[Dict], header_id: Optional[str], on_date: datetime) -> Optional[Dict]:
    """Active rate for the header whose validity range contains ``on_date``.

    When several match, the one with the latest ``applicable_from`` wins.
    """
    if not header_id:
        return None
    matching = []
    for rate in rates or []:
        if str(rate.get("header_id")) != str(header_id) or not rate.get("is_active", True):
            continue
        applicable_from = rate.get("applicable_from") or datetime.min
        applicable_to = rate.get("applicable_to")
        if on_date < applicable_from:
            continue
        if applicable_to is not None and on_date > applicable_to:
            continue
        matching.append(rate)
    if not matching:
        return None
    return max(matching, key=lambda r: r.get("applicable_from") or datetime.min)


def component_commission(component: Dict, rate: Optional[Dict]) -> Dict:
    base = to_amount(component.get("discounted_value")) or to_amount(component.get("original_value"))
    percent = to_amount(rate.get("commission_rate")) if rate else 0.0
    return {
        "header_id": component.get("header_id"),
        "header_key": component.get("header_key"),
        "base": base,
        "rate": percent,
        "commission": round_money(base * percent / 100),
        "applicable_from": rate.get("applicable_from") if rate else None,
        "applicable_to": rate.get("applicable_to") if rate else None,
    }


def month_window(month: int, year: int) -> tuple[datetime, datetime]:
    start = datetime(year, month, 1)
    end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
    return start, end


async def calculate_monthly_commission(subdealer_id: str, month: int, year: int) -> Dict[str, Any]:
    require_id(subdealer_id, "subdealer")
    if not 1 <= int(month) <= 12:
        raise ValidationError("Month must be between 1 and 12")

    start, end = month_window(int(month), int(year))
    bookings = await db_ops.find_all(
        Collections.BOOKINGS,
        {
            "subdealer_id": subdealer_id,
            "status": {"$in": COMMISSIONABLE_STATUSES},
            "created_at": {"$gte": start, "$lt": end},
        },
        sort=[("created_at", 1)],
    )

    masters: Dict[str, Optional[Dict]] = {}
    total = 0.0
    booking_commissions = []
    for booking in bookings:
        model_id = booking.get("model_id")
        if model_id not in masters:
            masters[model_id] = await db_ops.get_one(
                Collections.COMMISSION_MASTERS, {"subdealer_id": subdealer_id, "model_id": model_id}
            )
        master = masters[model_id]

        breakdown = []
        if master:
            for component in booking.get("price_components") or []:
                rate = select_applicable_rate(
                    master.get("commission_rates"), component.get("header_id"), booking["created_at"]
                )
                breakdown.append(component_commission(component, rate))

        booking_total = round_money(sum(line["commission"] for line in breakdown))
        total += booking_total
        booking_commissions.append({
            "booking_id": str(booking["_id"]),
            "booking_number": booking.get("booking_number"),
            "model_id": model_id,
            "booking_date": booking.get("created_at"),
            "total_amount": to_amount(booking.get("discounted_amount")),
            "commission_breakdown": breakdown,
            "total_commission": booking_total,
        })

    return {
        "subdealer_id": subdealer_id,
        "month": int(month),
        "year": int(year),
        "total_commission": round_money(total),
        "booking_commissions": booking_commissions,
    }


# ─── Settlement ───────────────────────────────────────────────────────────────

async def _existing_settlement(subdealer_id: str, month: int, year: int,
                               exclude_id: Optional[Any] = None) -> Optional[Dict]:
    query: Dict = {
        "subdealer_id": subdealer_id,
        "month": month,
        "year": year,
        "status": {"$in": [PENDING, PAID]},
    }
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    return await db_ops.get_one(Collections.COMMISSION_PAYMENTS, query)


def period_key(subdealer_id: str, month: int, year: int) -> str:
    """Set on live (PENDING/PAID) settlements only; unique across the collection"""
    return f"{subdealer_id}:{year}:{month}"


async def _insert_payment(payment: Dict, session=None) -> Dict:
    try:
        return await db_ops.create(Collections.COMMISSION_PAYMENTS, payment, session=session)
    except DuplicateKeyError:
        # another process settled the same period first
        raise DuplicateError(
            f"Commission payment for {payment['month']}/{payment['year']} already exists for this subdealer"
        )


async def _write_status(payment_id: str, changes: Dict, live_key: Optional[str], session=None) -> Dict:
    update_ops: Dict = {"$set": dict(changes)}
    if live_key:
        update_ops["$set"]["period_key"] = live_key
    else:
        update_ops["$unset"] = {"period_key": ""}
    try:
        updated = await db_ops.update_where(
            Collections.COMMISSION_PAYMENTS, {"_id": to_object_id(payment_id)}, update_ops, session=session
        )
    except DuplicateKeyError:
        raise DuplicateError("Another settlement for this period is already pending or paid")
    if updated is None:
        raise NotFoundError("Commission payment", payment_id)
    return updated


async def _discard_payment(payment: Dict) -> None:
    await db_ops.delete(Collections.COMMISSION_PAYMENTS, str(payment["_id"]))


async def process_commission_payment(data: CommissionPaymentCreate, actor: str) -> Dict:
    subdealer_id = require_id(data.subdealer_id, "subdealer")
    month, year = int(data.month), int(data.year)
    if not 1 <= month <= 12:
        raise ValidationError("Month must be between 1 and 12")
    if data.payment_method not in PAYMENT_METHODS:
        raise ValidationError("Invalid payment method")
    if data.payment_method != ON_ACCOUNT and not (data.transaction_reference or "").strip():
        raise ValidationError("Transaction reference is required for this payment method")

    subdealer = await db_ops.get_by_id(Collections.SUBDEALERS, subdealer_id)
    if not subdealer:
        raise NotFoundError("Subdealer", subdealer_id)

    key = period_key(subdealer_id, month, year)
    async with commission_locks.hold(key):
        if await _existing_settlement(subdealer_id, month, year):
            raise DuplicateError(f"Commission payment for {month}/{year} already exists for this subdealer")

        report = await calculate_monthly_commission(subdealer_id, month, year)
        total = report["total_commission"]
        if total <= 0:
            raise ValidationError(f"No commission available for {month}/{year}")

        on_account = data.payment_method == ON_ACCOUNT
        payment = {
            "subdealer_id": subdealer_id,
            "month": month,
            "year": year,
            "total_commission": total,
            "payment_method": data.payment_method,
            "transaction_reference": None if on_account else data.transaction_reference.strip(),
            "on_account_receipt_id": None,
            "ledger_entry_id": None,
            "status": PAID if on_account else PENDING,
            "remarks": data.remarks,
            "booking_commissions": report["booking_commissions"],
            "created_by": actor,
            "period_key": key,
        }

        async with Saga("process_commission_payment") as saga:
            if on_account:
                receipt = await saga.step(
                    lambda s: on_account_service.create_receipt(
                        subdealer_id,
                        OnAccountReceiptCreate(
                            ref_number=f"COMM-{subdealer_id}-{month}-{year}-{int(time.time() * 1000)}",
                            amount=total,
                            payment_mode=on_account_service.ON_ACCOUNT_MODE,
                            remark=f"Commission payment for {month}/{year} - {data.remarks or ''}",
                        ),
                        actor,
                        session=s,
                    ),
                    compensate=on_account_service.discard_receipt,
                    name="create_on_account_receipt",
                )
                payment["on_account_receipt_id"] = str(receipt["_id"])

            created = await saga.step(
                lambda s: _insert_payment(payment, session=s),
                compensate=_discard_payment,
                name="create_payment",
            )

            if not on_account:
                entry = {
                    "booking_id": None,
                    "entry_type": COMMISSION_PAYMENT,
                    "is_debit": True,
                    "amount": total,
                    "payment_mode": data.payment_method,
                    "cash_location_id": None,
                    "bank_id": None,
                    "sub_payment_mode": None,
                    "transaction_reference": payment["transaction_reference"],
                    "remark": f"Commission payment for {subdealer.get('name') or subdealer_id} - {month}/{year}",
                    "debit_reason": None,
                    "received_by": actor,
                    "receipt_date": datetime.utcnow(),
                    "rejection_reason": None,
                    "source": {
                        "kind": SOURCE_COMMISSION,
                        "commission_payment_id": str(created["_id"]),
                        "subdealer_id": subdealer_id,
                    },
                    **initial_approval(data.payment_method, actor),
                }
                ledger_entry = await saga.step(
                    lambda s: db_ops.create(Collections.LEDGER_ENTRIES, entry, session=s),
                    compensate=discard_entry,
                    name="create_entry",
                )
                created = await saga.step(
                    lambda s: db_ops.update(
                        Collections.COMMISSION_PAYMENTS,
                        str(created["_id"]),
                        {"ledger_entry_id": str(ledger_entry["_id"])},
                        session=s,
                    ),
                    name="link_entry",
                )

    logger.info(
        "Commission %s for subdealer %s %s/%s settled via %s (%s)",
        total, subdealer_id, month, year, data.payment_method, created["status"],
    )
    return created


async def get_commission_payment(payment_id: str) -> Dict:
    require_id(payment_id, "commission payment")
    payment = await db_ops.get_by_id(Collections.COMMISSION_PAYMENTS, payment_id)
    if not payment:
        raise NotFoundError("Commission payment", payment_id)
    return payment


async def update_payment_status(payment_id: str, status: str, remarks: Optional[str], actor: str) -> Dict:
    if status not in (PAID, FAILED):
        raise ValidationError("Status must be PAID or FAILED")
    payment = await get_commission_payment(payment_id)
    if payment.get("status") == PAID:
        raise InvalidStateError("Commission payment is already PAID")

    key = period_key(payment["subdealer_id"], payment["month"], payment["year"])
    async with commission_locks.hold(key):
        if status == PAID and payment.get("status") == FAILED:
            # a FAILED settlement may have been replaced meanwhile
            if await _existing_settlement(payment["subdealer_id"], payment["month"], payment["year"],
                                          exclude_id=payment["_id"]):
                raise DuplicateError("Another settlement for this period is already pending or paid")

        changes = {"status": status, "updated_by": actor}
        if remarks is not None:
            changes["remarks"] = remarks
        previous = {"status": payment.get("status"), "updated_by": payment.get("updated_by"),
                    "remarks": payment.get("remarks")}
        previous_key = key if payment.get("status") in (PENDING, PAID) else None

        entry_id = payment.get("ledger_entry_id")
        async with Saga("update_commission_status") as saga:
            updated = await saga.step(
                lambda s: _write_status(payment_id, changes, key if status == PAID else None, session=s),
                compensate=lambda _: _write_status(payment_id, previous, previous_key),
                name="update_payment",
            )
            if entry_id:
                entry_changes = {
                    "approval_status": APPROVED if status == PAID else REJECTED,
                    "approved_by": actor,
                    "approved_at": datetime.utcnow(),
                }
                if status == FAILED:
                    entry_changes["rejection_reason"] = remarks or "Commission payment failed"
                await saga.step(
                    lambda s: db_ops.update(Collections.LEDGER_ENTRIES, entry_id, entry_changes, session=s),
                    name="update_entry",
                )

    logger.info("Commission payment %s marked %s by %s", payment_id, status, actor)
    return updated


async def list_commission_payments(subdealer_id: Optional[str] = None, month: Optional[int] = None,
                                   year: Optional[int] = None, status: Optional[str] = None,
                                   payment_method: Optional[str] = None, page: int = 1,
                                   limit: int = 50) -> Dict:
    query: Dict = {}
    if subdealer_id:
        query["subdealer_id"] = subdealer_id
    if month:
        query["month"] = int(month)
    if year:
        query["year"] = int(year)
    if status:
        query["status"] = status
    if payment_method:
        query["payment_method"] = payment_method

    skip, limit = paginate(page, limit)
    payments = await db_ops.get_all(
        Collections.COMMISSION_PAYMENTS, query, skip=skip, limit=limit,
        sort=[("year", -1), ("month", -1), ("created_at", -1)],
    )
    total = await db_ops.count(Collections.COMMISSION_PAYMENTS, query)
    return {
        "payments": payments,
        "total": total,
        "page": skip // limit + 1,
        "limit": limit,
        "pages": (total + limit - 1) // limit,
    }
