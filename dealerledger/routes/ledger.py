"""
Ledger routes - payments, debits, amendments and per-booking views
"""
from fastapi import APIRouter, status, Depends, Query
from dealerledger.models.ledger import AmendEntry, DebitEntryCreate, PaymentCreate
from dealerledger.services import balance_tracker, ledger_service
from dealerledger.utils.helpers import serialize_doc
from dealerledger.utils.auth import get_current_user, actor_id

router = APIRouter(prefix="/ledger", tags=["Ledger"])

@router.post("/payments", response_model=dict, status_code=status.HTTP_201_CREATED)
async def record_payment(
    payment: PaymentCreate,
    current_user: dict = Depends(get_current_user)
):
    """
    Record a payment against a booking.

    Cash is approved on the spot (receipt issued, balance updated); other
    modes stay Pending until approved.
    """
    result = await ledger_service.record_payment(payment, actor_id(current_user))
    return serialize_doc(result)

@router.post("/debits", response_model=dict, status_code=status.HTTP_201_CREATED)
async def record_debit(
    debit: DebitEntryCreate,
    current_user: dict = Depends(get_current_user)
):
    """Add a debit (penalty, cheque bounce ...) to a booking"""
    result = await ledger_service.record_debit(debit, actor_id(current_user))
    return serialize_doc(result)

@router.patch("/entries/{entry_id}", response_model=dict)
async def amend_entry(
    entry_id: str,
    changes: AmendEntry,
    current_user: dict = Depends(get_current_user)
):
    result = await ledger_service.amend_entry(entry_id, changes, actor_id(current_user))
    return serialize_doc(result)

@router.get("/bookings/{booking_id}/entries", response_model=dict)
async def get_booking_entries(
    booking_id: str,
    current_user: dict = Depends(get_current_user)
):
    result = await ledger_service.list_booking_entries(booking_id)
    return serialize_doc(result)

@router.get("/bookings/{booking_id}/debits", response_model=dict)
async def get_booking_debits(
    booking_id: str,
    current_user: dict = Depends(get_current_user)
):
    result = await ledger_service.list_booking_debits(booking_id)
    return serialize_doc(result)

@router.get("/bookings/{booking_id}/summary", response_model=dict)
async def get_booking_summary(
    booking_id: str,
    current_user: dict = Depends(get_current_user)
):
    result = await ledger_service.booking_summary(booking_id)
    return serialize_doc(result)

@router.get("/bookings/{booking_id}/report", response_model=dict)
async def get_ledger_report(
    booking_id: str,
    current_user: dict = Depends(get_current_user)
):
    """Running-balance statement of the booking"""
    return await ledger_service.ledger_report(booking_id)

@router.get("/bookings/{booking_id}/reconcile", response_model=dict)
async def reconcile_booking(
    booking_id: str,
    repair: bool = Query(False),
    current_user: dict = Depends(get_current_user)
):
    """Recompute balances from the entries and report (optionally repair) drift"""
    return await balance_tracker.reconcile_booking(booking_id, repair=repair)
