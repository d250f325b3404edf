"""
Sub-dealer on-account receipt routes
"""
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, status, Depends, Query
from dealerledger.models.on_account import AllocationRequest, OnAccountReceiptCreate
from dealerledger.services import on_account_service
from dealerledger.utils.helpers import serialize_doc, serialize_docs
from dealerledger.utils.auth import get_current_user, actor_id

subdealer_router = APIRouter(prefix="/subdealers/{subdealer_id}/on-account", tags=["On-Account"])
router = APIRouter(prefix="/on-account/receipts", tags=["On-Account"])

@subdealer_router.post("/receipts", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_on_account_receipt(
    subdealer_id: str,
    receipt: OnAccountReceiptCreate,
    current_user: dict = Depends(get_current_user)
):
    """Register a pooled payment (UTR/REF unique per sub-dealer)"""
    created = await on_account_service.create_receipt(subdealer_id, receipt, actor_id(current_user))
    return serialize_doc(created)

@subdealer_router.get("/receipts", response_model=dict)
async def list_on_account_receipts(
    subdealer_id: str,
    status_filter: Optional[str] = Query(None, alias="status"),
    q: Optional[str] = None,
    date_from: Optional[datetime] = Query(None, alias="from"),
    date_to: Optional[datetime] = Query(None, alias="to"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    current_user: dict = Depends(get_current_user)
):
    result = await on_account_service.list_receipts(
        subdealer_id, status=status_filter, q=q, date_from=date_from, date_to=date_to,
        page=page, limit=limit,
    )
    result["receipts"] = serialize_docs(result["receipts"])
    return result

@subdealer_router.get("/summary", response_model=dict)
async def get_subdealer_on_account_summary(
    subdealer_id: str,
    current_user: dict = Depends(get_current_user)
):
    return await on_account_service.subdealer_summary(subdealer_id)

@router.get("/{receipt_id}", response_model=dict)
async def get_on_account_receipt(
    receipt_id: str,
    current_user: dict = Depends(get_current_user)
):
    receipt = await on_account_service.get_receipt(receipt_id)
    return serialize_doc(receipt)

@router.post("/{receipt_id}/allocate", response_model=dict)
async def allocate_on_account(
    receipt_id: str,
    request: AllocationRequest,
    current_user: dict = Depends(get_current_user)
):
    """Spread the receipt over sub-dealer bookings; all-or-nothing"""
    result = await on_account_service.allocate(receipt_id, request.allocations, actor_id(current_user))
    return serialize_doc(result)

@router.delete("/{receipt_id}/allocations/{allocation_id}", response_model=dict)
async def deallocate_allocation(
    receipt_id: str,
    allocation_id: str,
    current_user: dict = Depends(get_current_user)
):
    result = await on_account_service.deallocate(receipt_id, allocation_id, actor_id(current_user))
    return serialize_doc(result)
