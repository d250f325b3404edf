"""
Commission payment routes
"""
from typing import Optional
from fastapi import APIRouter, status, Depends, Query
from dealerledger.models.commission import CommissionPaymentCreate, CommissionStatusUpdate
from dealerledger.services import commission_service
from dealerledger.utils.helpers import serialize_doc, serialize_docs
from dealerledger.utils.auth import get_current_user, actor_id

router = APIRouter(prefix="/commission-payments", tags=["Commission Payments"])

@router.get("/calculate", response_model=dict)
async def calculate_commission(
    subdealer_id: str,
    month: int,
    year: int,
    current_user: dict = Depends(get_current_user)
):
    """Preview of a sub-dealer's commission for the month"""
    report = await commission_service.calculate_monthly_commission(subdealer_id, month, year)
    return serialize_doc(report)

@router.post("/", response_model=dict, status_code=status.HTTP_201_CREATED)
async def process_commission_payment(
    payment: CommissionPaymentCreate,
    current_user: dict = Depends(get_current_user)
):
    created = await commission_service.process_commission_payment(payment, actor_id(current_user))
    return serialize_doc(created)

@router.get("/", response_model=dict)
async def get_commission_payments(
    subdealer_id: Optional[str] = None,
    month: Optional[int] = None,
    year: Optional[int] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    payment_method: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
    current_user: dict = Depends(get_current_user)
):
    result = await commission_service.list_commission_payments(
        subdealer_id=subdealer_id, month=month, year=year, status=status_filter,
        payment_method=payment_method, page=page, limit=limit,
    )
    result["payments"] = serialize_docs(result["payments"])
    return result

@router.get("/{payment_id}", response_model=dict)
async def get_commission_payment(
    payment_id: str,
    current_user: dict = Depends(get_current_user)
):
    payment = await commission_service.get_commission_payment(payment_id)
    return serialize_doc(payment)

@router.patch("/{payment_id}/status", response_model=dict)
async def update_commission_payment_status(
    payment_id: str,
    update: CommissionStatusUpdate,
    current_user: dict = Depends(get_current_user)
):
    """Mark a settlement PAID or FAILED"""
    updated = await commission_service.update_payment_status(
        payment_id, update.status, update.remarks, actor_id(current_user)
    )
    return serialize_doc(updated)
