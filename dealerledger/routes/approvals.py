"""
Ledger approval routes
"""
from typing import Optional
from fastapi import APIRouter, Depends, Query, Body
from dealerledger.models.ledger import ApproveEntry, RejectEntry
from dealerledger.services import approval_workflow
from dealerledger.utils.helpers import serialize_doc, serialize_docs
from dealerledger.utils.auth import get_current_user, actor_id

router = APIRouter(prefix="/ledger-approvals", tags=["Ledger Approvals"])

@router.get("/pending", response_model=dict)
async def get_pending_approvals(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    non_cash_only: bool = Query(True),
    current_user: dict = Depends(get_current_user)
):
    """Pending entries waiting for approval, newest first"""
    result = await approval_workflow.list_pending(page=page, limit=limit, non_cash_only=non_cash_only)
    result["entries"] = serialize_docs(result["entries"])
    return result

@router.post("/{entry_id}/approve", response_model=dict)
async def approve_entry(
    entry_id: str,
    body: Optional[ApproveEntry] = Body(None),
    current_user: dict = Depends(get_current_user)
):
    result = await approval_workflow.approve_entry(
        entry_id, actor_id(current_user), remark=body.remark if body else None
    )
    return serialize_doc(result)

@router.post("/{entry_id}/reject", response_model=dict)
async def reject_entry(
    entry_id: str,
    body: RejectEntry,
    current_user: dict = Depends(get_current_user)
):
    entry = await approval_workflow.reject_entry(entry_id, actor_id(current_user), body.rejection_reason)
    return serialize_doc(entry)
