"""
Sub-dealer on-account (pooled) receipt models
"""
from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, Field

BANK_REQUIRED_MODES = ("Bank", "UPI", "NEFT", "RTGS", "IMPS", "Cheque", "Pay Order")


class OnAccountReceiptCreate(BaseModel):
    ref_number: str
    amount: float = Field(..., allow_inf_nan=False)
    payment_mode: Literal["Cash", "Bank", "UPI", "NEFT", "RTGS", "IMPS", "Cheque", "Pay Order", "Other", "On-Account"] = "Bank"
    bank: Optional[str] = None
    received_date: Optional[datetime] = None
    remark: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "ref_number": "UTR-448812",
                "amount": 150000,
                "payment_mode": "NEFT",
                "bank": "6650f0c2a1b2c3d4e5f60730",
                "remark": "Float for May"
            }
        }


class AllocationItem(BaseModel):
    booking_id: str
    amount: float = Field(..., allow_inf_nan=False)
    remark: Optional[str] = None


class AllocationRequest(BaseModel):
    allocations: List[AllocationItem] = Field(..., min_length=1)
