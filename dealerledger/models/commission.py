"""
Commission settlement models
"""
from typing import Optional
from pydantic import BaseModel

PAYMENT_METHODS = ("ON_ACCOUNT", "BANK_TRANSFER", "UPI", "CHEQUE")


class CommissionPaymentCreate(BaseModel):
    subdealer_id: str
    month: int
    year: int
    payment_method: str
    transaction_reference: Optional[str] = None
    remarks: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "subdealer_id": "6650f0c2a1b2c3d4e5f60701",
                "month": 5,
                "year": 2024,
                "payment_method": "BANK_TRANSFER",
                "transaction_reference": "UTR-99812"
            }
        }


class CommissionStatusUpdate(BaseModel):
    status: str
    remarks: Optional[str] = None
