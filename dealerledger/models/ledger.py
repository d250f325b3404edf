"""
Ledger entry request models.

Each payment channel is its own model carrying only the fields valid for it;
``payment_mode`` selects the variant.
"""
from datetime import datetime
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field

BANK_MODES = ("Bank", "Finance Disbursement", "Exchange", "Pay Order")


class CashChannel(BaseModel):
    payment_mode: Literal["Cash"]
    cash_location: str = Field(..., min_length=1)

    class Config:
        extra = "forbid"


class BankChannel(BaseModel):
    payment_mode: Literal["Bank", "Finance Disbursement", "Exchange", "Pay Order"]
    bank: str = Field(..., min_length=1)
    sub_payment_mode: Optional[str] = None
    transaction_reference: Optional[str] = None

    class Config:
        extra = "forbid"


PaymentChannel = Annotated[Union[CashChannel, BankChannel], Field(discriminator="payment_mode")]


class CashPayment(CashChannel):
    """Cash received at a cash location; effective immediately"""
    booking_id: str
    amount: float = Field(..., gt=0, allow_inf_nan=False)
    remark: Optional[str] = None
    receipt_date: Optional[datetime] = None

    class Config:
        extra = "forbid"
        json_schema_extra = {
            "example": {
                "payment_mode": "Cash",
                "booking_id": "6650f0c2a1b2c3d4e5f60718",
                "amount": 25000,
                "cash_location": "6650f0c2a1b2c3d4e5f60720",
                "remark": "Down payment"
            }
        }


class BankPayment(BankChannel):
    """Bank / finance / exchange / pay order receipt; waits for approval"""
    booking_id: str
    amount: float = Field(..., gt=0, allow_inf_nan=False)
    remark: Optional[str] = None
    receipt_date: Optional[datetime] = None

    class Config:
        extra = "forbid"


PaymentCreate = Annotated[Union[CashPayment, BankPayment], Field(discriminator="payment_mode")]


class DebitEntryCreate(BaseModel):
    """Charge that increases what the customer owes"""
    booking_id: str
    amount: float = Field(..., gt=0, allow_inf_nan=False)
    debit_reason: str = Field(..., min_length=1)
    debit_mode: Optional[Literal["Late Payment", "Penalty", "Cheque Bounce", "Insurance Endorsement", "Other Debit"]] = None
    remark: Optional[str] = None

    class Config:
        extra = "forbid"


class AmendEntry(BaseModel):
    """Correction of a recorded entry; every field is optional"""
    amount: Optional[float] = Field(None, gt=0, allow_inf_nan=False)
    channel: Optional[PaymentChannel] = None
    debit_reason: Optional[str] = None
    remark: Optional[str] = None
    receipt_date: Optional[datetime] = None

    class Config:
        extra = "forbid"


class ApproveEntry(BaseModel):
    remark: Optional[str] = None


class RejectEntry(BaseModel):
    rejection_reason: str = Field(..., min_length=1)
