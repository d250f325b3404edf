"""
Booking Models
"""
from typing import List, Literal, Optional
from pydantic import BaseModel, Field, model_validator


class PriceComponent(BaseModel):
    """One priced header of the booking (ex-showroom, insurance, RTO ...)"""
    header_id: str
    header_key: Optional[str] = None
    original_value: float = 0.0
    discounted_value: Optional[float] = None


class BookingCreate(BaseModel):
    booking_number: Optional[str] = None
    booking_type: Literal["BRANCH", "SUBDEALER"] = "BRANCH"
    subdealer_id: Optional[str] = None
    model_id: str
    color_id: str
    discounted_amount: float = Field(..., ge=0, allow_inf_nan=False)
    status: Literal["DRAFT", "PENDING_APPROVAL", "APPROVED", "COMPLETED", "REJECTED"] = "DRAFT"
    price_components: List[PriceComponent] = []

    # Identifying numbers, filled in as the vehicle gets allotted
    chassis_number: Optional[str] = None
    motor_number: Optional[str] = None
    battery_number: Optional[str] = None
    engine_number: Optional[str] = None
    key_number: Optional[str] = None
    charger_number: Optional[str] = None

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "booking_type": "SUBDEALER",
                "subdealer_id": "6650f0c2a1b2c3d4e5f60701",
                "model_id": "6650f0c2a1b2c3d4e5f60702",
                "color_id": "6650f0c2a1b2c3d4e5f60703",
                "discounted_amount": 98500,
                "status": "APPROVED"
            }
        }

    @model_validator(mode="after")
    def subdealer_bookings_need_subdealer(self):
        if self.booking_type == "SUBDEALER" and not self.subdealer_id:
            raise ValueError("subdealer_id is required for SUBDEALER bookings")
        return self
