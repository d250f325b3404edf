"""
Booking routes - the minimal entry points the ledger hangs off
"""
from fastapi import APIRouter, status, Depends
from dealerledger.models.booking import BookingCreate
from dealerledger.services import ledger_service
from dealerledger.utils.helpers import serialize_doc
from dealerledger.utils.auth import get_current_user, actor_id

router = APIRouter(prefix="/bookings", tags=["Bookings"])

@router.post("/", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking: BookingCreate,
    current_user: dict = Depends(get_current_user)
):
    """Create a booking with zero received and the full amount outstanding"""
    created = await ledger_service.create_booking(booking, actor_id(current_user))
    return serialize_doc(created)

@router.get("/{booking_id}", response_model=dict)
async def get_booking(
    booking_id: str,
    current_user: dict = Depends(get_current_user)
):
    """Get booking by ID"""
    booking = await ledger_service.get_booking(booking_id)
    return serialize_doc(booking)
