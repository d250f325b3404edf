"""
Vehicle status deriver - moves a matching stock vehicle along
not_approved/in_stock -> in_transit -> sold as a booking gets paid.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional

from dealerledger.config.database import Collections
from dealerledger.config.settings import settings
from dealerledger.database.db_operations import db_ops, to_object_id
from dealerledger.utils.helpers import round_money, to_amount

logger = logging.getLogger(__name__)

NOT_APPROVED = "not_approved"
IN_STOCK = "in_stock"
IN_TRANSIT = "in_transit"
SOLD = "sold"
UNSOLD_STATUSES = [NOT_APPROVED, IN_STOCK, IN_TRANSIT]

IDENTIFYING_FIELDS = (
    "chassis_number",
    "motor_number",
    "battery_number",
    "engine_number",
    "key_number",
    "charger_number",
)

# in_stock first, then in_transit, then anything else
_STATUS_RANK = {IN_STOCK: 0, IN_TRANSIT: 1}


def payment_percentage(received_amount: float, discounted_amount: float) -> float:
    discounted = to_amount(discounted_amount)
    if discounted <= 0:
        return 0.0
    return to_amount(received_amount) / discounted * 100


def target_status(current: str, percentage: float) -> Optional[str]:
    """The status the vehicle should move to, None when it stays put"""
    if current == SOLD:
        return None
    if percentage >= settings.SOLD_THRESHOLD:
        return SOLD
    if percentage >= settings.IN_TRANSIT_THRESHOLD:
        return IN_TRANSIT if current != IN_TRANSIT else None
    if percentage > 0 and current not in (IN_STOCK, IN_TRANSIT):
        return IN_STOCK
    return None


def _unclaimed_or_mine(booking_id: str) -> Dict:
    return {"$or": [{"booking_id": None}, {"booking_id": booking_id}]}


def _candidate_query(booking: Dict) -> Dict:
    booking_id = str(booking["_id"])
    clauses: List[Dict] = [
        {"model_id": booking.get("model_id")},
        {"color_id": booking.get("color_id")},
        {"status": {"$in": UNSOLD_STATUSES}},
        _unclaimed_or_mine(booking_id),
    ]
    # a vehicle that already carries a number must carry the booking's one
    for field in IDENTIFYING_FIELDS:
        value = booking.get(field)
        if value:
            clauses.append({"$or": [{field: value}, {field: None}, {field: ""}]})
    return {"$and": clauses}


def _order_candidates(vehicles: List[Dict]) -> List[Dict]:
    return sorted(
        vehicles,
        key=lambda v: (_STATUS_RANK.get(v.get("status"), 2), v.get("created_at") or datetime.max),
    )


async def _find_candidates(booking: Dict) -> List[Dict]:
    booking_id = str(booking["_id"])

    if booking.get("vehicle_id"):
        owned = await db_ops.get_by_id(Collections.VEHICLES, booking["vehicle_id"])
        return [owned] if owned else []

    claimed = await db_ops.find_all(
        Collections.VEHICLES,
        {"booking_id": booking_id, "status": {"$in": UNSOLD_STATUSES}},
    )
    if claimed:
        return _order_candidates(claimed)

    vehicles = await db_ops.find_all(Collections.VEHICLES, _candidate_query(booking))
    return _order_candidates(vehicles)


async def _transition(vehicle: Dict, booking: Dict, new_status: str) -> Optional[Dict]:
    """Conditional update that also claims the vehicle for the booking"""
    booking_id = str(booking["_id"])
    changes = {"status": new_status, "booking_id": booking_id}
    if new_status == SOLD:
        for field in IDENTIFYING_FIELDS:
            if booking.get(field):
                changes[field] = booking[field]

    return await db_ops.update_where(
        Collections.VEHICLES,
        {"$and": [{"_id": vehicle["_id"], "status": vehicle.get("status")}, _unclaimed_or_mine(booking_id)]},
        {"$set": changes},
    )


async def derive_vehicle_status(booking: Dict) -> Optional[Dict]:
    """Run after a direct payment took effect on ``booking``.

    Returns the applied transition, or None when no vehicle matched or the
    status did not change. Never raises: a failed derivation must not fail
    the payment that triggered it.
    """
    booking_id = str(booking.get("_id"))
    try:
        percentage = payment_percentage(booking.get("received_amount"), booking.get("discounted_amount"))
        candidates = await _find_candidates(booking)
        if not candidates:
            logger.info("No matching vehicle for booking %s (%.2f%% paid)", booking_id, percentage)
            return None

        for vehicle in candidates:
            current = vehicle.get("status")
            new_status = target_status(current, percentage)
            if new_status is None:
                logger.info(
                    "Vehicle %s stays %s for booking %s (%.2f%% paid)",
                    vehicle["_id"], current, booking_id, percentage,
                )
                return None

            updated = await _transition(vehicle, booking, new_status)
            if updated is None:
                # claimed or moved by another booking meanwhile
                logger.info("Vehicle %s no longer available, trying next candidate", vehicle["_id"])
                continue

            if new_status == SOLD:
                # versioned like every other booking write
                await db_ops.update_where(
                    Collections.BOOKINGS,
                    {"_id": to_object_id(booking_id)},
                    {"$set": {"vehicle_id": str(vehicle["_id"])}, "$inc": {"version": 1}},
                )

            logger.info(
                "Vehicle %s: %s -> %s (booking %s, %.2f%% paid)",
                vehicle["_id"], current, new_status, booking_id, percentage,
            )
            return {
                "vehicle_id": str(vehicle["_id"]),
                "previous_status": current,
                "status": new_status,
                "payment_percentage": round_money(percentage),
            }

        logger.info("All matching vehicles for booking %s were claimed elsewhere", booking_id)
        return None
    except Exception:
        logger.exception("Vehicle status derivation failed for booking %s", booking_id)
        return None
