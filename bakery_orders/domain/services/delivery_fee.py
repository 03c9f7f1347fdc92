"""
Delivery fee resolution.

GPS orders are priced by straight-line distance from the shop with a
time-of-day multiplier (Africa/Nairobi). Orders without coordinates fall
back to the flat fee of a legacy delivery zone.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bakery_orders.core.exceptions import ErrorCode, ValidationException
from bakery_orders.db.models.store_settings import DeliveryZone

NAIROBI_TZ = ZoneInfo("Africa/Nairobi")

SHOP_LAT = -1.0396
SHOP_LNG = 37.0834
EARTH_RADIUS_KM = 6371
MAX_RADIUS_KM = 50

# (max km, base fee)
DISTANCE_TIERS = ((5, 150), (15, 300), (30, 600), (40, 1000), (50, 1500))

CAKE_WINDOW_BASE_MINUTES = 30
PIZZA_WINDOW_BASE_MINUTES = 25
MINUTES_PER_KM = 3


@dataclass(frozen=True)
class DeliveryQuote:
    fee: int
    window: Optional[str]
    distance_km: Optional[float] = None
    zone_id: Optional[int] = None
    zone_name: Optional[str] = None
    time_label: Optional[str] = None


def distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Haversine distance rounded to 10 m"""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return round(EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a)), 2)


def time_multiplier(hour: int) -> tuple[float, str]:
    if hour >= 23 or hour < 6:
        return 1.4, "Night Delivery"
    if hour >= 21:
        return 1.3, "Late Hours"
    if hour >= 17:
        return 1.2, "Evening Peak"
    return 1.0, "Standard Delivery"


def base_distance_fee(distance: float) -> int:
    for max_km, fee in DISTANCE_TIERS:
        if distance <= max_km:
            return fee
    raise ValidationException(
        f"Outside delivery radius. Max is {MAX_RADIUS_KM}km.",
        error_code=ErrorCode.DELIVERY_OUT_OF_RANGE,
    )


def quote_gps_delivery(
    lat: float,
    lng: float,
    window_base_minutes: int = CAKE_WINDOW_BASE_MINUTES,
    now: Optional[datetime] = None,
    approximate_window: bool = False,
) -> DeliveryQuote:
    distance = distance_km(SHOP_LAT, SHOP_LNG, lat, lng)
    if distance > MAX_RADIUS_KM:
        raise ValidationException(
            f"Sorry, we currently deliver within {MAX_RADIUS_KM}km of Thika. You are {distance}km away.",
            field="delivery_lat",
            error_code=ErrorCode.DELIVERY_OUT_OF_RANGE,
            details={"distance_km": distance},
        )

    now = now or datetime.now(timezone.utc)
    factor, label = time_multiplier(now.astimezone(NAIROBI_TZ).hour)
    # round before ceil so 150 * 1.2 stays 180
    fee = math.ceil(round(base_distance_fee(distance) * factor, 6))
    minutes = math.ceil(distance * MINUTES_PER_KM + window_base_minutes)
    window = f"{distance}km (~{minutes} mins)" if approximate_window else f"{distance}km ({minutes} mins)"
    return DeliveryQuote(fee=fee, window=window, distance_km=distance, time_label=label)


async def get_delivery_zone(db: AsyncSession, zone_id: int) -> Optional[DeliveryZone]:
    result = await db.execute(select(DeliveryZone).where(DeliveryZone.id == zone_id))
    return result.scalar_one_or_none()


def quote_zone_delivery(zone: DeliveryZone) -> DeliveryQuote:
    return DeliveryQuote(
        fee=zone.delivery_fee or 0,
        window=zone.delivery_window,
        zone_id=zone.id,
        zone_name=zone.name,
    )


def is_nairobi_zone(quote: DeliveryQuote) -> bool:
    return "nairobi" in (quote.zone_name or "").lower()
