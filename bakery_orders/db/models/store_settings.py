"""
Store Settings & Delivery Zone Models
"""
import enum
from sqlalchemy import Column, Integer, String, Boolean

from bakery_orders.db.database import Base


class BusyModeAction(str, enum.Enum):
    DISABLE_ORDERS = "disable_orders"
    INCREASE_ETA = "increase_eta"


DEFAULT_BUSY_MESSAGE = "We are currently overloaded. Please try again shortly."


class StoreSettings(Base):
    """Single-row table toggled from the admin dashboard"""

    __tablename__ = "store_settings"

    id = Column(Integer, primary_key=True, default=1)
    busy_mode_enabled = Column(Boolean, nullable=False, default=False)
    busy_mode_action = Column(String(20), nullable=False, default=BusyModeAction.DISABLE_ORDERS.value)
    busy_mode_extra_minutes = Column(Integer, nullable=False, default=20)
    busy_mode_message = Column(String(300), nullable=False, default=DEFAULT_BUSY_MESSAGE)


class DeliveryZone(Base):
    """Flat-fee zones used when the customer gives no GPS location"""

    __tablename__ = "delivery_zones"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    delivery_fee = Column(Integer, nullable=False, default=0)
    delivery_window = Column(String(100), nullable=True)
