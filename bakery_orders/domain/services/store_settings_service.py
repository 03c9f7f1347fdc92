"""
Store Settings Service - busy mode toggles read at order time
"""
import re
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bakery_orders.core.logging import get_logger
from bakery_orders.db.models.store_settings import (
    DEFAULT_BUSY_MESSAGE,
    BusyModeAction,
    StoreSettings,
)

logger = get_logger(__name__)

MAX_EXTRA_MINUTES = 180
DEFAULT_EXTRA_MINUTES = 20
DEFAULT_WINDOW = "As soon as possible"

_RANGE_PATTERN = re.compile(r"(\d+)\s*-\s*(\d+)\s*(mins?|minutes)", re.IGNORECASE)
_SINGLE_PATTERN = re.compile(r"(\d+)\s*(mins?|minutes)", re.IGNORECASE)


@dataclass(frozen=True)
class BusyMode:
    enabled: bool = False
    action: BusyModeAction = BusyModeAction.DISABLE_ORDERS
    extra_minutes: int = DEFAULT_EXTRA_MINUTES
    message: str = DEFAULT_BUSY_MESSAGE

    @property
    def blocks_orders(self) -> bool:
        return self.enabled and self.action == BusyModeAction.DISABLE_ORDERS

    @property
    def delays_orders(self) -> bool:
        return self.enabled and self.action == BusyModeAction.INCREASE_ETA and self.extra_minutes > 0


def normalize_busy_mode(row: Optional[StoreSettings]) -> BusyMode:
    if row is None:
        return BusyMode()

    action = (
        BusyModeAction.INCREASE_ETA
        if row.busy_mode_action == BusyModeAction.INCREASE_ETA.value
        else BusyModeAction.DISABLE_ORDERS
    )
    try:
        extra = int(round(float(row.busy_mode_extra_minutes)))
    except (TypeError, ValueError):
        extra = DEFAULT_EXTRA_MINUTES
    extra = DEFAULT_EXTRA_MINUTES if extra < 0 else min(extra, MAX_EXTRA_MINUTES)

    message = (row.busy_mode_message or "").strip() or DEFAULT_BUSY_MESSAGE
    return BusyMode(bool(row.busy_mode_enabled), action, extra, message)


def apply_busy_eta_window(base_window: Optional[str], extra_minutes: int) -> str:
    """
    Push the minutes in a delivery window text back by ``extra_minutes``.

    ``"30-45 mins"`` -> ``"50-65 mins"``, ``"3.2km (40 mins)"`` ->
    ``"3.2km (60 mins)"``; text without minutes gets a suffix.
    """
    base = (base_window or DEFAULT_WINDOW).strip()
    extra = max(0, int(round(extra_minutes)))
    if not extra:
        return base

    match = _RANGE_PATTERN.search(base)
    if match:
        low = int(match.group(1)) + extra
        high = int(match.group(2)) + extra
        return base.replace(match.group(0), f"{low}-{high} {match.group(3)}", 1)

    match = _SINGLE_PATTERN.search(base)
    if match:
        return base.replace(match.group(0), f"{int(match.group(1)) + extra} {match.group(2)}", 1)

    return f"{base} (+{extra} mins busy mode)"


class StoreSettingsService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_busy_mode(self) -> BusyMode:
        result = await self.db.execute(select(StoreSettings).where(StoreSettings.id == 1))
        return normalize_busy_mode(result.scalar_one_or_none())

    async def update_busy_mode(
        self,
        enabled: bool,
        action: BusyModeAction = BusyModeAction.DISABLE_ORDERS,
        extra_minutes: int = DEFAULT_EXTRA_MINUTES,
        message: Optional[str] = None,
    ) -> BusyMode:
        result = await self.db.execute(select(StoreSettings).where(StoreSettings.id == 1))
        row = result.scalar_one_or_none()
        if row is None:
            row = StoreSettings(id=1)
            self.db.add(row)

        row.busy_mode_enabled = enabled
        row.busy_mode_action = BusyModeAction(action).value
        row.busy_mode_extra_minutes = min(max(int(extra_minutes), 0), MAX_EXTRA_MINUTES)
        row.busy_mode_message = (message or "").strip()[:300] or DEFAULT_BUSY_MESSAGE
        await self.db.commit()

        logger.info(
            "Busy mode updated",
            extra_data={"enabled": enabled, "action": row.busy_mode_action},
        )
        return normalize_busy_mode(row)
