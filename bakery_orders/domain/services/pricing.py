"""
Menu pricing - cake and pizza price tables and the pizza 2-for-1 offer.

The tables are the shop's default catalogue. Order submission only talks to
``PricingCatalogue``, so a database-backed menu can replace it later.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

NAIROBI_TZ = ZoneInfo("Africa/Nairobi")

CAKE_SIZES = ("0.5kg", "1kg", "1.5kg", "2kg", "2.5kg", "3kg", "3.5kg", "4kg", "4.5kg", "5kg")

_CLASSIC_ROW = (1000, 1500, 2300, 2800, 3300, 4300, 5300, 6000, 6700, 7500)
_MARBLE_ROW = (1000, 1600, 2400, 2900, 3500, 4400, 5300, 6000, 6700, 7500)
_PREMIUM_ROW = (1200, 1800, 2800, 3400, 4200, 4800, 5500, 6400, 7200, 7800)
_FRUIT_ROW = (1500, 2600, 3300, 4000, 4600, 5000, 5800, 6600, 7500, 7800)

_CAKE_ROWS = {
    "Vanilla": _CLASSIC_ROW,
    "Carrot": _CLASSIC_ROW,
    "Marble": _MARBLE_ROW,
    "Strawberry": _PREMIUM_ROW,
    "Blueberry": _PREMIUM_ROW,
    "Chocolate": _PREMIUM_ROW,
    "Banana": _PREMIUM_ROW,
    "Mint": _PREMIUM_ROW,
    "Mango": _PREMIUM_ROW,
    "Orange": _PREMIUM_ROW,
    "Passion": _PREMIUM_ROW,
    "Lemon Velvet": _PREMIUM_ROW,
    "Red Velvet": _PREMIUM_ROW,
    "Black Forest": _PREMIUM_ROW,
    "White Forest": _PREMIUM_ROW,
    "Fruit Cake": _FRUIT_ROW,
}

CAKE_PRICE_TABLE: dict[str, dict[str, int]] = {
    flavor: dict(zip(CAKE_SIZES, row)) for flavor, row in _CAKE_ROWS.items()
}
CAKE_FLAVORS = tuple(CAKE_PRICE_TABLE)

DEFAULT_CAKE_FLAVOR = "Vanilla"
DEFAULT_CAKE_SIZE = "1kg"

PIZZA_SIZES = ("Pizza Pie", "Small", "Medium", "Large")
PIZZA_BASE_PRICES = {"Pizza Pie": 350, "Small": 650, "Medium": 850, "Large": 1150}
_PIZZA_DELUXE_PRICES = {"Pizza Pie": 350, "Small": 700, "Medium": 900, "Large": 1200}

PIZZA_TYPE_PRICES: dict[str, dict[str, int]] = {
    "Margherita": PIZZA_BASE_PRICES,
    "Vegetarian": PIZZA_BASE_PRICES,
    "Beef Supreme": PIZZA_BASE_PRICES,
    "Hawaiian": PIZZA_BASE_PRICES,
    "Meat Deluxe": _PIZZA_DELUXE_PRICES,
    "BBQ Steak": PIZZA_BASE_PRICES,
    "BBQ Chicken": PIZZA_BASE_PRICES,
    "Chicken Periperi": PIZZA_BASE_PRICES,
    "Chicken Tikka": PIZZA_BASE_PRICES,
    "Chicken Supreme": PIZZA_BASE_PRICES,
    "Chicken Macon": _PIZZA_DELUXE_PRICES,
}

TOPPING_PRICE = 100

# Tuesday and Thursday
OFFER_WEEKDAYS = frozenset({1, 3})
OFFER_SIZES = frozenset({"Medium", "Large"})


def _normalize(value: Optional[str]) -> str:
    return (value or "").strip().lower()


_FLAVOR_KEYS = {_normalize(flavor): flavor for flavor in CAKE_PRICE_TABLE}
_SIZE_KEYS = {_normalize(size): size for size in CAKE_SIZES}


@dataclass(frozen=True)
class PizzaOffer:
    is_eligible: bool
    discount: int
    free_quantity: int
    chargeable_quantity: int


def is_pizza_offer_day(now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(NAIROBI_TZ).weekday() in OFFER_WEEKDAYS


def pizza_offer(size: str, quantity: int, unit_price: int, now: Optional[datetime] = None) -> PizzaOffer:
    """Every second Medium/Large pizza is free on offer days"""
    quantity = max(1, int(quantity or 1))
    if not is_pizza_offer_day(now) or size not in OFFER_SIZES or quantity < 2 or unit_price <= 0:
        return PizzaOffer(False, 0, 0, quantity)

    chargeable = math.ceil(quantity / 2)
    free = max(quantity - chargeable, 0)
    return PizzaOffer(True, free * unit_price, free, chargeable)


class PricingCatalogue:
    """Default in-process menu"""

    def cake_flavor(self, flavor: str) -> str:
        return _FLAVOR_KEYS.get(_normalize(flavor), DEFAULT_CAKE_FLAVOR)

    def cake_size(self, size: str) -> str:
        return _SIZE_KEYS.get(_normalize(size), DEFAULT_CAKE_SIZE)

    def cake_price(self, flavor: str, size: str) -> int:
        return CAKE_PRICE_TABLE[self.cake_flavor(flavor)][self.cake_size(size)]

    def cake_display_name(self, flavor: str) -> str:
        name = _FLAVOR_KEYS.get(_normalize(flavor), (flavor or "").strip())
        if "cake" in _normalize(name):
            return name
        return f"{name} Cake"

    def pizza_unit_price(self, size: str, pizza_type: str, toppings_count: int = 0) -> int:
        type_price = PIZZA_TYPE_PRICES.get(pizza_type, {}).get(size)
        base_price = PIZZA_BASE_PRICES.get(size, PIZZA_BASE_PRICES["Medium"])
        price = type_price if type_price is not None else base_price
        return price + max(0, toppings_count) * TOPPING_PRICE


default_catalogue = PricingCatalogue()
