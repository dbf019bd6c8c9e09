"""Shipping and tax quotes.

Both calculators sit behind small interfaces so a carrier or tax service
can replace the configured defaults without touching the API layer.
"""
from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Mapping, Optional

from .exceptions import InvalidInputError
from .resilience import SHOPIFY, ResilienceWrapper

logger = logging.getLogger(__name__)

US_ZIP_PATTERN = re.compile(r"^\d{5}(-\d{4})?$")
_STATE_PATTERN = re.compile(r"^[A-Za-z]{2}$")
DEFAULT_SHIPPING_METHOD = "Ground Shipping"


@dataclass
class ShippingAddress:
    postal_code: str
    country: str = "US"
    province: Optional[str] = None
    city: Optional[str] = None


@dataclass
class ShippingRate:
    price: int
    method: str = DEFAULT_SHIPPING_METHOD

    def to_dict(self) -> Dict[str, Any]:
        return {"price": self.price, "method": self.method}


@dataclass
class TaxQuote:
    tax_rate: Decimal
    tax_amount: int
    taxable_amount: int
    total: int
    state: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "taxRate": float(self.tax_rate),
            "taxAmount": self.tax_amount,
            "taxableAmount": self.taxable_amount,
            "total": self.total,
        }


@dataclass
class ShippingRequest:
    items: List[Dict[str, Any]]
    address: ShippingAddress
    subtotal: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


def parse_shipping_request(body: Mapping[str, Any]) -> ShippingRequest:
    """Validate a shipping quote request body.

    Raises:
        InvalidInputError: Items missing, postal code missing or malformed
    """
    items = body.get("items")
    if not isinstance(items, list) or not items:
        raise InvalidInputError("Invalid or missing items", field="items")

    address = body.get("address") if isinstance(body.get("address"), dict) else {}
    postal_code = body.get("postalCode") or address.get("postal_code") or address.get("zip")
    if not postal_code or not str(postal_code).strip():
        raise InvalidInputError("Postal code is required", field="postalCode")
    postal_code = str(postal_code).strip()

    country = str(body.get("country") or address.get("country") or "US").strip().upper()
    if country == "US" and not US_ZIP_PATTERN.match(postal_code):
        raise InvalidInputError("Invalid postal code", field="postalCode")

    subtotal = 0
    for item in items:
        if not isinstance(item, dict):
            raise InvalidInputError("Invalid or missing items", field="items")
        price = item.get("price", 0)
        quantity = item.get("quantity", 1)
        if isinstance(price, int) and isinstance(quantity, int) and not isinstance(price, bool):
            subtotal += price * quantity

    return ShippingRequest(
        items=items,
        address=ShippingAddress(
            postal_code=postal_code,
            country=country,
            province=address.get("province") or body.get("state"),
            city=address.get("city"),
        ),
        subtotal=subtotal,
    )


def _non_negative_int(value: Any, name: str, message: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidInputError(message, field=name)
    return value


def parse_tax_request(body: Mapping[str, Any]) -> tuple[int, int, Optional[str]]:
    """Return (subtotal, shipping, state) from a tax quote request body."""
    subtotal = _non_negative_int(body.get("subtotal"), "subtotal", "Invalid subtotal")
    shipping = _non_negative_int(body.get("shipping", 0) or 0, "shipping", "Invalid shipping amount")
    state = body.get("state")
    if state in (None, ""):
        return subtotal, shipping, None
    if not isinstance(state, str) or not _STATE_PATTERN.match(state.strip()):
        raise InvalidInputError("Invalid state", field="state")
    return subtotal, shipping, state.strip().upper()


class ShippingCalculator(ABC):
    """Quotes shipping for a cart."""

    @abstractmethod
    async def calculate(self, request: ShippingRequest) -> List[ShippingRate]:
        """Return available rates, cheapest first."""


class TaxCalculator(ABC):
    """Quotes sales tax."""

    @abstractmethod
    def calculate(self, subtotal: int, shipping: int = 0, state: Optional[str] = None) -> TaxQuote:
        """Tax on subtotal plus shipping, in minor units."""


class FlatRateShippingCalculator(ShippingCalculator):
    def __init__(self, rate_cents: int = 1000, free_threshold_cents: int = 0):
        self.rate_cents = rate_cents
        self.free_threshold_cents = free_threshold_cents

    def quote(self, subtotal: int = 0) -> ShippingRate:
        if self.free_threshold_cents and subtotal >= self.free_threshold_cents:
            return ShippingRate(price=0, method="Free Shipping")
        return ShippingRate(price=self.rate_cents)

    async def calculate(self, request: ShippingRequest) -> List[ShippingRate]:
        return [self.quote(request.subtotal)]


class StateTaxCalculator(TaxCalculator):
    """Single-rate-per-state sales tax, rounded half up to the cent."""

    def __init__(self, rates: Optional[Mapping[str, Decimal]] = None, default_rate: Decimal = Decimal("0.06")):
        self.rates = {k.upper(): Decimal(v) for k, v in (rates or {}).items()}
        self.default_rate = Decimal(default_rate)

    def rate_for(self, state: Optional[str]) -> Decimal:
        if state:
            return self.rates.get(state.upper(), self.default_rate)
        return self.default_rate

    def calculate(self, subtotal: int, shipping: int = 0, state: Optional[str] = None) -> TaxQuote:
        rate = self.rate_for(state)
        taxable = subtotal + shipping
        tax = int((Decimal(taxable) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return TaxQuote(
            tax_rate=rate,
            tax_amount=tax,
            taxable_amount=taxable,
            total=taxable + tax,
            state=state,
        )


class ShippingService:
    """Runs the configured calculator, falling back to the flat rate."""

    def __init__(
        self,
        calculator: ShippingCalculator,
        resilience: ResilienceWrapper,
        fallback: Optional[FlatRateShippingCalculator] = None,
    ):
        self._calculator = calculator
        self._resilience = resilience
        self._fallback = fallback or FlatRateShippingCalculator()

    async def quote(self, request: ShippingRequest) -> List[ShippingRate]:
        def flat_rate(error: BaseException) -> List[ShippingRate]:
            logger.warning("Shipping calculator unavailable, using flat rate")
            return [self._fallback.quote(request.subtotal)]

        rates = await self._resilience.call(
            SHOPIFY, self._calculator.calculate, request, fallback=flat_rate
        )
        return rates or [self._fallback.quote(request.subtotal)]
