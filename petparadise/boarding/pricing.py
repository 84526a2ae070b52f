"""Booking price calculation.

Everything in this module is pure: the same inputs always give the same
price, and malformed input (missing dates, zero pets, unknown service)
prices at zero instead of raising. Callers decide whether a zero quote
means "incomplete booking".
"""

from __future__ import annotations

import datetime as dt
from dataclasses import asdict, dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Mapping

CENT = Decimal("0.01")
ZERO = Decimal("0")

DAYCARE_SERVICES = frozenset({"dog-daycare"})

STACKED = "stacked"
BEST_OF = "best_of"
DISCOUNT_POLICIES = (STACKED, BEST_OF)


def to_money(value: Any) -> Decimal:
    """Round to cents, half away from zero."""

    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class AddOn:
    key: str
    name: str
    price: Decimal
    per_day: bool = False

    def cost(self, nights: int) -> Decimal:
        return self.price * nights if self.per_day else self.price


@dataclass(frozen=True)
class ServiceRate:
    key: str
    name: str
    pet_type: str
    price: Decimal
    unit: str = "night"

    @property
    def is_daycare(self) -> bool:
        return self.unit == "day" or self.key in DAYCARE_SERVICES


@dataclass(frozen=True)
class PricingRules:
    """Rate tables and discount parameters, normally read from settings."""

    services: Mapping[str, ServiceRate]
    add_ons: Mapping[str, AddOn]
    multi_pet_discount: Decimal = Decimal("0.10")
    long_stay_discount: Decimal = Decimal("0.05")
    long_stay_nights: int = 7
    tax_rate: Decimal = ZERO
    deposit_percentage: Decimal = Decimal("0.30")

    @classmethod
    def from_settings(
        cls,
        *,
        services: Mapping[str, Mapping[str, Any]],
        add_ons: Mapping[str, Mapping[str, Any]],
        discounts: Mapping[str, Any] | None = None,
        tax_rate: Any = 0,
        deposit_percentage: Any = "0.30",
    ) -> "PricingRules":
        discounts = discounts or {}
        return cls(
            services={
                key: ServiceRate(
                    key=key,
                    name=row.get("name", key),
                    pet_type=row.get("pet_type", "dog"),
                    price=Decimal(str(row["price"])),
                    unit=row.get("unit", "night"),
                )
                for key, row in services.items()
            },
            add_ons={
                key: AddOn(
                    key=key,
                    name=row.get("name", key),
                    price=Decimal(str(row["price"])),
                    per_day=bool(row.get("per_day")),
                )
                for key, row in add_ons.items()
            },
            multi_pet_discount=Decimal(str(discounts.get("multi_pet", "0.10"))),
            long_stay_discount=Decimal(str(discounts.get("long_stay", "0.05"))),
            long_stay_nights=int(discounts.get("long_stay_nights", 7)),
            tax_rate=Decimal(str(tax_rate or 0)),
            deposit_percentage=Decimal(str(deposit_percentage)),
        )

    def validate(self) -> "PricingRules":
        """Raise ``ValueError`` unless every rate and percentage is usable."""

        for service in self.services.values():
            if not service.price.is_finite() or service.price < 0:
                raise ValueError(f"Price for {service.key} must be zero or more")
            if service.unit not in ("night", "day"):
                raise ValueError(f"Unit for {service.key} must be night or day")
        for add_on in self.add_ons.values():
            if not add_on.price.is_finite() or add_on.price < 0:
                raise ValueError(f"Price for add-on {add_on.key} must be zero or more")
        for label, rate in (
            ("Multi-pet discount", self.multi_pet_discount),
            ("Long stay discount", self.long_stay_discount),
            ("Tax rate", self.tax_rate),
        ):
            if not rate.is_finite() or not 0 <= rate < 1:
                raise ValueError(f"{label} must be between 0 and 1")
        if not self.deposit_percentage.is_finite() or not 0 < self.deposit_percentage <= 1:
            raise ValueError("Deposit percentage must be above 0 and at most 1")
        if self.long_stay_nights < 1:
            raise ValueError("Long stay threshold must be at least one night")
        return self


@dataclass
class PriceQuote:
    service_type: str | None
    daily_rate: Decimal = ZERO
    days: int = 0
    pet_count: int = 0
    subtotal: Decimal = ZERO
    discount: Decimal = ZERO
    discount_reason: str = "No discount"
    add_ons_total: Decimal = ZERO
    add_ons: list[dict] = field(default_factory=list)
    tax: Decimal = ZERO
    total: Decimal = ZERO

    @property
    def is_complete(self) -> bool:
        return self.total > 0 and self.days > 0 and self.pet_count > 0

    def as_dict(self) -> dict:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Decimal):
                data[key] = float(value)
        data["add_ons"] = [
            {**item, "price": float(item["price"])} for item in self.add_ons
        ]
        return data


def _as_date(value: Any) -> dt.date | None:
    if value is None or value == "":
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    try:
        return dt.date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def stay_nights(start: Any, end: Any, service_type: str | None = None) -> int:
    """Number of billable units for a stay; 0 for missing or reversed dates."""

    start_date = _as_date(start)
    if service_type in DAYCARE_SERVICES:
        return 1 if start_date else 0
    end_date = _as_date(end)
    if not start_date or not end_date:
        return 0
    return max((end_date - start_date).days, 0)


def _discount_factor(nights: int, pet_count: int, rules: PricingRules, policy: str) -> tuple[Decimal, str]:
    multi_pet = rules.multi_pet_discount if pet_count > 1 else ZERO
    long_stay = rules.long_stay_discount if nights >= rules.long_stay_nights else ZERO
    if policy == BEST_OF:
        if multi_pet == ZERO and long_stay == ZERO:
            return Decimal(1), "No discount"
        if multi_pet >= long_stay:
            return 1 - multi_pet, f"Multi-pet discount ({multi_pet * 100:.0f}%)"
        return 1 - long_stay, f"Long stay discount ({long_stay * 100:.0f}%)"

    factor = Decimal(1)
    reasons = []
    if multi_pet:
        factor *= 1 - multi_pet
        reasons.append(f"Multi-pet discount ({multi_pet * 100:.0f}%)")
    if long_stay:
        factor *= 1 - long_stay
        reasons.append(f"Long stay discount ({long_stay * 100:.0f}%)")
    return factor, " + ".join(reasons) or "No discount"


def quote(
    *,
    service_type: str | None,
    nights: int,
    pet_count: int,
    add_ons: Iterable[str] | None,
    rules: PricingRules,
    policy: str = STACKED,
) -> PriceQuote:
    """Return the full price breakdown for a stay.

    Base is rate x nights x pets. The multi-pet and long-stay discounts
    apply to the base only; add-ons are added afterwards at full price.
    ``total == subtotal + add_ons_total + tax - discount`` always holds.
    """

    service = rules.services.get(service_type or "")
    if service is None:
        return PriceQuote(service_type=service_type)
    if service.is_daycare and nights > 0:
        nights = 1
    if nights <= 0 or pet_count <= 0:
        return PriceQuote(service_type=service_type, daily_rate=service.price)

    subtotal = to_money(service.price * nights * pet_count)
    factor, reason = _discount_factor(nights, pet_count, rules, policy)
    discount = subtotal - to_money(subtotal * factor)

    selected = []
    for key in dict.fromkeys(add_ons or ()):
        add_on = rules.add_ons.get(key)
        if add_on is None:
            continue
        selected.append({"id": key, "name": add_on.name, "price": to_money(add_on.cost(nights))})
    add_ons_total = sum((item["price"] for item in selected), ZERO)

    tax = to_money((subtotal - discount + add_ons_total) * rules.tax_rate)
    total = subtotal - discount + add_ons_total + tax
    return PriceQuote(
        service_type=service_type,
        daily_rate=service.price,
        days=nights,
        pet_count=pet_count,
        subtotal=subtotal,
        discount=discount,
        discount_reason=reason,
        add_ons_total=add_ons_total,
        add_ons=selected,
        tax=tax,
        total=total,
    )


def calculate_total(
    *,
    service_type: str | None,
    nights: int,
    pet_count: int,
    add_ons: Iterable[str] | None = None,
    rules: PricingRules,
    policy: str = STACKED,
) -> Decimal:
    return quote(
        service_type=service_type,
        nights=nights,
        pet_count=pet_count,
        add_ons=add_ons,
        rules=rules,
        policy=policy,
    ).total


def deposit_amount(total: Any, percentage: Any) -> Decimal:
    return to_money(Decimal(str(total)) * Decimal(str(percentage)))
