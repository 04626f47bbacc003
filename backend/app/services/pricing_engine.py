"""Agency markup pricing.

The same `price_package` function prices search results for display, the
package returned by the booking-policy call and the package frozen on the
transaction at hold time, so displayed and charged prices cannot diverge.

Formula (all rounding is ceiling, never under-charge):

    markup     = base * value / 100   (percentage)   |   value   (fixed)
    chargeable = ceil(base - discount + service + tax + markup)
"""
from __future__ import annotations

import copy
import logging
import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from app.errors import ValidationError
from app.repositories.markup_repository import MarkupRepository

logger = logging.getLogger(__name__)

MARKUP_TYPES = ("percentage", "fixed")


@dataclass(frozen=True)
class MarkupRule:
    agency_id: str
    type: str
    value: float
    is_active: bool = True

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "MarkupRule":
        return cls(
            agency_id=str(doc.get("agency_id")),
            type=str(doc.get("type")),
            value=float(doc.get("value") or 0.0),
            is_active=bool(doc.get("is_active", True)),
        )


@dataclass(frozen=True)
class PriceBreakdown:
    base_amount: float
    discount: float
    service_component: float
    tax: float
    markup_amount: float
    chargeable_rate: int
    chargeable_rate_with_tax_excluded: int
    currency: Optional[str]


def validate_markup(type: str, value: Any) -> float:
    if type not in MARKUP_TYPES:
        raise ValidationError(message='Markup type must be either "percentage" or "fixed"', details={"field": "type"})
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(message="Markup value must be a number", details={"field": "value"})
    value = float(value)
    if value < 0:
        raise ValidationError(message="Markup value must be a non-negative number", details={"field": "value"})
    if type == "percentage" and value > 100:
        raise ValidationError(message="Percentage markup cannot exceed 100%", details={"field": "value"})
    return value


def _num(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _base_amount(package: Dict[str, Any]) -> float:
    base = _num(package.get("base_amount"))
    if base is None:
        base = _num(package.get("room_rate"))
    if base is None:
        raise ValueError("package has neither base_amount nor room_rate")
    return base


def _tax_amount(package: Dict[str, Any]) -> float:
    gst = _num(package.get("gst"))
    if gst is not None:
        return gst
    estimated = ((package.get("taxes_and_fees") or {}).get("estimated_total") or {}).get("value")
    return _num(estimated) or 0.0


def compute_markup_amount(base: float, rule: Optional[MarkupRule]) -> float:
    if rule is None or not rule.is_active:
        return 0.0
    if rule.type == "percentage":
        return base * rule.value / 100
    return rule.value


def compute_breakdown(package: Dict[str, Any], rule: Optional[MarkupRule]) -> PriceBreakdown:
    base = _base_amount(package)
    discount = _num(package.get("client_commission")) or 0.0
    service = _num(package.get("service_component")) or 0.0
    tax = _tax_amount(package)
    markup = compute_markup_amount(base, rule)

    pre_tax = base - discount + service + markup
    return PriceBreakdown(
        base_amount=base,
        discount=discount,
        service_component=service,
        tax=tax,
        markup_amount=markup,
        chargeable_rate=math.ceil(pre_tax + tax),
        chargeable_rate_with_tax_excluded=math.ceil(pre_tax),
        currency=package.get("chargeable_rate_currency") or package.get("room_rate_currency"),
    )


def price_package(package: Dict[str, Any], rule: Optional[MarkupRule]) -> Dict[str, Any]:
    """Return a priced copy of a supplier rate package. The input is not mutated."""
    breakdown = compute_breakdown(package, rule)
    priced = copy.deepcopy(package)
    if "supplier_chargeable_rate" not in priced and "chargeable_rate" in package:
        priced["supplier_chargeable_rate"] = package.get("chargeable_rate")
    priced.update(
        {
            "base_amount": breakdown.base_amount,
            "markup_amount": breakdown.markup_amount,
            "chargeable_rate": breakdown.chargeable_rate,
            "chargeable_rate_with_tax_excluded": breakdown.chargeable_rate_with_tax_excluded,
            "markup_details": {"type": rule.type, "value": rule.value} if rule and rule.is_active else None,
            "price_breakdown": asdict(breakdown),
        }
    )
    return priced


class PricingEngine:
    def __init__(self, db) -> None:
        self.markups = MarkupRepository(db)

    async def get_active_rule(self, agency_id: Optional[str]) -> Optional[MarkupRule]:
        if not agency_id:
            return None
        doc = await self.markups.get_active(agency_id)
        return MarkupRule.from_doc(doc) if doc else None

    async def apply_markup(self, package: Dict[str, Any], agency_id: Optional[str]) -> Dict[str, Any]:
        rule = await self.get_active_rule(agency_id)
        return price_package(package, rule)

    async def apply_markup_many(self, packages: List[Dict[str, Any]], agency_id: Optional[str]) -> List[Dict[str, Any]]:
        """Price a list of packages for display.

        A markup failure on one package never aborts the search: the package is
        returned unmarked and the error is logged. The rule lookup itself is
        also absorbed.
        """
        try:
            rule = await self.get_active_rule(agency_id)
        except Exception:
            logger.exception("markup rule lookup failed for agency %s; returning unmarked packages", agency_id)
            return packages

        out: List[Dict[str, Any]] = []
        for package in packages:
            try:
                out.append(price_package(package, rule))
            except Exception as exc:
                logger.warning(
                    "markup application failed agency=%s booking_key=%s: %s",
                    agency_id,
                    package.get("booking_key"),
                    exc,
                )
                out.append(package)
        return out

    # ------------------------------------------------------------------
    # Markup management
    # ------------------------------------------------------------------
    async def get_markup(self, agency_id: str) -> Optional[Dict[str, Any]]:
        return await self.markups.get(agency_id)

    async def set_markup(self, agency_id: str, *, type: str, value: Any, is_active: bool = True) -> Dict[str, Any]:
        clean_value = validate_markup(type, value)
        doc = await self.markups.upsert(agency_id, type=type, value=clean_value, is_active=is_active)
        logger.info("markup updated agency=%s type=%s value=%s active=%s", agency_id, type, clean_value, is_active)
        return doc

    async def toggle_markup(self, agency_id: str, is_active: bool) -> Optional[Dict[str, Any]]:
        return await self.markups.set_active(agency_id, is_active)
