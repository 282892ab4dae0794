"""
Rate Formula Resolver.

Prices one request against one rate card:
1. Chargeable weight (actual, volumetric or the greater of both)
2. Zone rule lookup (exact, then ``all``, then the first rule)
3. Weight slab plus overage in rounding units
4. COD, fuel, minimum fare, RTO and tax

A missing card or a formula that cannot be evaluated degrades to the
flat fallback ``max(50, weight * 20)`` with ``low`` confidence.
"""
import logging
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP
from typing import List, Optional, Tuple

from shiprate.config import settings
from shiprate.core.exceptions import InsufficientData
from shiprate.models.catalog import PaymentMode
from shiprate.schemas.catalog import (
    CodRule, RateCard, RateCardConfig, RoundingPolicy, WeightSlab, ZoneRule
)
from shiprate.schemas.quote import PriceBreakdown
from shiprate.services.zone_normalizer import ALL_ZONES, zone_lookup_key

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")
THREE_PLACES = Decimal("0.001")
HUNDRED = Decimal("100")

COD_FALLBACK_PERCENT = Decimal("2")
COD_FALLBACK_MINIMUM = Decimal("30")


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value or 0))


def round2(value: Decimal) -> Decimal:
    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def round3(value: Decimal) -> Decimal:
    return to_decimal(value).quantize(THREE_PLACES, rounding=ROUND_HALF_UP)


class FormulaInput:
    """Request attributes the formula depends on."""
    def __init__(
        self,
        weight_kg,
        zone: Optional[str] = None,
        payment_mode: str = PaymentMode.PREPAID.value,
        order_value=0,
        length_cm=None,
        width_cm=None,
        height_cm=None,
    ):
        self.weight_kg = to_decimal(weight_kg)
        self.zone = zone
        self.payment_mode = PaymentMode(payment_mode).value
        self.order_value = to_decimal(order_value)
        self.length_cm = length_cm
        self.width_cm = width_cm
        self.height_cm = height_cm

    @property
    def is_cod(self) -> bool:
        return self.payment_mode == PaymentMode.COD.value

    @property
    def has_dimensions(self) -> bool:
        return all([self.length_cm, self.width_cm, self.height_cm])


class FormulaResult:
    def __init__(self, amount: Decimal, breakdown: PriceBreakdown, confidence: str):
        self.amount = amount
        self.breakdown = breakdown
        self.confidence = confidence

    @property
    def is_fallback(self) -> bool:
        return self.breakdown.source == "fallback"


def volumetric_weight(inp: FormulaInput, divisor: int) -> Decimal:
    if not inp.has_dimensions:
        return Decimal("0")
    volume = to_decimal(inp.length_cm) * to_decimal(inp.width_cm) * to_decimal(inp.height_cm)
    return round3(volume / Decimal(divisor))


def chargeable_weight(
    inp: FormulaInput,
    basis: str = "max",
    divisor: Optional[int] = None,
) -> Tuple[Decimal, Decimal, Decimal]:
    """
    Calculate chargeable weight for a weight basis.

    Returns:
        Tuple of (chargeable, actual, volumetric)
    """
    divisor = divisor or settings.VOLUMETRIC_DIVISOR
    actual = round3(inp.weight_kg)
    volumetric = volumetric_weight(inp, divisor)

    if basis == "actual" or volumetric == 0:
        return actual, actual, volumetric
    if basis == "volumetric":
        return volumetric, actual, volumetric
    return max(actual, volumetric), actual, volumetric


def fallback_amount(weight_kg: Decimal) -> Decimal:
    return round2(max(
        to_decimal(settings.FALLBACK_MIN_AMOUNT),
        to_decimal(weight_kg) * to_decimal(settings.FALLBACK_PER_KG),
    ))


class RateFormulaResolver:
    """Stateless calculator for cost and sell rate cards."""

    def resolve(self, card: Optional[RateCard], inp: FormulaInput) -> FormulaResult:
        """Price ``inp`` on ``card``; never raises for pricing gaps."""
        if card is None:
            return self.fallback(inp)
        try:
            return self._compute(card, inp)
        except InsufficientData as e:
            logger.info(f"Rate card {card.id} has no usable rule: {e.message}")
        except (ArithmeticError, ValueError) as e:
            logger.warning(f"Rate card {card.id} formula failed, using fallback: {e}")
        return self.fallback(inp)

    def fallback(self, inp: FormulaInput) -> FormulaResult:
        chargeable, actual, volumetric = chargeable_weight(inp)
        amount = fallback_amount(chargeable)
        breakdown = PriceBreakdown(
            source="fallback",
            actual_weight_kg=actual,
            volumetric_weight_kg=volumetric,
            chargeable_weight_kg=chargeable,
            zone=zone_lookup_key(inp.zone),
            base_charge=amount,
            freight_subtotal=amount,
            total=amount,
        )
        return FormulaResult(amount, breakdown, "low")

    # ============================================
    # FORMULA
    # ============================================

    def _compute(self, card: RateCard, inp: FormulaInput) -> FormulaResult:
        cfg: RateCardConfig = card.config
        weight, actual, volumetric = chargeable_weight(inp, cfg.weight_basis, cfg.dim_divisor)

        rule, zone_fallback = self.match_zone_rule(cfg.zone_rules, inp.zone)
        per_kg = rule.additional_per_kg if rule.additional_per_kg is not None else cfg.additional_per_kg

        base, units, weight_charge = self.slab_charge(rule.slabs, weight, cfg.rounding, per_kg)
        freight = round2(base + weight_charge)

        cod = Decimal("0")
        cod_fallback = False
        if inp.is_cod:
            cod, cod_fallback = self.cod_charge(cfg.cod_rule, inp.order_value)

        fuel = Decimal("0")
        if cfg.fuel_rule:
            fuel_base = freight + cod if cfg.fuel_rule.base == "freight_cod" else freight
            fuel = round2(fuel_base * cfg.fuel_rule.percent / HUNDRED)

        pre_tax = freight + cod + fuel
        minimum_adjustment = Decimal("0")
        if cfg.minimum_fare and pre_tax < cfg.minimum_fare:
            minimum_adjustment = round2(cfg.minimum_fare - pre_tax)

        rto, rto_fallback = self.rto_charge(rule, freight)

        taxable = pre_tax + minimum_adjustment
        if cfg.include_rto_in_total:
            taxable += rto
        tax = round2(taxable * cfg.tax_rate_percent / HUNDRED)
        total = round2(taxable + tax)

        breakdown = PriceBreakdown(
            source="table",
            actual_weight_kg=actual,
            volumetric_weight_kg=volumetric,
            chargeable_weight_kg=weight,
            weight_basis=cfg.weight_basis,
            zone=zone_lookup_key(inp.zone) or zone_lookup_key(rule.zone_key),
            zone_fallback_applied=zone_fallback,
            base_charge=round2(base),
            weight_charge=round2(weight_charge),
            overage_units=units,
            freight_subtotal=freight,
            cod_charge=round2(cod),
            cod_fallback_applied=cod_fallback,
            fuel_surcharge=fuel,
            minimum_fare_adjustment=minimum_adjustment,
            rto_charge=round2(rto),
            rto_fallback_applied=rto_fallback,
            rto_included_in_total=cfg.include_rto_in_total,
            tax_rate_percent=cfg.tax_rate_percent,
            tax_amount=tax,
            total=total,
            rate_card_id=card.id,
        )
        return FormulaResult(total, breakdown, "medium")

    def match_zone_rule(self, rules: List[ZoneRule], zone: Optional[str]) -> Tuple[ZoneRule, bool]:
        """
        Find the zone rule for a requested zone.

        Returns:
            Tuple of (rule, zone_fallback_applied)
        """
        if not rules:
            raise InsufficientData("Rate card has no zone rules")

        wanted = zone_lookup_key(zone)
        if wanted:
            for rule in rules:
                if zone_lookup_key(rule.zone_key) == wanted:
                    return rule, False
        for rule in rules:
            if zone_lookup_key(rule.zone_key) == ALL_ZONES:
                return rule, False

        # No mapping for this zone: price on the card's first rule and say so
        logger.debug(f"Zone '{zone}' not on card, falling back to '{rules[0].zone_key}'")
        return rules[0], True

    def slab_charge(
        self,
        slabs: List[WeightSlab],
        weight: Decimal,
        rounding: RoundingPolicy,
        additional_per_kg: Decimal,
    ) -> Tuple[Decimal, Decimal, Decimal]:
        """
        Charge for a chargeable weight.

        Returns:
            Tuple of (slab_charge, overage_units, overage_charge)
        """
        ordered = sorted(slabs, key=lambda s: s.min_kg)
        top = ordered[-1]

        if weight >= top.max_kg:
            extra = weight - top.max_kg
            units = self.round_units(extra / rounding.unit, rounding.mode)
            # Overage is billed on the rounded extra weight
            return top.charge, units, units * rounding.unit * additional_per_kg

        for slab in ordered:
            if slab.min_kg <= weight < slab.max_kg:
                return slab.charge, Decimal("0"), Decimal("0")

        below = [s for s in ordered if s.min_kg <= weight]
        slab = below[-1] if below else ordered[0]
        return slab.charge, Decimal("0"), Decimal("0")

    @staticmethod
    def round_units(units: Decimal, mode: str) -> Decimal:
        if units <= 0:
            return Decimal("0")
        if mode == "floor":
            return units.to_integral_value(rounding=ROUND_FLOOR)
        if mode == "nearest":
            return units.to_integral_value(rounding=ROUND_HALF_UP)
        return units.to_integral_value(rounding=ROUND_CEILING)

    def cod_charge(self, rule: Optional[CodRule], order_value: Decimal) -> Tuple[Decimal, bool]:
        """
        COD charge for an order value.

        Returns:
            Tuple of (charge, fallback_applied)
        """
        if rule is None:
            charge = max(order_value * COD_FALLBACK_PERCENT / HUNDRED, COD_FALLBACK_MINIMUM)
            return round2(charge), True

        if rule.type == "flat":
            return round2(rule.amount), False

        if rule.type == "percentage":
            charge = order_value * rule.percent / HUNDRED
            if rule.min_charge is not None and charge < rule.min_charge:
                charge = rule.min_charge
            if rule.max_charge is not None and charge > rule.max_charge:
                charge = rule.max_charge
            return round2(charge), False

        slabs = sorted(rule.slabs, key=lambda s: s.up_to_order_value)
        if not slabs:
            return round2(rule.amount), False
        for slab in slabs:
            if order_value <= slab.up_to_order_value:
                return round2(slab.charge), False
        return round2(slabs[-1].charge), False

    def rto_charge(self, rule: ZoneRule, freight: Decimal) -> Tuple[Decimal, bool]:
        """RTO charge; without a rule it mirrors forward freight."""
        if rule.rto_rule is None:
            return freight, True
        if rule.rto_rule.type == "flat":
            return round2(rule.rto_rule.amount), False
        return round2(freight * rule.rto_rule.percent / HUNDRED), False
