"""Rate formula: chargeable weight, slabs, overage rounding, surcharges and fallback."""
import uuid
from decimal import Decimal

import pytest

from shiprate.schemas.catalog import (
    CodRule, FuelRule, RateCardConfig, RoundingPolicy, RtoRule, WeightSlab, ZoneRule
)
from shiprate.services.rate_formula import (
    FormulaInput,
    RateFormulaResolver,
    chargeable_weight,
    fallback_amount,
)
from tests.conftest import basic_config, make_card, make_service


@pytest.fixture
def resolver():
    return RateFormulaResolver()


@pytest.fixture
def service():
    return make_service(uuid.uuid4(), "delhivery")


def _card(service, **config_overrides):
    config = basic_config(tax="0").model_copy(update=config_overrides)
    return make_card(service, "cost", config)


class TestChargeableWeight:
    def test_actual_weight_without_dimensions(self):
        chargeable, actual, volumetric = chargeable_weight(FormulaInput(weight_kg="0.5"))
        assert chargeable == Decimal("0.500")
        assert volumetric == Decimal("0")

    def test_volumetric_wins_when_heavier(self):
        inp = FormulaInput(weight_kg="0.5", length_cm=30, width_cm=20, height_cm=10)
        chargeable, actual, volumetric = chargeable_weight(inp, "max", 5000)
        assert volumetric == Decimal("1.200")
        assert chargeable == Decimal("1.200")

    def test_actual_basis_ignores_dimensions(self):
        inp = FormulaInput(weight_kg="0.5", length_cm=30, width_cm=20, height_cm=10)
        chargeable, _, _ = chargeable_weight(inp, "actual", 5000)
        assert chargeable == Decimal("0.500")


class TestSlabsAndOverage:
    def test_half_kg_cod_prices_base_plus_flat_cod(self, resolver, service):
        config = RateCardConfig(
            zone_rules=[ZoneRule(
                zone_key="A",
                slabs=[WeightSlab(min_kg=Decimal("0"), max_kg=Decimal("0.5"), charge=Decimal("40"))],
            )],
            cod_rule=CodRule(type="flat", amount=Decimal("20")),
            tax_rate_percent=Decimal("0"),
        )
        card = make_card(service, "sell", config)
        result = resolver.resolve(card, FormulaInput(weight_kg="0.5", zone="A", payment_mode="cod", order_value=1000))

        assert result.breakdown.base_charge == Decimal("40.00")
        assert result.breakdown.cod_charge == Decimal("20.00")
        assert result.amount >= Decimal("60")
        assert result.confidence == "medium"
        assert result.breakdown.source == "table"

    def test_overage_is_charged_on_rounded_extra_weight(self, resolver, service):
        result = resolver.resolve(_card(service), FormulaInput(weight_kg="2.3", zone="zone_a"))

        # Top slab [1, 2) charges 70; 0.3 kg over rounds up to 0.5 kg at 30 per kg
        assert result.breakdown.base_charge == Decimal("70.00")
        assert result.breakdown.overage_units == Decimal("1")
        assert result.breakdown.weight_charge == Decimal("15.00")
        assert result.amount == Decimal("85.00")

    def test_heavy_parcel_overage(self, resolver, service):
        card = make_card(service, "cost", basic_config(tax="0", additional_per_kg="50"))
        result = resolver.resolve(card, FormulaInput(weight_kg="4.8", zone="zone_a"))

        # 2.8 kg over is six 0.5 kg units, 3 kg at 50 per kg
        assert result.breakdown.overage_units == Decimal("6")
        assert result.breakdown.weight_charge == Decimal("150.00")
        assert result.amount == Decimal("220.00")

    def test_floor_rounding_drops_partial_unit(self, resolver, service):
        config = basic_config(tax="0").model_copy(update={
            "rounding": RoundingPolicy(unit=Decimal("0.5"), mode="floor"),
        })
        card = make_card(service, "cost", config)
        result = resolver.resolve(card, FormulaInput(weight_kg="2.3", zone="zone_a"))
        assert result.breakdown.weight_charge == Decimal("0.00")

    def test_weight_inside_middle_slab(self, resolver, service):
        result = resolver.resolve(_card(service), FormulaInput(weight_kg="0.75", zone="zone_a"))
        assert result.breakdown.base_charge == Decimal("55.00")
        assert result.breakdown.overage_units == Decimal("0")

    def test_tax_applies_to_pre_tax_total(self, resolver, service):
        card = make_card(service, "sell", basic_config(base="40", cod="20", tax="18"))
        result = resolver.resolve(card, FormulaInput(weight_kg="0.4", zone="A", payment_mode="cod", order_value=500))
        assert result.breakdown.tax_amount == Decimal("10.80")
        assert result.amount == Decimal("70.80")


class TestZoneLookup:
    def test_unknown_zone_uses_first_rule_and_flags_it(self, resolver, service):
        result = resolver.resolve(_card(service), FormulaInput(weight_kg="0.4", zone="zone_e"))
        assert result.breakdown.zone_fallback_applied is True
        assert result.breakdown.base_charge == Decimal("40.00")

    def test_zone_spellings_match_the_same_rule(self, resolver, service):
        for spelling in ("A", "zone_a", "Zone-A", "z_a", "within city"):
            result = resolver.resolve(_card(service), FormulaInput(weight_kg="0.4", zone=spelling))
            assert result.breakdown.zone_fallback_applied is False, spelling

    def test_all_zone_rule_is_wildcard(self, resolver, service):
        card = make_card(service, "cost", basic_config(tax="0", zone_key="all"))
        result = resolver.resolve(card, FormulaInput(weight_kg="0.4", zone="zone_d"))
        assert result.breakdown.zone_fallback_applied is False


class TestSurcharges:
    def test_cod_percentage_respects_minimum(self, resolver):
        rule = CodRule(type="percentage", percent=Decimal("2"), min_charge=Decimal("30"))
        charge, fallback = resolver.cod_charge(rule, Decimal("500"))
        assert charge == Decimal("30.00")
        assert fallback is False

    def test_cod_percentage_respects_maximum(self, resolver):
        rule = CodRule(type="percentage", percent=Decimal("2"), max_charge=Decimal("100"))
        charge, _ = resolver.cod_charge(rule, Decimal("10000"))
        assert charge == Decimal("100.00")

    def test_cod_slab_picks_first_covering_slab(self, resolver):
        rule = CodRule(type="slab", slabs=[
            {"up_to_order_value": Decimal("1000"), "charge": Decimal("25")},
            {"up_to_order_value": Decimal("5000"), "charge": Decimal("45")},
        ])
        assert resolver.cod_charge(rule, Decimal("1200"))[0] == Decimal("45.00")
        assert resolver.cod_charge(rule, Decimal("9000"))[0] == Decimal("45.00")

    def test_missing_cod_rule_uses_fallback(self, resolver):
        charge, fallback = resolver.cod_charge(None, Decimal("2000"))
        assert charge == Decimal("40.00")
        assert fallback is True

    def test_fuel_and_minimum_fare(self, resolver, service):
        config = basic_config(tax="0", cod=None).model_copy(update={
            "fuel_rule": FuelRule(percent=Decimal("10")),
            "minimum_fare": Decimal("100"),
        })
        result = resolver.resolve(make_card(service, "cost", config), FormulaInput(weight_kg="0.4", zone="A"))
        assert result.breakdown.fuel_surcharge == Decimal("4.00")
        assert result.breakdown.minimum_fare_adjustment == Decimal("56.00")
        assert result.amount == Decimal("100.00")

    def test_rto_mirrors_freight_without_rule(self, resolver, service):
        result = resolver.resolve(_card(service), FormulaInput(weight_kg="0.4", zone="A"))
        assert result.breakdown.rto_charge == Decimal("40.00")
        assert result.breakdown.rto_fallback_applied is True
        assert result.amount == Decimal("40.00")

    def test_rto_percentage_rule(self, resolver, service):
        config = RateCardConfig(
            zone_rules=[ZoneRule(
                zone_key="zone_a",
                slabs=[WeightSlab(min_kg=Decimal("0"), max_kg=Decimal("1"), charge=Decimal("80"))],
                rto_rule=RtoRule(type="percentage", percent=Decimal("50")),
            )],
            tax_rate_percent=Decimal("0"),
            include_rto_in_total=True,
        )
        result = resolver.resolve(make_card(service, "cost", config), FormulaInput(weight_kg="0.4", zone="A"))
        assert result.breakdown.rto_charge == Decimal("40.00")
        assert result.amount == Decimal("120.00")


class TestFallback:
    def test_no_card_uses_flat_floor(self, resolver):
        result = resolver.resolve(None, FormulaInput(weight_kg="1"))
        assert result.amount == Decimal("50.00")
        assert result.confidence == "low"
        assert result.is_fallback

    def test_no_card_scales_with_weight(self, resolver):
        result = resolver.resolve(None, FormulaInput(weight_kg="3"))
        assert result.amount == Decimal("60.00")

    def test_card_without_zone_rules_falls_back(self, resolver, service):
        card = make_card(service, "cost", RateCardConfig(zone_rules=[]))
        result = resolver.resolve(card, FormulaInput(weight_kg="0.4", zone="A"))
        assert result.is_fallback
        assert result.confidence == "low"

    def test_fallback_amount_helper(self):
        assert fallback_amount(Decimal("2.6")) == Decimal("52.00")
