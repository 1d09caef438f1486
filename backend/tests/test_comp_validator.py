"""Tests for cross-field comp repair: $/SF in the price column, derived per-unit and per-SF prices."""
import pytest

from models import NormalizedComp
from services.comp_validator import RepairConfig, validate_all, validate_and_repair


def test_price_per_sf_in_sale_price_column_is_repaired():
    comp = NormalizedComp(property_name="Elm Court", units=200, sale_price=264.19)
    fixed, warnings = validate_and_repair(comp)
    assert fixed.price_per_sf == 264.19
    assert fixed.sale_price == pytest.approx(47_554_200.0)
    assert fixed.price_per_unit == pytest.approx(237_771.0)
    assert warnings == ["Elm Court: sale_price=264.19 looks like $/SF, correcting"]


def test_input_is_not_modified():
    comp = NormalizedComp(property_name="Elm Court", units=200, sale_price=264.19)
    validate_and_repair(comp)
    assert comp.sale_price == 264.19
    assert comp.price_per_unit is None


def test_repair_uses_avg_unit_sf_when_present():
    comp = NormalizedComp(units=100, sale_price=300.0, avg_unit_sf=1000.0)
    fixed, _ = validate_and_repair(comp)
    assert fixed.sale_price == 30_000_000.0
    assert fixed.price_per_sf == 300.0


def test_repair_is_idempotent():
    comp = NormalizedComp(property_name="Elm Court", units=200, sale_price=264.19)
    once, _ = validate_and_repair(comp)
    twice, warnings = validate_and_repair(once)
    assert twice == once
    assert warnings == []


def test_small_property_is_left_alone():
    comp = NormalizedComp(units=8, sale_price=5_000.0)
    fixed, warnings = validate_and_repair(comp)
    assert fixed.sale_price == 5_000.0
    assert fixed.price_per_unit is None
    assert warnings == []


def test_price_per_unit_below_floor_is_recomputed():
    comp = NormalizedComp(units=200, sale_price=50_000_000.0, price_per_unit=250.0)
    fixed, _ = validate_and_repair(comp)
    assert fixed.price_per_unit == 250_000.0


def test_price_per_sf_derived_from_total_sf():
    comp = NormalizedComp(units=100, sale_price=20_000_000.0, avg_unit_sf=800.0)
    fixed, _ = validate_and_repair(comp)
    assert fixed.price_per_sf == 250.0


def test_implausible_price_per_unit_warns_only():
    comp = NormalizedComp(property_name="Cheap Flats", units=200, sale_price=2_000_000.0)
    fixed, warnings = validate_and_repair(comp)
    assert fixed.price_per_unit == 10_000.0
    assert warnings == [
        "Cheap Flats: derived price_per_unit=10000.0 outside expected range $20,000 to $2,000,000"
    ]


def test_default_unit_sf_is_configurable():
    comp = NormalizedComp(units=100, sale_price=200.0)
    fixed, _ = validate_and_repair(comp, config=RepairConfig(default_unit_sf=1000.0))
    assert fixed.sale_price == 20_000_000.0


def test_validate_all_collects_warnings():
    comps = [
        NormalizedComp(property_name="A", units=200, sale_price=264.19),
        NormalizedComp(property_name="B", units=200, sale_price=40_000_000.0),
    ]
    fixed, warnings = validate_all(comps)
    assert len(fixed) == 2
    assert len(warnings) == 1
    assert fixed[1].price_per_unit == 200_000.0
