"""Tests for unit conversion.

Tests verify:
- Identical units return the input unchanged with factor exactly 1
- Conversions within a class use exact factors
- Cross-class conversions and unknown units fail with typed errors
- Rate-basis units convert with the inverse factor
- Amounts outside the decimal exponent range fail before any arithmetic
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from takeoff.calc.units import (
    MAX_EXPONENT,
    UnitClass,
    conversion_factor,
    convert,
    get_registry,
    in_range,
    is_supported,
    normalize_unit,
    supported_units,
    unit_class,
)
from takeoff.errors import (
    ConversionRangeError,
    IncompatibleUnitsError,
    UnitError,
    UnknownUnitError,
)


class TestIdentity:
    """Same-unit conversion is a no-op."""

    def test_identical_units_return_input_object(self) -> None:
        """Converting m to m returns the exact same Decimal."""
        amount = Decimal("1.23456789012345678901234567")
        assert convert(amount, "m", "m") is amount

    def test_identical_units_factor_is_exactly_one(self) -> None:
        """conversion_factor for identical units is Decimal('1')."""
        factor = conversion_factor("m2", "m2")
        assert factor == Decimal("1")
        assert str(factor) == "1"

    def test_alias_to_canonical_is_identity(self) -> None:
        """sqm and m2 are the same unit."""
        amount = Decimal("7.5")
        assert convert(amount, "sqm", "m2") is amount


class TestWithinClass:
    """Conversions inside one physical class."""

    def test_mm_to_m(self) -> None:
        assert convert(Decimal("2500"), "mm", "m") == Decimal("2.5")

    def test_ft_to_m_is_exact(self) -> None:
        assert convert(Decimal("10"), "ft", "m") == Decimal("3.048")

    def test_inch_to_ft(self) -> None:
        assert convert(Decimal("24"), "inch", "ft") == Decimal("2")

    def test_ft2_to_m2(self) -> None:
        assert convert(Decimal("100"), "ft2", "m2") == Decimal("9.290304")

    def test_litres_to_m3(self) -> None:
        assert convert(Decimal("1500"), "l", "m3") == Decimal("1.5")

    def test_dozen_to_each(self) -> None:
        assert convert(Decimal("3"), "dozen", "each") == Decimal("36")

    def test_pct_to_ratio(self) -> None:
        assert convert(Decimal("10"), "pct", "ratio") == Decimal("0.1")

    def test_round_trip_of_exact_factors(self) -> None:
        """yd -> m -> yd returns the original amount for an exact factor."""
        there = convert(Decimal("3"), "yd", "m")
        assert convert(there, "m", "yd") == Decimal("3")


class TestRateBasis:
    """per_<unit> tags convert with the inverse factor."""

    def test_per_ft2_to_per_m2(self) -> None:
        """10 per ft2 is more per m2 because an m2 holds ~10.76 ft2."""
        result = convert(Decimal("10"), "per_ft2", "per_m2")
        assert result > Decimal("107")
        assert result < Decimal("108")

    def test_rate_class(self) -> None:
        assert unit_class("per_m2") == UnitClass.RATE_AREA

    def test_rate_alias(self) -> None:
        assert normalize_unit("per_sqm") == "per_m2"

    def test_rate_and_quantity_are_incompatible(self) -> None:
        with pytest.raises(IncompatibleUnitsError):
            convert(Decimal("1"), "per_m2", "m2")


class TestErrors:
    """Typed failures for bad conversions."""

    def test_incompatible_classes(self) -> None:
        """Length to area fails with IncompatibleUnitsError naming both classes."""
        with pytest.raises(IncompatibleUnitsError) as exc_info:
            convert(Decimal("1"), "m", "m2")
        assert exc_info.value.context["from_class"] == "length"
        assert exc_info.value.context["to_class"] == "area"

    def test_unknown_unit(self) -> None:
        with pytest.raises(UnknownUnitError):
            convert(Decimal("1"), "furlong", "m")

    def test_unit_errors_share_base(self) -> None:
        with pytest.raises(UnitError):
            conversion_factor("m", "kg")

    def test_non_string_unit(self) -> None:
        with pytest.raises(UnknownUnitError):
            normalize_unit(None)  # type: ignore[arg-type]


class TestCatalogue:
    """Introspection helpers."""

    def test_line_item_units_are_supported(self) -> None:
        for unit in ["m2", "m", "m3", "inch", "ft", "yd", "cm", "mm", "kg", "each", "lot"]:
            assert is_supported(unit), unit

    def test_supported_units_grouped_and_sorted(self) -> None:
        grouped = supported_units()
        assert grouped["length"] == sorted(grouped["length"])
        assert "m" in grouped["length"]
        assert "per_m2" in grouped["rate_area"]
        assert list(grouped) == sorted(grouped)

    def test_normalize_is_case_insensitive(self) -> None:
        assert normalize_unit(" M2 ") == "m2"


class TestRegistry:
    """The closed unit set is a pint registry with exact factors."""

    def test_only_closed_set_is_defined(self) -> None:
        registry = get_registry()
        assert "per_m2" in registry
        assert "furlong" not in registry

    def test_registry_is_shared(self) -> None:
        assert get_registry() is get_registry()

    def test_derived_factors_are_exact(self) -> None:
        assert conversion_factor("yd3", "m3") == Decimal("0.764554857984")
        assert conversion_factor("lb", "g") == Decimal("453.59237")

    def test_inverse_factor_rounds_once(self) -> None:
        """1 / 0.09290304 to 28 significant digits."""
        assert conversion_factor("per_ft2", "per_m2") == Decimal("10.76391041670972230833350556")


class TestMagnitude:
    """Exponents are bounded before any conversion arithmetic."""

    @pytest.mark.parametrize("amount", ["1E+3000000", "1E-3000000", "-7E+1000000"])
    def test_out_of_range_amount_rejected(self, amount: str) -> None:
        with pytest.raises(ConversionRangeError) as exc_info:
            convert(Decimal(amount), "mm", "m")
        assert exc_info.value.context["amount"] == amount

    def test_overflow_after_scaling_rejected(self) -> None:
        """In range before conversion, out of range after km -> mm."""
        amount = Decimal(f"9E+{MAX_EXPONENT}")
        assert in_range(amount)
        with pytest.raises(ConversionRangeError):
            convert(amount, "km", "mm")

    def test_range_error_is_a_unit_error(self) -> None:
        with pytest.raises(UnitError):
            convert(Decimal("1E+3000000"), "ft", "m")

    def test_in_range(self) -> None:
        assert in_range(Decimal("13.5"))
        assert in_range(Decimal("0E-3000000"))
        assert not in_range(Decimal("1E+3000000"))
        assert not in_range(Decimal("NaN"))
        assert not in_range(Decimal("Infinity"))

    def test_large_coefficient_converts_exactly(self) -> None:
        amount = Decimal("123456789012345678901234567")
        assert convert(amount, "m", "mm") == amount * 1000
