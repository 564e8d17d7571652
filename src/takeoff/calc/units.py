"""Unit conversion between compatible measurement units.

The closed unit set is a pint registry built from an empty definition
file, so only the tags defined below ever resolve. Definition literals
are parsed as fractions.Fraction, which keeps every factor exact; the
amount itself is multiplied as a Decimal and rounded once to 28
significant digits. Currency-rate basis units ("per_m2", "per_each", ...)
are defined as reciprocals of the physical units and convert with the
inverse factor.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, Overflow, localcontext
from enum import StrEnum
from fractions import Fraction
from functools import lru_cache

from pint import UnitRegistry
from pint.errors import DimensionalityError, UndefinedUnitError

from takeoff.errors import ConversionRangeError, IncompatibleUnitsError, UnknownUnitError

RATE_PREFIX = "per_"

CONVERSION_PRECISION = 28
# Adjusted-exponent bounds of the default decimal context
MAX_EXPONENT = 999_999
MIN_EXPONENT = -999_999

_ONE = Decimal("1")


class UnitClass(StrEnum):
    """Physical quantity classes. Conversion only happens within one class."""

    LENGTH = "length"
    AREA = "area"
    VOLUME = "volume"
    MASS = "mass"
    COUNT = "count"
    LUMP_SUM = "lump_sum"
    RATIO = "ratio"
    RATE_LENGTH = "rate_length"
    RATE_AREA = "rate_area"
    RATE_VOLUME = "rate_volume"
    RATE_MASS = "rate_mass"
    RATE_COUNT = "rate_count"
    RATE_LUMP_SUM = "rate_lump_sum"


# unit -> (class, pint definition of the unit); order matters, references come first
_PHYSICAL_UNITS: dict[str, tuple[UnitClass, str]] = {
    "m": (UnitClass.LENGTH, "[length]"),
    "mm": (UnitClass.LENGTH, "0.001 * m"),
    "cm": (UnitClass.LENGTH, "0.01 * m"),
    "km": (UnitClass.LENGTH, "1000 * m"),
    "inch": (UnitClass.LENGTH, "0.0254 * m"),
    "ft": (UnitClass.LENGTH, "0.3048 * m"),
    "yd": (UnitClass.LENGTH, "0.9144 * m"),
    "m2": (UnitClass.AREA, "m ** 2"),
    "mm2": (UnitClass.AREA, "mm ** 2"),
    "cm2": (UnitClass.AREA, "cm ** 2"),
    "inch2": (UnitClass.AREA, "inch ** 2"),
    "ft2": (UnitClass.AREA, "ft ** 2"),
    "yd2": (UnitClass.AREA, "yd ** 2"),
    "m3": (UnitClass.VOLUME, "m ** 3"),
    "cm3": (UnitClass.VOLUME, "cm ** 3"),
    "l": (UnitClass.VOLUME, "0.001 * m3"),
    "ft3": (UnitClass.VOLUME, "ft ** 3"),
    "yd3": (UnitClass.VOLUME, "yd ** 3"),
    "kg": (UnitClass.MASS, "[mass]"),
    "g": (UnitClass.MASS, "0.001 * kg"),
    "t": (UnitClass.MASS, "1000 * kg"),
    "lb": (UnitClass.MASS, "0.45359237 * kg"),
    "each": (UnitClass.COUNT, "[count]"),
    "pair": (UnitClass.COUNT, "2 * each"),
    "dozen": (UnitClass.COUNT, "12 * each"),
    "lot": (UnitClass.LUMP_SUM, "[lump_sum]"),
    "ratio": (UnitClass.RATIO, "[ratio]"),
    "pct": (UnitClass.RATIO, "0.01 * ratio"),
}

_RATE_CLASS: dict[UnitClass, UnitClass] = {
    UnitClass.LENGTH: UnitClass.RATE_LENGTH,
    UnitClass.AREA: UnitClass.RATE_AREA,
    UnitClass.VOLUME: UnitClass.RATE_VOLUME,
    UnitClass.MASS: UnitClass.RATE_MASS,
    UnitClass.COUNT: UnitClass.RATE_COUNT,
    UnitClass.LUMP_SUM: UnitClass.RATE_LUMP_SUM,
}

_ALIASES: dict[str, str] = {
    "metre": "m",
    "meter": "m",
    "millimetre": "mm",
    "millimeter": "mm",
    "in": "inch",
    "foot": "ft",
    "feet": "ft",
    "sqm": "m2",
    "m^2": "m2",
    "m²": "m2",
    "sqft": "ft2",
    "ft^2": "ft2",
    "m^3": "m3",
    "m³": "m3",
    "cum": "m3",
    "ft^3": "ft3",
    "litre": "l",
    "liter": "l",
    "ea": "each",
    "nr": "each",
    "no": "each",
    "pcs": "each",
    "ls": "lot",
    "%": "pct",
    "percent": "pct",
}


def _build_classes() -> dict[str, UnitClass]:
    classes: dict[str, UnitClass] = {}
    for unit, (cls, _) in _PHYSICAL_UNITS.items():
        classes[unit] = cls
        if cls in _RATE_CLASS:
            classes[RATE_PREFIX + unit] = _RATE_CLASS[cls]
    return classes


_UNIT_CLASSES = _build_classes()


def _build_registry() -> UnitRegistry:
    registry = UnitRegistry(None, non_int_type=Fraction)
    for unit, (cls, reference) in _PHYSICAL_UNITS.items():
        registry.define(f"{unit} = {reference}")
        if cls in _RATE_CLASS:
            # 1 currency per ft2 is (1 / 0.09290304) currency per m2
            registry.define(f"{RATE_PREFIX}{unit} = 1 / {unit}")
    return registry


@lru_cache(maxsize=1)
def get_registry() -> UnitRegistry:
    """Return the shared registry holding the closed unit set."""
    return _build_registry()


def normalize_unit(unit: str) -> str:
    """Return the canonical tag for a unit, resolving aliases.

    Raises:
        UnknownUnitError: If the unit is not in the supported set.
    """
    if not isinstance(unit, str):
        raise UnknownUnitError(repr(unit))
    tag = unit.strip().lower()
    if tag.startswith(RATE_PREFIX):
        tag = RATE_PREFIX + _ALIASES.get(tag[len(RATE_PREFIX) :], tag[len(RATE_PREFIX) :])
    else:
        tag = _ALIASES.get(tag, tag)
    if tag not in _UNIT_CLASSES:
        raise UnknownUnitError(unit)
    return tag


def unit_class(unit: str) -> UnitClass:
    """Return the physical quantity class of a unit."""
    return _UNIT_CLASSES[normalize_unit(unit)]


def is_supported(unit: str) -> bool:
    """True if the unit (or one of its aliases) is supported."""
    try:
        normalize_unit(unit)
    except UnknownUnitError:
        return False
    return True


def supported_units() -> dict[str, list[str]]:
    """Canonical unit tags grouped by class, sorted for stable output."""
    grouped: dict[str, list[str]] = {}
    for unit, cls in _UNIT_CLASSES.items():
        grouped.setdefault(cls.value, []).append(unit)
    return {cls: sorted(units) for cls, units in sorted(grouped.items())}


def in_range(amount: Decimal) -> bool:
    """True if a finite amount lies within the exponent range conversions run in."""
    if not amount.is_finite():
        return False
    return amount.is_zero() or MIN_EXPONENT <= amount.adjusted() <= MAX_EXPONENT


@lru_cache(maxsize=1024)
def _exact_factor(source: str, target: str) -> Fraction:
    registry = get_registry()
    try:
        converted = registry.Quantity(Fraction(1), source).to(target)
    except UndefinedUnitError as e:
        raise UnknownUnitError(str(e)) from e
    except DimensionalityError as e:
        raise IncompatibleUnitsError(
            source, target, _UNIT_CLASSES[source].value, _UNIT_CLASSES[target].value
        ) from e
    return Fraction(converted.magnitude)


def _factor(from_unit: str, to_unit: str) -> Fraction:
    source = normalize_unit(from_unit)
    target = normalize_unit(to_unit)
    if source == target:
        return Fraction(1)
    if _UNIT_CLASSES[source] != _UNIT_CLASSES[target]:
        raise IncompatibleUnitsError(
            from_unit, to_unit, _UNIT_CLASSES[source].value, _UNIT_CLASSES[target].value
        )
    return _exact_factor(source, target)


def conversion_factor(from_unit: str, to_unit: str) -> Decimal:
    """Return the multiplier converting an amount in from_unit to to_unit.

    Identical units (after alias resolution) return exactly Decimal("1").

    Raises:
        UnknownUnitError: If either unit is unsupported.
        IncompatibleUnitsError: If the units belong to different classes.
    """
    factor = _factor(from_unit, to_unit)
    if factor == 1:
        return _ONE
    with localcontext() as ctx:
        ctx.prec = CONVERSION_PRECISION
        return Decimal(factor.numerator) / Decimal(factor.denominator)


def convert(amount: Decimal, from_unit: str, to_unit: str) -> Decimal:
    """Convert an amount between two units of the same class.

    The amount is multiplied by the factor's numerator exactly and divided
    by its denominator once, rounding to 28 significant digits. Amount must
    be finite and within the MIN_EXPONENT..MAX_EXPONENT range.

    Raises:
        UnknownUnitError: If either unit is unsupported.
        IncompatibleUnitsError: If the units belong to different classes.
        ConversionRangeError: If the amount or the converted amount is
            outside the supported exponent range.
    """
    factor = _factor(from_unit, to_unit)
    if factor == 1:
        return amount
    if not in_range(amount):
        raise ConversionRangeError(str(amount), from_unit, to_unit)
    numerator = Decimal(factor.numerator)
    try:
        with localcontext() as ctx:
            ctx.Emax = MAX_EXPONENT
            ctx.Emin = MIN_EXPONENT
            ctx.traps[Overflow] = True
            ctx.traps[InvalidOperation] = True
            # exact product: enough digits for both coefficients
            ctx.prec = len(amount.as_tuple().digits) + len(numerator.as_tuple().digits)
            product = amount * numerator
            ctx.prec = CONVERSION_PRECISION
            return product / Decimal(factor.denominator)
    except (Overflow, InvalidOperation) as e:
        raise ConversionRangeError(str(amount), from_unit, to_unit) from e
