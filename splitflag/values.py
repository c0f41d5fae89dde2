"""Conversions between the dynamic values found in attributes, conditions and
datafile variables and the typed values the matchers and decisions work with.

Attribute values are one of ``None``, ``bool``, ``str``, ``int`` or ``float``.
``bool`` is a subclass of ``int`` in Python, so every numeric helper here
excludes it explicitly.
"""

import json
import math
import decimal
import numbers
import logging

from typing import Any, Optional, Tuple

logger = logging.getLogger("splitflag.values")

# Largest integer a double can represent exactly.
MAX_EXACT_NUMBER = 2 ** 53

VARIABLE_TYPES = ("string", "integer", "double", "boolean", "json")


def is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    return isinstance(value, (numbers.Real, decimal.Decimal))


def to_float(value: Any) -> Optional[float]:
    """Return ``value`` as a float, or None when it is not a number.

    Decimals, fractions and other ``numbers.Real`` implementations convert;
    booleans, strings and containers do not.
    """
    if not is_numeric(value):
        return None
    try:
        return float(value)
    except (TypeError, ValueError, OverflowError):
        return None


def to_bool(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


def to_string(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def to_int(value: Any) -> Optional[int]:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def is_finite_number(value: Any) -> bool:
    # ints are checked exactly, float() would round 2**53 + 1 down
    if isinstance(value, int) and not isinstance(value, bool):
        return abs(value) <= MAX_EXACT_NUMBER
    number = to_float(value)
    if number is None:
        return False
    if math.isnan(number) or math.isinf(number):
        return False
    return abs(number) <= MAX_EXACT_NUMBER


def is_valid_attribute_value(value: Any) -> bool:
    if isinstance(value, (bool, str)):
        return True
    return is_finite_number(value)


def is_primitive(value: Any) -> bool:
    """Values allowed in ODP event data: null, bool, str, int or float."""
    if value is None or isinstance(value, (bool, str)):
        return True
    return is_numeric(value)


def same_family(a: Any, b: Any) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool)
    if isinstance(a, str) or isinstance(b, str):
        return isinstance(a, str) and isinstance(b, str)
    return is_numeric(a) and is_numeric(b)


def parse_variable_value(raw: Any, var_type: str) -> Tuple[Any, bool]:
    """Parse a datafile variable value (always a string in the datafile)
    into its declared type. Returns ``(value, ok)``."""
    if not isinstance(raw, str):
        if var_type == "string":
            return None, False
        # Values already decoded by an upstream JSON layer
        if var_type == "boolean" and isinstance(raw, bool):
            return raw, True
        if var_type == "integer" and to_int(raw) is not None:
            return raw, True
        if var_type == "double" and is_numeric(raw):
            return float(raw), True
        if var_type == "json" and isinstance(raw, (dict, list)):
            return raw, True
        return None, False

    if var_type == "string":
        return raw, True
    if var_type == "boolean":
        lowered = raw.strip().lower()
        if lowered == "true":
            return True, True
        if lowered == "false":
            return False, True
        return None, False
    if var_type == "integer":
        try:
            return int(raw), True
        except ValueError:
            return None, False
    if var_type == "double":
        try:
            return float(raw), True
        except ValueError:
            return None, False
    if var_type == "json":
        try:
            return json.loads(raw), True
        except ValueError:
            return None, False

    logger.warning("Unknown variable type %s", var_type)
    return None, False
