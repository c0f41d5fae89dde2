import logging
import threading

from typing import Callable, Dict, Optional

from .common_types import UserContext
from .errors import (
    InvalidAttributeTypeError,
    InvalidVersionFormatError,
    UnsupportedConditionValueError,
)
from .semver import compare_versions
from .values import is_finite_number, is_numeric, to_float, to_string

logger = logging.getLogger("splitflag.matchers")

Matcher = Callable[[dict, UserContext], bool]

_registry: Dict[str, Matcher] = {}
_registry_lock = threading.Lock()


def register_matcher(name: str, matcher: Matcher) -> None:
    with _registry_lock:
        _registry[name] = matcher


def get_matcher(name: str) -> Optional[Matcher]:
    return _registry.get(name)


def _condition_value(condition: dict):
    return condition.get("value")


def _numeric_operands(condition: dict, user: UserContext):
    value = _condition_value(condition)
    if not is_finite_number(value):
        raise UnsupportedConditionValueError(f"unsupported condition value {value!r}")
    attribute = user.get_attribute(condition.get("name"))
    if not is_finite_number(attribute):
        raise InvalidAttributeTypeError(
            f'attribute "{condition.get("name")}" is not a finite number: {attribute!r}'
        )
    return to_float(attribute), to_float(value)


def _version_operands(condition: dict, user: UserContext):
    target = to_string(_condition_value(condition))
    if target is None:
        raise UnsupportedConditionValueError(f"unsupported condition value {_condition_value(condition)!r}")
    version = user.get_attribute(condition.get("name"))
    if to_string(version) is None:
        raise InvalidAttributeTypeError(f'attribute "{condition.get("name")}" is not a string')
    return version, target


def _compare_versions(condition: dict, user: UserContext) -> int:
    version, target = _version_operands(condition, user)
    try:
        return compare_versions(version, target)
    except InvalidVersionFormatError as e:
        raise InvalidAttributeTypeError(str(e)) from e


def exists_matcher(condition: dict, user: UserContext) -> bool:
    return user.has_attribute(condition.get("name"))


def exact_matcher(condition: dict, user: UserContext) -> bool:
    value = _condition_value(condition)
    name = condition.get("name")

    if isinstance(value, bool):
        attribute = user.get_attribute(name)
        if not isinstance(attribute, bool):
            raise InvalidAttributeTypeError(f'attribute "{name}" is not a boolean')
        return attribute == value

    if isinstance(value, str):
        attribute = user.get_attribute(name)
        if not isinstance(attribute, str):
            raise InvalidAttributeTypeError(f'attribute "{name}" is not a string')
        return attribute == value

    if is_numeric(value):
        attribute, target = _numeric_operands(condition, user)
        return attribute == target

    raise UnsupportedConditionValueError(f"unsupported condition value {value!r}")


def substring_matcher(condition: dict, user: UserContext) -> bool:
    value = to_string(_condition_value(condition))
    if value is None:
        raise UnsupportedConditionValueError(f"unsupported condition value {_condition_value(condition)!r}")
    attribute = user.get_attribute(condition.get("name"))
    if not isinstance(attribute, str):
        raise InvalidAttributeTypeError(f'attribute "{condition.get("name")}" is not a string')
    return value in attribute


def lt_matcher(condition: dict, user: UserContext) -> bool:
    attribute, value = _numeric_operands(condition, user)
    return attribute < value


def le_matcher(condition: dict, user: UserContext) -> bool:
    attribute, value = _numeric_operands(condition, user)
    return attribute <= value


def gt_matcher(condition: dict, user: UserContext) -> bool:
    attribute, value = _numeric_operands(condition, user)
    return attribute > value


def ge_matcher(condition: dict, user: UserContext) -> bool:
    attribute, value = _numeric_operands(condition, user)
    return attribute >= value


def semver_eq_matcher(condition: dict, user: UserContext) -> bool:
    return _compare_versions(condition, user) == 0


def semver_lt_matcher(condition: dict, user: UserContext) -> bool:
    return _compare_versions(condition, user) < 0


def semver_le_matcher(condition: dict, user: UserContext) -> bool:
    return _compare_versions(condition, user) <= 0


def semver_gt_matcher(condition: dict, user: UserContext) -> bool:
    return _compare_versions(condition, user) > 0


def semver_ge_matcher(condition: dict, user: UserContext) -> bool:
    return _compare_versions(condition, user) >= 0


def qualified_matcher(condition: dict, user: UserContext) -> bool:
    segment = to_string(_condition_value(condition))
    if segment is None:
        raise UnsupportedConditionValueError(f"unsupported condition value {_condition_value(condition)!r}")
    return user.is_qualified_for(segment)


for _name, _matcher in (
    ("exists", exists_matcher),
    ("exact", exact_matcher),
    ("substring", substring_matcher),
    ("lt", lt_matcher),
    ("le", le_matcher),
    ("gt", gt_matcher),
    ("ge", ge_matcher),
    ("semver_eq", semver_eq_matcher),
    ("semver_lt", semver_lt_matcher),
    ("semver_le", semver_le_matcher),
    ("semver_gt", semver_gt_matcher),
    ("semver_ge", semver_ge_matcher),
    ("qualified", qualified_matcher),
):
    register_matcher(_name, _matcher)
