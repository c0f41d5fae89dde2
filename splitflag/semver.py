from typing import List

from .errors import InvalidVersionFormatError

PRE_RELEASE_SEPARATOR = "-"
BUILD_SEPARATOR = "+"
DOT = "."


def _first_separator(version: str):
    dash = version.find(PRE_RELEASE_SEPARATOR)
    plus = version.find(BUILD_SEPARATOR)
    if dash == -1 and plus == -1:
        return None
    if dash == -1:
        return BUILD_SEPARATOR
    if plus == -1:
        return PRE_RELEASE_SEPARATOR
    return PRE_RELEASE_SEPARATOR if dash < plus else BUILD_SEPARATOR


def is_pre_release(version: str) -> bool:
    return _first_separator(version) == PRE_RELEASE_SEPARATOR


def is_build(version: str) -> bool:
    return _first_separator(version) == BUILD_SEPARATOR


def split_version(version: str) -> List[str]:
    """Split ``1.2.3-beta.1`` into ``["1", "2", "3", "beta.1"]``.

    The prefix is split on dots and must hold at most three numeric parts.
    Whatever follows the first ``-`` or ``+`` is kept as a single trailing part.
    """
    if not isinstance(version, str):
        raise InvalidVersionFormatError(f"version must be a string, got {type(version).__name__}")
    if any(ch.isspace() for ch in version):
        raise InvalidVersionFormatError(f"invalid version {version!r}: contains whitespace")

    separator = _first_separator(version)
    suffix = []
    prefix = version
    if separator:
        prefix, rest = version.split(separator, 1)
        if not rest:
            raise InvalidVersionFormatError(f"invalid version {version!r}: empty {separator} suffix")
        suffix = [rest]

    if prefix.count(DOT) > 2:
        raise InvalidVersionFormatError(f"invalid version {version!r}: too many parts")

    parts = prefix.split(DOT)
    for part in parts:
        if not part.isdigit():
            raise InvalidVersionFormatError(f"invalid version {version!r}")

    return parts + suffix


def compare_versions(version: str, target: str) -> int:
    """Three-way compare a user ``version`` against a condition ``target``.

    Only as many parts as the target holds are compared, so a target of
    ``2.1`` equals any ``2.1.x``. An empty target matches everything.
    Pre-release versions sort before the same version without suffix.
    """
    if target == "":
        return 0

    target_parts = split_version(target)
    user_parts = split_version(version)
    target_pre = is_pre_release(target)
    user_pre = is_pre_release(version)

    for idx, target_part in enumerate(target_parts):
        if len(user_parts) <= idx:
            return 1 if target_pre else -1

        user_part = user_parts[idx]
        if user_part.isdigit() and target_part.isdigit():
            user_number = int(user_part)
            target_number = int(target_part)
            if user_number > target_number:
                return 1
            if user_number < target_number:
                return -1
            continue

        if user_part < target_part:
            if target_pre and not user_pre:
                return 1
            return -1
        if user_part > target_part:
            if user_pre and not target_pre:
                return -1
            return 1

    if user_pre and not target_pre:
        return -1
    return 0
