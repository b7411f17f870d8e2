from __future__ import annotations

import pytest

from extmanager.core.extensions.exceptions import InvalidVersionError
from extmanager.core.extensions.versioning import (
    Version,
    VersionRange,
    coerce_version,
    compare_versions,
    from_integer_version,
    parse_version,
    range_contains,
    to_integer_version,
)


def test_parse_version_fills_missing_segments() -> None:
    assert parse_version("1.2") == Version(1, 2, 0)
    assert parse_version(" 4 ") == Version(4, 0, 0)
    assert str(parse_version("10.4.37")) == "10.4.37"


@pytest.mark.parametrize("value", ["", "   ", "1.a.0", "1.2.3.4", "1.1000.0", "1.0.1000", "-1.0.0"])
def test_parse_version_rejects_malformed_strings(value: str) -> None:
    with pytest.raises(InvalidVersionError):
        parse_version(value)


def test_invalid_version_error_is_value_error() -> None:
    with pytest.raises(ValueError):
        parse_version("latest")


def test_integer_version_packs_and_unpacks() -> None:
    for text in ("0.0.1", "1.2.3", "12.999.999", "3.0.0"):
        version = parse_version(text)
        assert str(from_integer_version(to_integer_version(version))) == text

    assert to_integer_version(parse_version("1.2.3")) == 1_002_003


def test_integer_order_matches_version_order() -> None:
    low, high = parse_version("1.999.0"), parse_version("2.0.0")
    assert low < high
    assert low.integer < high.integer
    assert compare_versions(low, high) == -1
    assert compare_versions(high, low) == 1
    assert compare_versions(high, parse_version("2.0")) == 0


def test_coerce_version_accepts_strings_and_integers() -> None:
    assert coerce_version("1.2.3") == Version(1, 2, 3)
    assert coerce_version(2_001_000) == Version(2, 1, 0)
    assert coerce_version(Version(5, 0, 0)) == Version(5, 0, 0)
    with pytest.raises(InvalidVersionError):
        coerce_version(True)


def test_empty_range_matches_everything() -> None:
    version_range = VersionRange.parse("")
    assert version_range.is_any
    assert version_range.contains(parse_version("0.0.1"))
    assert version_range.contains(parse_version("999.0.0"))
    assert str(version_range) == ""


def test_zero_bounds_are_open() -> None:
    assert VersionRange.parse("0.0.0-0.0.0").is_any
    assert VersionRange.parse("1.0.0-0.0.0").ceiling is None


def test_floor_only_range() -> None:
    version_range = VersionRange.parse("1.2.0")
    assert not version_range.contains(parse_version("1.1.9"))
    assert version_range.contains(parse_version("1.2.0"))
    assert version_range.contains(parse_version("7.0.0"))
    assert VersionRange.parse("1.2.0-") == version_range


def test_bounded_range_is_inclusive_on_both_ends() -> None:
    version_range = VersionRange.parse("1.0.0-2.0.0")
    assert range_contains(version_range, parse_version("1.0.0"))
    assert range_contains(version_range, parse_version("2.0.0"))
    assert not range_contains(version_range, parse_version("2.0.1"))
    assert not range_contains(version_range, parse_version("0.9.9"))
    assert str(version_range) == "1.0.0-2.0.0"


def test_ceiling_only_range_starts_at_zero() -> None:
    version_range = VersionRange.parse("-2.0.0")
    assert version_range.floor is None
    assert version_range.contains(parse_version("0.1.0"))
    assert str(version_range) == "0.0.0-2.0.0"


def test_containment_is_monotonic_between_floor_and_ceiling() -> None:
    version_range = VersionRange.parse("1.2.0-3.0.0")
    inside = [parse_version(v) for v in ("1.2.0", "1.5.3", "2.999.999", "3.0.0")]
    for lower in inside:
        for higher in inside:
            if lower <= higher:
                assert version_range.contains(lower)
                assert version_range.contains(higher)


@pytest.mark.parametrize("value", ["2.0.0-1.0.0", "1.0.0-2.0.0-3.0.0", "1.x-2.0.0"])
def test_malformed_ranges_raise(value: str) -> None:
    with pytest.raises(InvalidVersionError):
        VersionRange.parse(value)


def test_integer_bounds() -> None:
    assert VersionRange.parse("1.0.0-2.0.0").integer_bounds() == (1_000_000, 2_000_000)
    assert VersionRange.parse("1.0.0").integer_bounds() == (1_000_000, None)
    assert VersionRange.parse("").integer_bounds() == (0, None)
