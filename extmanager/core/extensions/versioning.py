"""Version numbers and version range constraints

Versions are "major.minor.patch" triples. Ranges use the extension manager
notation: "" (any version), "1.2.0" (floor only) or "1.2.0-2.0.0"
(floor and ceiling, both inclusive). An empty floor means 0.0.0 and an empty
or 0.0.0 ceiling means unbounded.
"""

from dataclasses import dataclass
from typing import Optional, Union

from extmanager.core.extensions.exceptions import InvalidVersionError

MAX_SEGMENT = 999
INTEGER_MAJOR_FACTOR = 1_000_000
INTEGER_MINOR_FACTOR = 1_000


@dataclass(frozen=True, order=True)
class Version:
    """A parsed version triple ordered lexicographically"""
    major: int = 0
    minor: int = 0
    patch: int = 0

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    @property
    def integer(self) -> int:
        return to_integer_version(self)

    def is_zero(self) -> bool:
        return self.major == 0 and self.minor == 0 and self.patch == 0


def parse_version(value: str) -> Version:
    """
    Parse a "major.minor.patch" string

    Missing segments default to 0 ("1.2" == "1.2.0").

    Raises:
        InvalidVersionError: If the string is empty, has more than three
            segments or a segment is not a non-negative integer
    """
    if not isinstance(value, str):
        raise InvalidVersionError(f"Version must be a string, got {type(value).__name__}")

    text = value.strip()
    if not text:
        raise InvalidVersionError("Version string is empty")

    parts = text.split('.')
    if len(parts) > 3:
        raise InvalidVersionError(f"Version '{value}' has more than three segments")

    numbers = []
    for part in parts:
        if not part.isdigit():
            raise InvalidVersionError(f"Version '{value}' contains a non-numeric segment '{part}'")
        numbers.append(int(part))

    while len(numbers) < 3:
        numbers.append(0)

    major, minor, patch = numbers
    if minor > MAX_SEGMENT or patch > MAX_SEGMENT:
        raise InvalidVersionError(
            f"Version '{value}' has a minor or patch segment above {MAX_SEGMENT}"
        )

    return Version(major, minor, patch)


def compare_versions(a: Version, b: Version) -> int:
    """Return -1, 0 or 1 comparing two versions"""
    if a < b:
        return -1
    if a > b:
        return 1
    return 0


def to_integer_version(version: Version) -> int:
    """Pack a version into a single comparable integer"""
    return (
        version.major * INTEGER_MAJOR_FACTOR
        + version.minor * INTEGER_MINOR_FACTOR
        + version.patch
    )


def from_integer_version(value: int) -> Version:
    """Inverse of to_integer_version"""
    if value < 0:
        raise InvalidVersionError(f"Integer version must not be negative: {value}")
    major, rest = divmod(value, INTEGER_MAJOR_FACTOR)
    minor, patch = divmod(rest, INTEGER_MINOR_FACTOR)
    return Version(major, minor, patch)


def coerce_version(value: Union[Version, str, int]) -> Version:
    """Accept a Version, a version string or an integer version"""
    if isinstance(value, Version):
        return value
    if isinstance(value, bool):
        raise InvalidVersionError(f"Invalid version value: {value!r}")
    if isinstance(value, int):
        return from_integer_version(value)
    return parse_version(value)


@dataclass(frozen=True)
class VersionRange:
    """An inclusive version range; None bounds are open"""
    floor: Optional[Version] = None
    ceiling: Optional[Version] = None

    @classmethod
    def parse(cls, value: Optional[str]) -> "VersionRange":
        """
        Parse a range expression

        Raises:
            InvalidVersionError: If a bound is malformed or floor > ceiling
        """
        if value is None:
            return cls()

        text = str(value).strip()
        if not text:
            return cls()

        if '-' in text:
            floor_text, _, ceiling_text = text.partition('-')
            if '-' in ceiling_text:
                raise InvalidVersionError(f"Version range '{value}' has more than two bounds")
        else:
            floor_text, ceiling_text = text, ''

        floor = parse_version(floor_text) if floor_text.strip() else None
        ceiling = parse_version(ceiling_text) if ceiling_text.strip() else None

        if floor is not None and floor.is_zero():
            floor = None
        if ceiling is not None and ceiling.is_zero():
            ceiling = None

        if floor is not None and ceiling is not None and floor > ceiling:
            raise InvalidVersionError(
                f"Version range '{value}' has a floor above its ceiling"
            )

        return cls(floor=floor, ceiling=ceiling)

    @property
    def is_any(self) -> bool:
        return self.floor is None and self.ceiling is None

    def contains(self, version: Version) -> bool:
        if self.floor is not None and version < self.floor:
            return False
        if self.ceiling is not None and version > self.ceiling:
            return False
        return True

    def integer_bounds(self) -> tuple:
        """(floor, ceiling) as integer versions; ceiling None when unbounded"""
        floor = to_integer_version(self.floor) if self.floor is not None else 0
        ceiling = to_integer_version(self.ceiling) if self.ceiling is not None else None
        return floor, ceiling

    def __str__(self) -> str:
        if self.is_any:
            return ""
        floor = str(self.floor) if self.floor is not None else "0.0.0"
        if self.ceiling is None:
            return floor
        return f"{floor}-{self.ceiling}"


def range_contains(version_range: VersionRange, version: Version) -> bool:
    """Floor inclusive, ceiling inclusive if present, unbounded otherwise"""
    return version_range.contains(version)
