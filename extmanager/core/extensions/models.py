"""Data models for the Extension system"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from extmanager.core.extensions.exceptions import (
    ConflictError,
    ResolutionError,
    UnresolvableDependencyError,
)
from extmanager.core.extensions.versioning import (
    Version,
    VersionRange,
    parse_version,
    to_integer_version,
)

EXTENSION_KEY_PATTERN = re.compile(r'^[a-z][a-z0-9_]*$')


class ExtensionState(str, Enum):
    """Development state declared by an extension version"""
    OBSOLETE = "obsolete"
    NOT_AVAILABLE = "n/a"
    TEST = "test"
    EXPERIMENTAL = "experimental"
    ALPHA = "alpha"
    UNSTABLE = "unstable"
    BETA = "beta"
    STABLE = "stable"
    EXCLUDE_FROM_UPDATES = "excludeFromUpdates"

    @property
    def rank(self) -> int:
        return STATE_RANKS[self]

    @classmethod
    def from_value(cls, value: Any) -> "ExtensionState":
        """Map unknown or empty states to n/a"""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip())
        except ValueError:
            return cls.NOT_AVAILABLE


STATE_RANKS = {
    ExtensionState.OBSOLETE: 0,
    ExtensionState.NOT_AVAILABLE: 0,
    ExtensionState.TEST: 1,
    ExtensionState.EXPERIMENTAL: 2,
    ExtensionState.ALPHA: 3,
    ExtensionState.UNSTABLE: 3,
    ExtensionState.BETA: 4,
    ExtensionState.STABLE: 5,
    ExtensionState.EXCLUDE_FROM_UPDATES: 5,
}

# Minimum state rank for a version to become the current one of its key
STABLE_RANK_THRESHOLD = STATE_RANKS[ExtensionState.STABLE]

# Review states set by the repository for withdrawn versions
REVIEW_STATE_INSECURE = -1
REVIEW_STATE_OUTDATED = -2


class DependencyKind(str, Enum):
    """Kinds of constraint edges"""
    DEPENDS = "depends"
    CONFLICTS = "conflicts"
    SUGGESTS = "suggests"


class ConstraintEdge(BaseModel):
    """A depends/conflicts/suggests constraint declared by an extension version"""
    model_config = {"frozen": True}

    kind: DependencyKind
    target_key: str = Field(description="Extension key the constraint points at")
    version_range: str = Field(default="", description="Range expression, e.g. '1.2.0-2.0.0'")

    @field_validator('target_key')
    @classmethod
    def validate_target_key(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Constraint target key cannot be empty")
        return v

    @field_validator('version_range', mode='before')
    @classmethod
    def validate_version_range(cls, v: Optional[str]) -> str:
        # Raises InvalidVersionError (a ValueError) for malformed ranges
        return str(VersionRange.parse(v or ""))

    @property
    def range(self) -> VersionRange:
        return VersionRange.parse(self.version_range)


def constraints_to_edges(constraints: Optional[Dict[str, Dict[str, str]]]) -> List[ConstraintEdge]:
    """
    Convert a constraint map into edges

    The map has the metadata shape:
    {"depends": {"lang": "1.0.0-"}, "conflicts": {...}, "suggests": {...}}
    """
    edges = []
    for kind in DependencyKind:
        targets = (constraints or {}).get(kind.value) or {}
        for target_key, version_range in targets.items():
            edges.append(ConstraintEdge(
                kind=kind,
                target_key=target_key,
                version_range=version_range or "",
            ))
    return edges


def edges_to_constraints(edges: List[ConstraintEdge]) -> Dict[str, Dict[str, str]]:
    """Inverse of constraints_to_edges"""
    constraints: Dict[str, Dict[str, str]] = {kind.value: {} for kind in DependencyKind}
    for edge in edges:
        constraints[edge.kind.value][edge.target_key] = edge.version_range
    return constraints


class ExtensionVersion(BaseModel):
    """One version of an extension as known to the catalog"""
    extension_key: str = Field(description="Unique extension key (e.g. 'news')")
    version: str = Field(description="Version string (e.g. '1.2.0')")
    integer_version: int = Field(default=0, description="Packed version for range queries")
    title: str = ""
    description: str = ""
    state: ExtensionState = ExtensionState.NOT_AVAILABLE
    review_state: int = 0
    category: str = ""
    author_name: str = ""
    author_email: str = ""
    author_company: str = ""
    last_updated: int = Field(default=0, description="Upload timestamp (unix seconds)")
    content_hash: str = Field(default="", description="SHA256 of the package archive")
    dependencies: List[ConstraintEdge] = Field(default_factory=list)
    current: bool = False
    download_counter: int = 0
    all_download_counter: int = 0
    update_comment: str = ""
    documentation_link: str = ""

    @field_validator('extension_key')
    @classmethod
    def validate_extension_key(cls, v: str) -> str:
        """Validate extension key format"""
        v = v.strip()
        if not EXTENSION_KEY_PATTERN.match(v):
            raise ValueError(
                f"Invalid extension key '{v}': lowercase letters, digits and underscores only"
            )
        return v

    @field_validator('version')
    @classmethod
    def validate_version(cls, v: str) -> str:
        return str(parse_version(v))

    @field_validator('state', mode='before')
    @classmethod
    def validate_state(cls, v: Any) -> ExtensionState:
        return ExtensionState.from_value(v)

    def model_post_init(self, __context):
        """Derive the integer version from the version string"""
        self.integer_version = to_integer_version(parse_version(self.version))

    @property
    def parsed_version(self) -> Version:
        return parse_version(self.version)

    @property
    def state_rank(self) -> int:
        return self.state.rank

    @property
    def is_insecure(self) -> bool:
        return self.review_state == REVIEW_STATE_INSECURE

    @property
    def is_outdated(self) -> bool:
        return self.review_state == REVIEW_STATE_OUTDATED

    def edges(self, kind: DependencyKind) -> List[ConstraintEdge]:
        return [edge for edge in self.dependencies if edge.kind == kind]

    @property
    def depends(self) -> List[ConstraintEdge]:
        return self.edges(DependencyKind.DEPENDS)

    @property
    def conflicts(self) -> List[ConstraintEdge]:
        return self.edges(DependencyKind.CONFLICTS)

    @property
    def suggests(self) -> List[ConstraintEdge]:
        return self.edges(DependencyKind.SUGGESTS)

    def constraints(self) -> Dict[str, Dict[str, str]]:
        return edges_to_constraints(self.dependencies)

    def __str__(self) -> str:
        return f"{self.extension_key} {self.version}"


@dataclass
class ResolutionPlan:
    """
    Result of resolving an install request

    ordered_install_set is dependency-first and empty whenever the plan
    carries errors.
    """
    root_key: str
    ordered_install_set: List[ExtensionVersion] = field(default_factory=list)
    conflicts: Dict[str, List[str]] = field(default_factory=dict)
    unresolvable: Dict[str, str] = field(default_factory=dict)
    suggestions: Dict[str, List[str]] = field(default_factory=dict)
    already_satisfied: List[str] = field(default_factory=list)
    errors: List[ResolutionError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    def install_keys(self) -> List[str]:
        return [entry.extension_key for entry in self.ordered_install_set]

    def add_unresolvable(self, target_key: str, reason: str) -> None:
        if target_key not in self.unresolvable:
            self.unresolvable[target_key] = reason
            self.errors.append(UnresolvableDependencyError(target_key, reason))

    def add_conflict(self, target_key: str, installed_key: str, reason: str = "") -> None:
        existing = self.conflicts.setdefault(target_key, [])
        if installed_key not in existing:
            existing.append(installed_key)
            self.errors.append(ConflictError(target_key, installed_key, reason))

    def raise_for_errors(self) -> None:
        """Raise the first recorded resolution error, if any"""
        if self.errors:
            raise self.errors[0]


class PackageState(str, Enum):
    """Per-package install state machine"""
    PENDING = "PENDING"
    FILES_ENSURED = "FILES_ENSURED"
    METADATA_WRITTEN = "METADATA_WRITTEN"
    ACTIVATED = "ACTIVATED"
    SETUP_COMPLETE = "SETUP_COMPLETE"
    FAILED = "FAILED"


class InstallOutcome(str, Enum):
    """What the caller gets back for each package"""
    INSTALLED = "installed"
    DOWNLOADED = "downloaded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class PackageResult:
    """Outcome for one package of an install batch"""
    extension_key: str
    version: str
    state: PackageState = PackageState.PENDING
    outcome: Optional[InstallOutcome] = None
    reason: Optional[str] = None
    error: Optional[Exception] = None
    completed_steps: List[str] = field(default_factory=list)


@dataclass
class InstallResult:
    """Result of an install request: the plan plus per-package outcomes"""
    plan: ResolutionPlan
    packages: Dict[str, PackageResult] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        if not self.plan.ok and not self.packages:
            return False
        return all(
            result.outcome in (InstallOutcome.INSTALLED, InstallOutcome.DOWNLOADED)
            for result in self.packages.values()
        )

    def outcome_of(self, extension_key: str) -> Optional[InstallOutcome]:
        result = self.packages.get(extension_key)
        return result.outcome if result else None


@dataclass
class InstalledPackage:
    """An active package with the constraints its metadata declares"""
    extension_key: str
    version: str
    dependencies: List[ConstraintEdge] = field(default_factory=list)
    path: Optional[str] = None

    @property
    def parsed_version(self) -> Version:
        return parse_version(self.version)

    def edges(self, kind: DependencyKind) -> List[ConstraintEdge]:
        return [edge for edge in self.dependencies if edge.kind == kind]


class MirrorRecord(BaseModel):
    """Bookkeeping row for a remote repository mirror"""
    title: str
    url: str = ""
    last_update: Optional[int] = None
    extension_count: int = 0
