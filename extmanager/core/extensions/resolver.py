"""Dependency resolver: builds dependency-first install plans"""

import logging
from typing import Dict, List, Optional, Tuple

from extmanager.core.extensions.activation import InstalledPackageSet
from extmanager.core.extensions.catalog import ExtensionCatalog
from extmanager.core.extensions.exceptions import InvalidVersionError
from extmanager.core.extensions.models import (
    ConstraintEdge,
    DependencyKind,
    ExtensionVersion,
    ResolutionPlan,
)
from extmanager.core.extensions.versioning import Version, parse_version

logger = logging.getLogger(__name__)


class DependencyResolver:
    """
    Resolves an install request against the catalog and the installed set

    The walk is depth-first over depends edges with a visited set keyed by
    extension key; a node is appended after all of its dependencies, so
    the ordered install set is dependency-first. Problems are collected on
    the plan as typed errors, and a plan with errors installs nothing.

    Resolution only reads the catalog and the installed set and needs no
    locking.
    """

    def __init__(
        self,
        catalog: ExtensionCatalog,
        installed: InstalledPackageSet,
        platform_versions: Optional[Dict[str, str]] = None,
        skip_dependency_check: bool = False
    ):
        """
        Args:
            catalog: Package catalog
            installed: View of the active packages
            platform_versions: Versions of platform components (e.g.
                {"python": "3.11.4", "cms": "12.4.0"}); depends edges on these
                keys are checked, never installed
            skip_dependency_check: Resolve to an empty plan (download only)
        """
        self.catalog = catalog
        self.installed = installed
        self.skip_dependency_check = skip_dependency_check
        self.platform_versions: Dict[str, Version] = {
            key: parse_version(value) for key, value in (platform_versions or {}).items()
        }

    def find_root(self, extension_key: str, version: Optional[str] = None) -> Optional[ExtensionVersion]:
        """
        Catalog entry to install for a request

        The exact version when given, otherwise the current version,
        otherwise the highest available one.
        """
        if version:
            return self.catalog.find_version(extension_key, version)
        return self.catalog.find_current(extension_key) or self.catalog.find_highest_available(extension_key)

    def resolve_key(self, extension_key: str, version: Optional[str] = None) -> ResolutionPlan:
        """Resolve an extension by key, see find_root"""
        root = self.find_root(extension_key, version)
        if root is None:
            plan = ResolutionPlan(root_key=extension_key)
            wanted = f" {version}" if version else ""
            plan.add_unresolvable(extension_key, f"{extension_key}{wanted} not found in catalog")
            return plan

        return self.resolve(root)

    def resolve(self, root: ExtensionVersion) -> ResolutionPlan:
        """
        Build the plan for installing root

        Returns:
            ResolutionPlan; ordered_install_set is empty if any dependency is
            unresolvable or any conflict was found
        """
        plan = ResolutionPlan(root_key=root.extension_key)
        if self.skip_dependency_check:
            logger.info(f"Dependency check skipped for {root}; returning empty plan")
            return plan

        logger.info(f"Resolving dependencies of {root}")
        chosen: Dict[str, ExtensionVersion] = {}
        kept: Dict[str, List[Tuple[str, ConstraintEdge]]] = {}
        self._visit(root, plan, chosen, kept)
        self._check_upgrades(plan, chosen, kept)
        self._check_conflicts(plan, chosen)

        if plan.errors:
            plan.ordered_install_set = []
            logger.warning(
                f"Resolution of {root} failed: "
                + "; ".join(str(error) for error in plan.errors)
            )
        else:
            logger.info(f"Resolved {root}: install {', '.join(plan.install_keys())}")

        return plan

    def _visit(
        self,
        node: ExtensionVersion,
        plan: ResolutionPlan,
        chosen: Dict[str, ExtensionVersion],
        kept: Dict[str, List[Tuple[str, ConstraintEdge]]]
    ) -> None:
        chosen[node.extension_key] = node

        for edge in node.suggests:
            suggested = plan.suggestions.setdefault(node.extension_key, [])
            if edge.target_key not in suggested:
                suggested.append(edge.target_key)

        for edge in node.depends:
            self._resolve_edge(node, edge, plan, chosen, kept)

        plan.ordered_install_set.append(node)

    def _resolve_edge(
        self,
        node: ExtensionVersion,
        edge: ConstraintEdge,
        plan: ResolutionPlan,
        chosen: Dict[str, ExtensionVersion],
        kept: Dict[str, List[Tuple[str, ConstraintEdge]]]
    ) -> None:
        target = edge.target_key
        version_range = edge.range
        range_text = edge.version_range or "any version"

        if target in self.platform_versions:
            platform_version = self.platform_versions[target]
            if not version_range.contains(platform_version):
                plan.add_unresolvable(
                    target,
                    f"{node.extension_key} requires {target} {range_text}, found {platform_version}",
                )
            return

        # Planned or in progress; covers cycles
        if target in chosen:
            planned = chosen[target]
            if not version_range.contains(planned.parsed_version):
                plan.add_unresolvable(
                    target,
                    f"cyclic or competing requirement: {node.extension_key} requires "
                    f"{target} {range_text}, but {planned.version} is already planned",
                )
            return

        installed = self.installed.get(target)
        if installed is not None:
            try:
                satisfied = version_range.contains(installed.parsed_version)
            except InvalidVersionError:
                satisfied = False
            if satisfied:
                kept.setdefault(target, []).append((node.extension_key, edge))
                if target not in plan.already_satisfied:
                    plan.already_satisfied.append(target)
                return

        candidate = self.catalog.find_highest_satisfying(target, version_range)
        if candidate is None:
            plan.add_unresolvable(
                target,
                f"no satisfying version for {range_text} (required by {node.extension_key})",
            )
            return

        if installed is not None:
            logger.info(f"Installed {target} {installed.version} is outside {range_text}; upgrading to {candidate.version}")

        self._visit(candidate, plan, chosen, kept)

    def _check_upgrades(
        self,
        plan: ResolutionPlan,
        chosen: Dict[str, ExtensionVersion],
        kept: Dict[str, List[Tuple[str, ConstraintEdge]]]
    ) -> None:
        """
        Recheck requirements on installed packages the plan replaces

        An edge counted as satisfied by the installed version, or a depends
        edge of another installed package, must still hold for the version
        that replaces it.
        """
        for target, planned in chosen.items():
            installed = self.installed.get(target)
            if installed is None or installed.version == planned.version:
                continue

            requirements = list(kept.get(target, []))
            for package in self.installed.packages():
                if package.extension_key in chosen:
                    continue
                requirements.extend(
                    (package.extension_key, edge)
                    for edge in package.edges(DependencyKind.DEPENDS)
                    if edge.target_key == target
                )

            for requirer, edge in requirements:
                if not edge.range.contains(planned.parsed_version):
                    plan.add_unresolvable(
                        target,
                        f"competing requirement: {requirer} requires {target} "
                        f"{edge.version_range or 'any version'}, but {planned.version} "
                        f"replaces installed {installed.version}",
                    )
                    break

            if target in plan.already_satisfied:
                plan.already_satisfied.remove(target)

    def _check_conflicts(self, plan: ResolutionPlan, chosen: Dict[str, ExtensionVersion]) -> None:
        """Conflicts declared by planned packages and, in reverse, by installed ones"""
        for node in chosen.values():
            for edge in node.conflicts:
                if edge.target_key in chosen:
                    version = chosen[edge.target_key].parsed_version
                elif self.installed.is_installed(edge.target_key):
                    version = self.installed.get(edge.target_key).parsed_version
                else:
                    continue
                if edge.range.contains(version):
                    plan.add_conflict(
                        node.extension_key,
                        edge.target_key,
                        f"{node} declares a conflict with {edge.target_key} {edge.version_range or 'any version'}",
                    )

        for package in self.installed.packages():
            if package.extension_key in chosen:
                continue
            for edge in package.edges(DependencyKind.CONFLICTS):
                planned = chosen.get(edge.target_key)
                if planned is None:
                    continue
                if edge.range.contains(planned.parsed_version):
                    plan.add_conflict(
                        planned.extension_key,
                        package.extension_key,
                        f"installed {package.extension_key} declares a conflict with {planned}",
                    )

    def find_dependents(self, extension_key: str) -> List[str]:
        """Installed packages that declare a depends edge on extension_key"""
        return [
            package.extension_key
            for package in self.installed.packages()
            if package.extension_key != extension_key
            and any(edge.target_key == extension_key for edge in package.edges(DependencyKind.DEPENDS))
        ]
