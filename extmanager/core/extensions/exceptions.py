"""Exception classes for the Extension system"""

from typing import List, Optional


class ExtensionError(Exception):
    """Base exception for all extension-related errors"""
    pass


class InvalidVersionError(ExtensionError, ValueError):
    """Raised when a version or version range string is malformed"""
    pass


class CatalogError(ExtensionError):
    """Raised when catalog storage operations fail"""
    pass


class LedgerError(ExtensionError):
    """Raised when the execution ledger cannot be read or written"""
    pass


class MetadataError(ExtensionError):
    """Raised when package metadata cannot be read or written"""
    pass


class ActivationError(ExtensionError):
    """Raised when the package activation state cannot be read or written"""
    pass


class DataImportError(ExtensionError):
    """Raised by a DataImporter when package data cannot be imported"""
    pass


class ExtensionNotFoundError(ExtensionError):
    """Raised when an extension key is unknown to the catalog and the local system"""

    def __init__(self, extension_key: str, message: Optional[str] = None):
        super().__init__(message or f"Extension not found: {extension_key}")
        self.extension_key = extension_key


class OperationInProgressError(ExtensionError):
    """Raised when another install/uninstall operation holds the extension key"""

    def __init__(self, extension_key: str):
        super().__init__(
            f"Another operation is in progress for extension '{extension_key}'"
        )
        self.extension_key = extension_key


class ResolutionError(ExtensionError):
    """
    Base class for dependency resolution problems.

    Resolution errors are collected on a ResolutionPlan as values. Callers
    that prefer exceptions can use ResolutionPlan.raise_for_errors().
    """

    def __init__(self, target_key: str, message: str):
        super().__init__(message)
        self.target_key = target_key


class UnresolvableDependencyError(ResolutionError):
    """No catalog entry satisfies a required version range"""

    def __init__(self, target_key: str, reason: str):
        super().__init__(target_key, f"Cannot resolve '{target_key}': {reason}")
        self.reason = reason


class ConflictError(ResolutionError):
    """A declared conflict with an installed package"""

    def __init__(self, target_key: str, conflicting_installed_key: str, reason: str = ""):
        message = f"'{target_key}' conflicts with installed extension '{conflicting_installed_key}'"
        if reason:
            message += f" ({reason})"
        super().__init__(target_key, message)
        self.conflicting_installed_key = conflicting_installed_key
        self.reason = reason


class DependencyBlockedError(ExtensionError):
    """Raised when uninstall is blocked by installed dependents"""

    def __init__(self, extension_key: str, blockers: List[str]):
        super().__init__(
            f"Cannot uninstall '{extension_key}': required by {', '.join(blockers)}"
        )
        self.extension_key = extension_key
        self.blockers = blockers


class DownloadFailedError(ExtensionError):
    """Raised when a package archive cannot be fetched"""

    def __init__(self, message: str, extension_key: Optional[str] = None):
        super().__init__(message)
        self.extension_key = extension_key


class CorruptArchiveError(ExtensionError):
    """Raised when a package archive cannot be unpacked"""

    def __init__(self, message: str, extension_key: Optional[str] = None):
        super().__init__(message)
        self.extension_key = extension_key


class DirectoryOperationError(ExtensionError):
    """Raised when a filesystem post-condition is violated"""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path
