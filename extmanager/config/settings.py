"""Settings: paths, mirror and install policy of the extension manager"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

HOME_ENV_VAR = "EXTMANAGER_HOME"
SETTINGS_FILENAME = "settings.json"


def default_home() -> Path:
    """~/.extmanager, or $EXTMANAGER_HOME when set"""
    override = os.environ.get(HOME_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".extmanager"


@dataclass
class Settings:
    """
    Extension manager settings

    Relative directories are resolved against home.
    """

    home: str = ""
    extensions_dir: str = "extensions"
    files_dir: str = "files"
    site_config_dir: str = "sites"
    db_path: str = "extmanager.db"

    mirror_title: str = "main"
    mirror_url: str = "https://extensions.example.org/mirror"
    download_timeout: int = 300
    download_retries: int = 3

    # False: download packages without installing them
    automatic_installation: bool = True
    lock_timeout: float = 30.0
    platform_versions: Dict[str, str] = field(default_factory=dict)

    def home_path(self) -> Path:
        return Path(self.home).expanduser() if self.home else default_home()

    def _resolve(self, value: str) -> Path:
        path = Path(value).expanduser()
        return path if path.is_absolute() else self.home_path() / path

    @property
    def extensions_path(self) -> Path:
        return self._resolve(self.extensions_dir)

    @property
    def files_path(self) -> Path:
        return self._resolve(self.files_dir)

    @property
    def site_config_path(self) -> Path:
        return self._resolve(self.site_config_dir)

    @property
    def database_path(self) -> Path:
        return self._resolve(self.db_path)

    def to_dict(self) -> Dict:
        """Convert to dictionary"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "Settings":
        """Create from dictionary, ignoring unknown keys"""
        defaults = cls()
        return cls(
            home=data.get("home", defaults.home),
            extensions_dir=data.get("extensions_dir", defaults.extensions_dir),
            files_dir=data.get("files_dir", defaults.files_dir),
            site_config_dir=data.get("site_config_dir", defaults.site_config_dir),
            db_path=data.get("db_path", defaults.db_path),
            mirror_title=data.get("mirror_title", defaults.mirror_title),
            mirror_url=data.get("mirror_url", defaults.mirror_url),
            download_timeout=int(data.get("download_timeout", defaults.download_timeout)),
            download_retries=int(data.get("download_retries", defaults.download_retries)),
            automatic_installation=bool(data.get("automatic_installation", defaults.automatic_installation)),
            lock_timeout=float(data.get("lock_timeout", defaults.lock_timeout)),
            platform_versions=dict(data.get("platform_versions") or {}),
        )

    def ensure_directories(self) -> None:
        """Create home, extensions, files and site config directories"""
        for path in (self.home_path(), self.extensions_path, self.files_path, self.site_config_path):
            path.mkdir(parents=True, exist_ok=True)


class SettingsManager:
    """Manage settings persistence"""

    def __init__(self, settings_path: Optional[Path] = None):
        """Initialize settings manager"""
        if settings_path:
            self.settings_path = Path(settings_path)
        else:
            # Default: ~/.extmanager/settings.json
            self.settings_path = default_home() / SETTINGS_FILENAME

    def load(self) -> Settings:
        """Load settings from file, defaults when missing or unreadable"""
        if not self.settings_path.exists():
            return Settings()

        try:
            with open(self.settings_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return Settings.from_dict(data)
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Failed to load settings from {self.settings_path}: {e}")
            return Settings()

    def save(self, settings: Settings) -> None:
        """Save settings to file"""
        self.settings_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.settings_path, "w", encoding="utf-8") as f:
            json.dump(settings.to_dict(), f, indent=2)
        logger.debug(f"Settings saved to {self.settings_path}")

    def update_mirror(self, url: str, title: Optional[str] = None) -> None:
        """Update mirror URL (and title)"""
        settings = self.load()
        settings.mirror_url = url
        if title:
            settings.mirror_title = title
        self.save(settings)

    def set_platform_version(self, key: str, version: str) -> None:
        """Update the version of a platform component"""
        settings = self.load()
        settings.platform_versions[key] = version
        self.save(settings)

    def set_automatic_installation(self, enabled: bool) -> None:
        settings = self.load()
        settings.automatic_installation = enabled
        self.save(settings)


def load_settings() -> Settings:
    """Load settings"""
    return SettingsManager().load()


def save_settings(settings: Settings) -> None:
    """Save settings"""
    SettingsManager().save(settings)
