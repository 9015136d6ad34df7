"""Storage path resolver for webtop.

Resolves where the event store database and the default config file live,
following the XDG Base Directory layout on Linux and the platform
conventions elsewhere.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Final

logger = logging.getLogger(__name__)

APP_NAME: Final = "webtop"

IS_WINDOWS: Final = sys.platform == "win32"
IS_MACOS: Final = sys.platform == "darwin"


class StoragePathResolver:
    """Resolves storage paths based on deployment environment."""

    def __init__(self, env: str | None = None, project_dir: Path | None = None) -> None:
        """Initialize path resolver.

        Args:
            env: Force specific environment ('local', 'container', 'development', 'test')
            project_dir: Current project directory (defaults to cwd)
        """
        self.env = env or self._detect_environment()
        self.project_dir = project_dir or Path.cwd()
        self.base_path = self._resolve_base_path()

    def _detect_environment(self) -> str:
        """Auto-detect deployment environment.

        Returns:
            Environment type: 'container', 'local' or 'test'
        """
        if env_var := os.getenv("WEBTOP_ENV"):
            return env_var

        if Path("/.dockerenv").exists():
            return "container"

        if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
            return "test"

        return "local"

    def _resolve_base_path(self) -> Path:
        """Resolve base storage path by environment."""
        if override := os.getenv("WEBTOP_DATA_PATH"):
            return Path(override)

        if self.env == "container":
            return Path("/data") / APP_NAME
        if self.env == "development":
            return self.project_dir / f".{APP_NAME}" / "data"
        if self.env == "test":
            return Path("/tmp") / APP_NAME / "test"
        if self.env != "local":
            logger.warning(f"Unknown environment '{self.env}', using local paths")
        return self._get_xdg_data_path()

    def _get_xdg_data_path(self) -> Path:
        if IS_WINDOWS:
            local_app_data = os.getenv("LOCALAPPDATA")
            if local_app_data:
                return Path(local_app_data) / APP_NAME
            return Path.home() / f".{APP_NAME}" / "data"

        xdg_data = os.getenv("XDG_DATA_HOME")
        if xdg_data:
            return Path(xdg_data) / APP_NAME
        if IS_MACOS:
            return Path.home() / "Library" / "Application Support" / APP_NAME
        return Path.home() / ".local" / "share" / APP_NAME

    def get_database_path(self) -> Path:
        """Get event store database path.

        Returns:
            Path to webtop.duckdb
        """
        if override := os.getenv("WEBTOP_DATABASE_PATH"):
            return Path(override)
        return self.base_path / "webtop.duckdb"

    def get_config_dir(self) -> Path:
        """Get configuration directory."""
        if IS_WINDOWS:
            app_data = os.getenv("APPDATA")
            if app_data:
                return Path(app_data) / APP_NAME
            return Path.home() / f".{APP_NAME}" / "config"

        xdg_config = os.getenv("XDG_CONFIG_HOME")
        if xdg_config:
            return Path(xdg_config) / APP_NAME
        if IS_MACOS:
            return Path.home() / "Library" / "Preferences" / APP_NAME
        return Path.home() / ".config" / APP_NAME

    def get_default_config_file(self) -> Path:
        return self.get_config_dir() / "config.yaml"


def get_default_resolver() -> StoragePathResolver:
    return StoragePathResolver()


def get_database_path() -> Path:
    """Get event store database path using the default resolver."""
    return get_default_resolver().get_database_path()
