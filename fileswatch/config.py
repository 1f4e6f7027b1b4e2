"""Configuration file handling for fileswatch."""

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

import tomli_w

from .exceptions import ConfigError
from .utils import (
    DEFAULT_CHECK_INTERVAL,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CONCURRENT_UPLOADS,
    DEFAULT_DEBOUNCE,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_RETRY_DELAY,
    DEFAULT_RETRY_DELAY,
    DEFAULT_SHUTDOWN_GRACE,
)

if TYPE_CHECKING:
    from .sync.models import SyncConfig

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "FILESWATCH_CONFIG_DIR"
API_KEY_ENV = "FILES_API_KEY"
API_URL_ENV = "FILES_API_URL"
CONFIG_FILE_NAME = "config.toml"

VALID_DIRECTIONS = ("up", "down", "both")
VALID_RESOLUTIONS = ("newest", "largest", "manual")


def get_config_dir() -> Path:
    """Return the configuration directory.

    Uses ``$FILESWATCH_CONFIG_DIR`` when set, ``~/.config/fileswatch``
    otherwise.
    """
    env_dir = os.environ.get(CONFIG_DIR_ENV)
    if env_dir:
        return Path(env_dir).expanduser()
    return Path.home() / ".config" / "fileswatch"


def get_api_key() -> Optional[str]:
    """Return the Files.com API key from the environment, if any."""
    return os.environ.get(API_KEY_ENV) or None


def get_api_url() -> Optional[str]:
    """Return an API base URL override from the environment, if any."""
    return os.environ.get(API_URL_ENV) or None


@dataclass
class WatchConfig:
    """One ``[[watch]]`` table as written in the config file.

    A malformed table still loads: ``error`` records what is wrong with
    it and :meth:`to_sync_config` raises it, so only that pair fails.
    """

    local_path: str
    remote_path: str
    direction: str = "up"
    ignore_patterns: list[str] = field(default_factory=list)
    error: Optional[str] = field(default=None, compare=False)
    raw: Any = field(default=None, compare=False, repr=False)
    """Table as read, written back unchanged when ``error`` is set"""

    @classmethod
    def from_dict(cls, data: Any) -> "WatchConfig":
        """Create WatchConfig from a parsed TOML table."""
        if not isinstance(data, dict):
            return cls("", "", error="Each [[watch]] entry must be a table", raw=data)

        local_path = str(data.get("local_path", ""))
        watch = cls(
            local_path=local_path,
            remote_path=str(data.get("remote_path", "")),
            direction=str(data.get("direction", "up")),
            raw=data,
        )
        missing = [k for k in ("local_path", "remote_path") if k not in data]
        ignore = data.get("ignore_patterns", [])
        if missing:
            watch.error = f"Watch entry is missing required key '{missing[0]}'"
        elif not isinstance(ignore, list) or not all(
            isinstance(p, str) for p in ignore
        ):
            watch.error = f"ignore_patterns for {local_path} must be a list of strings"
        else:
            watch.ignore_patterns = list(ignore)
        return watch

    def to_dict(self) -> Any:
        if self.error is not None:
            return self.raw
        return {
            "local_path": self.local_path,
            "remote_path": self.remote_path,
            "direction": self.direction,
            "ignore_patterns": list(self.ignore_patterns),
        }

    def to_sync_config(self, settings: "SyncSettings") -> "SyncConfig":
        """Validate this entry and build the immutable watch pair config.

        Args:
            settings: Global sync settings (provides the poll interval)

        Returns:
            SyncConfig for the engine

        Raises:
            ConfigError: If the direction, paths or patterns are invalid
        """
        from .sync.models import SyncConfig
        from .sync.modes import SyncDirection

        if self.error is not None:
            raise ConfigError(self.error)

        try:
            direction = SyncDirection.from_string(self.direction)
        except ValueError as e:
            raise ConfigError(f"{self.local_path}: {e}") from e

        if not self.local_path:
            raise ConfigError("Watch entry has an empty local_path")
        if not self.remote_path:
            raise ConfigError(f"{self.local_path}: remote_path must not be empty")

        local = Path(self.local_path).expanduser()
        if not local.is_absolute():
            raise ConfigError(f"local_path must be absolute: {self.local_path}")

        return SyncConfig(
            local_path=local,
            remote_path="/" + self.remote_path.strip("/"),
            direction=direction,
            ignore_patterns=tuple(p for p in self.ignore_patterns if p.strip()),
            poll_interval=float(settings.check_interval_secs),
        )


@dataclass
class SyncSettings:
    """The ``[sync]`` table."""

    check_interval_secs: int = DEFAULT_CHECK_INTERVAL
    """How often to check for remote changes (seconds)"""

    concurrent_uploads: int = DEFAULT_CONCURRENT_UPLOADS
    """Maximum number of concurrent transfers per watch pair"""

    chunk_size: int = DEFAULT_CHUNK_SIZE
    """Chunk size for streaming reads and downloads"""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_base_delay: float = DEFAULT_RETRY_DELAY
    retry_max_delay: float = DEFAULT_MAX_RETRY_DELAY
    debounce_secs: float = DEFAULT_DEBOUNCE
    shutdown_grace_secs: float = DEFAULT_SHUTDOWN_GRACE

    use_local_trash: bool = False
    """Move locally deleted files to the system trash"""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncSettings":
        defaults = cls()
        try:
            settings = cls(
                check_interval_secs=int(
                    data.get("check_interval_secs", defaults.check_interval_secs)
                ),
                concurrent_uploads=int(
                    data.get("concurrent_uploads", defaults.concurrent_uploads)
                ),
                chunk_size=int(data.get("chunk_size", defaults.chunk_size)),
                max_attempts=int(data.get("max_attempts", defaults.max_attempts)),
                retry_base_delay=float(
                    data.get("retry_base_delay", defaults.retry_base_delay)
                ),
                retry_max_delay=float(
                    data.get("retry_max_delay", defaults.retry_max_delay)
                ),
                debounce_secs=float(data.get("debounce_secs", defaults.debounce_secs)),
                shutdown_grace_secs=float(
                    data.get("shutdown_grace_secs", defaults.shutdown_grace_secs)
                ),
                use_local_trash=bool(
                    data.get("use_local_trash", defaults.use_local_trash)
                ),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid [sync] settings: {e}") from e

        if settings.check_interval_secs <= 0:
            raise ConfigError("check_interval_secs must be positive")
        if settings.concurrent_uploads < 1:
            raise ConfigError("concurrent_uploads must be at least 1")
        if settings.chunk_size < 1:
            raise ConfigError("chunk_size must be at least 1")
        if settings.max_attempts < 1:
            raise ConfigError("max_attempts must be at least 1")
        return settings

    def to_dict(self) -> dict[str, Any]:
        return {
            "check_interval_secs": self.check_interval_secs,
            "concurrent_uploads": self.concurrent_uploads,
            "chunk_size": self.chunk_size,
            "max_attempts": self.max_attempts,
            "retry_base_delay": self.retry_base_delay,
            "retry_max_delay": self.retry_max_delay,
            "debounce_secs": self.debounce_secs,
            "shutdown_grace_secs": self.shutdown_grace_secs,
            "use_local_trash": self.use_local_trash,
        }


@dataclass
class ConflictSettings:
    """The ``[conflict]`` table."""

    resolution: str = "newest"
    """Resolution strategy: "newest", "largest", or "manual" """

    backup: bool = True
    """Keep a timestamped copy of the losing side before overwriting it"""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConflictSettings":
        resolution = str(data.get("resolution", "newest")).strip().lower()
        if resolution not in VALID_RESOLUTIONS:
            raise ConfigError(
                f"Invalid conflict resolution '{resolution}'. "
                "Must be 'newest', 'largest', or 'manual'"
            )
        return cls(resolution=resolution, backup=bool(data.get("backup", True)))

    def to_dict(self) -> dict[str, Any]:
        return {"resolution": self.resolution, "backup": self.backup}


@dataclass
class Config:
    """Main configuration: watch pairs plus global settings."""

    watch: list[WatchConfig] = field(default_factory=list)
    sync: SyncSettings = field(default_factory=SyncSettings)
    conflict: ConflictSettings = field(default_factory=ConflictSettings)
    path: Optional[Path] = None
    """File the configuration was loaded from"""

    @staticmethod
    def default_path(config_dir: Optional[Path] = None) -> Path:
        return (config_dir or get_config_dir()) / CONFIG_FILE_NAME

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create Config from a parsed TOML document.

        Raises:
            ConfigError: If a section is malformed
        """
        watches = data.get("watch", [])
        if not isinstance(watches, list):
            raise ConfigError("'watch' must be an array of tables ([[watch]])")
        sync_data = data.get("sync", {})
        conflict_data = data.get("conflict", {})
        if not isinstance(sync_data, dict) or not isinstance(conflict_data, dict):
            raise ConfigError("[sync] and [conflict] must be tables")

        return cls(
            watch=[WatchConfig.from_dict(w) for w in watches],
            sync=SyncSettings.from_dict(sync_data),
            conflict=ConflictSettings.from_dict(conflict_data),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "watch": [w.to_dict() for w in self.watch],
            "sync": self.sync.to_dict(),
            "conflict": self.conflict.to_dict(),
        }

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """Load configuration from file.

        Args:
            path: Config file; defaults to ``<config dir>/config.toml``

        Returns:
            Config (defaults when the file does not exist)

        Raises:
            ConfigError: If the file cannot be read or parsed
        """
        path = path or cls.default_path()

        if not path.exists():
            logger.debug(f"No config file at {path}, using defaults")
            config = cls()
            config.path = path
            return config

        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Failed to parse config file {path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read config file {path}: {e}") from e

        config = cls.from_dict(data)
        config.path = path
        for watch in config.watch:
            if watch.error is not None:
                logger.warning(f"Invalid watch entry in {path}: {watch.error}")
        logger.debug(f"Loaded {len(config.watch)} watch configuration(s) from {path}")
        return config

    def save(self, path: Optional[Path] = None) -> Path:
        """Save configuration to file.

        Returns:
            Path the configuration was written to
        """
        path = path or self.path or self.default_path()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as f:
                tomli_w.dump(self.to_dict(), f)
        except OSError as e:
            raise ConfigError(f"Failed to write config file {path}: {e}") from e
        self.path = path
        return path

    def add_watch(self, watch: WatchConfig) -> None:
        """Add a new watch configuration.

        Raises:
            ConfigError: If the local path is already configured
        """
        if self.find_watch(watch.local_path) is not None:
            raise ConfigError(f"Path {watch.local_path} is already configured")
        self.watch.append(watch)

    def remove_watch(self, local_path: str) -> WatchConfig:
        """Remove and return the watch configuration for ``local_path``.

        Raises:
            ConfigError: If no configuration exists for the path
        """
        watch = self.find_watch(local_path)
        if watch is None:
            raise ConfigError(f"No configuration found for path: {local_path}")
        self.watch.remove(watch)
        return watch

    def find_watch(self, local_path: str) -> Optional[WatchConfig]:
        """Find a watch configuration by local path."""
        wanted = _normalize_local(local_path)
        for watch in self.watch:
            if _normalize_local(watch.local_path) == wanted:
                return watch
        return None


def _normalize_local(path: str) -> str:
    return os.path.normpath(os.path.expanduser(str(path)))
