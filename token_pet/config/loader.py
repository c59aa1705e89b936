"""
Configuration management and loading.

Handles the YAML settings file, the tool's home directory and the
precedence rules for backend credentials.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

HOME_ENV_VAR = "TOKEN_PET_HOME"
URL_ENV_VAR = "SUPABASE_URL"
API_KEY_ENV_VAR = "SUPABASE_ANON_KEY"

DEFAULT_SYNC_INTERVAL_MINUTES = 1440
CONFIG_FILENAME = "config.yaml"
LOCK_FILENAME = "last-sync.json"
SYNC_LOG_FILENAME = "sync.log"


@dataclass(frozen=True)
class SupabaseSettings:
    """Remote backend and auto sync settings."""
    url: Optional[str] = None
    api_key: Optional[str] = None
    auto_sync: bool = False
    sync_interval: int = DEFAULT_SYNC_INTERVAL_MINUTES  # minutes

    def __post_init__(self):
        """Validate the sync interval is positive."""
        if self.sync_interval <= 0:
            raise ValueError("sync_interval must be > 0")

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.api_key)

    @property
    def sync_interval_ms(self) -> int:
        return self.sync_interval * 60 * 1000


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    supabase: SupabaseSettings = field(default_factory=SupabaseSettings)


@dataclass(frozen=True)
class Credentials:
    """Resolved backend endpoint and key."""
    url: Optional[str]
    api_key: Optional[str]

    @property
    def is_complete(self) -> bool:
        return bool(self.url and self.api_key)


def get_home_dir() -> Path:
    """Return the directory holding config, lock, log and pet files."""
    override = os.environ.get(HOME_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".token-pet"


def get_config_path(home_dir: Optional[Path] = None) -> Path:
    return (home_dir or get_home_dir()) / CONFIG_FILENAME


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load and validate configuration from a YAML file.

    A missing file is not an error: every setting has a default.

    Args:
        path: Path to YAML configuration file (defaults to the home dir)

    Returns:
        Validated AppConfig object

    Raises:
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path) if path is not None else get_config_path()
    if not config_path.exists():
        return AppConfig()

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {config_path}: {e}")

    if not raw_config:
        return AppConfig()

    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'supabase'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    supabase_data = raw_config.get('supabase') or {}
    if not isinstance(supabase_data, dict):
        raise ValueError("'supabase' must be a dictionary")

    return AppConfig(supabase=_parse_supabase_settings(supabase_data, "supabase"))


def _parse_supabase_settings(data: Dict[str, Any], path: str) -> SupabaseSettings:
    """Parse and validate the supabase section.

    Args:
        data: Section data
        path: Path for error messages

    Returns:
        Validated SupabaseSettings

    Raises:
        ValueError: If a key is unknown or has the wrong type
    """
    allowed_keys = {'url', 'api_key', 'auto_sync', 'sync_interval'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    for key in ('url', 'api_key'):
        value = data.get(key)
        if value is not None and not isinstance(value, str):
            raise ValueError(f"'{key}' in {path} must be a string")

    auto_sync = data.get('auto_sync', False)
    if not isinstance(auto_sync, bool):
        raise ValueError(f"'auto_sync' in {path} must be true or false")

    interval = data.get('sync_interval', DEFAULT_SYNC_INTERVAL_MINUTES)
    if isinstance(interval, bool) or not isinstance(interval, int) or interval <= 0:
        raise ValueError(f"'sync_interval' in {path} must be a positive number of minutes")

    return SupabaseSettings(
        url=data.get('url') or None,
        api_key=data.get('api_key') or None,
        auto_sync=auto_sync,
        sync_interval=interval,
    )


def save_config(config: AppConfig, path: Optional[Path] = None) -> None:
    """Write configuration back to YAML, creating the home dir if needed."""
    config_path = Path(path) if path is not None else get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)

    settings = config.supabase
    supabase_data: Dict[str, Any] = {
        'auto_sync': settings.auto_sync,
        'sync_interval': settings.sync_interval,
    }
    if settings.url:
        supabase_data['url'] = settings.url
    if settings.api_key:
        supabase_data['api_key'] = settings.api_key

    with open(config_path, 'w', encoding='utf-8') as f:
        yaml.safe_dump({'supabase': supabase_data}, f, sort_keys=True)


def set_supabase_value(key: str, value: Any, path: Optional[Path] = None) -> AppConfig:
    """Update a single supabase setting and persist it.

    Raises:
        ValueError: If the key is unknown or the value is invalid
    """
    if key not in {'url', 'api_key', 'auto_sync', 'sync_interval'}:
        raise ValueError(f"Unknown supabase setting: {key}")

    config = load_config(path)
    updated = AppConfig(supabase=replace(config.supabase, **{key: value}))
    save_config(updated, path)
    return updated


def resolve_credentials(
    settings: SupabaseSettings,
    url: Optional[str] = None,
    api_key: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Credentials:
    """Pick backend credentials: explicit option > environment > config file."""
    env = os.environ if environ is None else environ
    return Credentials(
        url=url or env.get(URL_ENV_VAR) or settings.url,
        api_key=api_key or env.get(API_KEY_ENV_VAR) or settings.api_key,
    )
