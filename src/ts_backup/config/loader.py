"""Connection profile loading from TOML."""

import tomllib
from pathlib import Path
from urllib.parse import quote

from pydantic import ValidationError

from ts_backup.config.models import DatabaseProfile, ProfilesConfig

DEFAULT_CONFIG_FILE = "ts-backup.toml"
PASSWORD_PLACEHOLDER = "[YOUR-PASSWORD]"


class ProfileNotFoundError(Exception):
    """Raised when the requested profile is not in the config file."""

    pass


def load_profiles(config_path: Path | None = None) -> ProfilesConfig:
    """Load connection profiles from a TOML file.

    Args:
        config_path: Path to the config file (default: ./ts-backup.toml)

    Returns:
        ProfilesConfig with all profiles

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config format is invalid
    """
    if config_path is None:
        config_path = Path.cwd() / DEFAULT_CONFIG_FILE

    if not config_path.exists():
        raise FileNotFoundError(f"Profiles config not found: {config_path}")

    with open(config_path, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Invalid TOML in {config_path}: {e}") from e

    try:
        return ProfilesConfig(profiles=data.get("profiles", {}))
    except ValidationError as e:
        raise ValueError(f"Invalid profile in {config_path}: {e}") from e


def get_profile(name: str, config_path: Path | None = None) -> DatabaseProfile:
    """Look up a single profile by name.

    Raises:
        ProfileNotFoundError: If the profile is not defined
        FileNotFoundError: If config file doesn't exist
    """
    config = load_profiles(config_path)
    if name not in config.profiles:
        available = ", ".join(config.profiles.keys()) or "none"
        raise ProfileNotFoundError(
            f"Profile '{name}' not found. Available profiles: {available}"
        )
    return config.profiles[name]


def resolve_url(profile: DatabaseProfile) -> str:
    """Resolve profile URL with password substitution.

    Args:
        profile: Database profile from config

    Returns:
        Connection URL with password substituted
    """
    url = profile.url
    if profile.db_password and PASSWORD_PLACEHOLDER in url:
        url = url.replace(PASSWORD_PLACEHOLDER, quote(profile.db_password, safe=""))
    return url
