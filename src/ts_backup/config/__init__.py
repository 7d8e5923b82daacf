"""Configuration management: run config, profiles, TOML loading.

Usage:
    >>> from ts_backup.config import BackupConfig, load_profiles, resolve_url
"""

from ts_backup.config.loader import (
    ProfileNotFoundError,
    get_profile,
    load_profiles,
    resolve_url,
)
from ts_backup.config.models import BackupConfig, DatabaseProfile, ProfilesConfig

__all__ = [
    "BackupConfig",
    "DatabaseProfile",
    "ProfilesConfig",
    "ProfileNotFoundError",
    "get_profile",
    "load_profiles",
    "resolve_url",
]
