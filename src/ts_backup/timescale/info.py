"""TimescaleDB version info persisted alongside a dump.

The dump writes one ``timescaleVersionInfo.json`` file next to the
directory-format dump; the restore reads it to recreate the extension at
the exact version and schema it was dumped from.

Usage:
    from ts_backup.timescale.info import TimescaleInfo, read_ts_info

    info = read_ts_info(config.ts_info_file)
    print(info.extension_schema, info.extension_version)
"""

import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ts_backup.errors import MetadataError

METADATA_VERSION = 1

# Extension versions are inlined into CREATE EXTENSION ... VERSION '...'
_VERSION_RE = re.compile(r"^[0-9A-Za-z._-]+$")


class TimescaleInfo(BaseModel):
    """Installed TimescaleDB extension at dump time."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    metadata_version: int = Field(default=METADATA_VERSION, alias="metadataVersion")
    extension_version: str = Field(alias="extensionVersion")
    extension_schema: str = Field(min_length=1, alias="extensionSchema")

    @field_validator("metadata_version")
    @classmethod
    def _supported_metadata_version(cls, value: int) -> int:
        if value != METADATA_VERSION:
            raise ValueError(
                f"unsupported metadata version {value} (expected {METADATA_VERSION})"
            )
        return value

    @field_validator("extension_version")
    @classmethod
    def _plain_version(cls, value: str) -> str:
        if not _VERSION_RE.match(value):
            raise ValueError(f"invalid extension version '{value}'")
        return value


def write_ts_info(path: Path, info: TimescaleInfo) -> None:
    """Create the version info file; fails if it already exists.

    Raises:
        MetadataError: If the file cannot be created or written.
    """
    try:
        with open(path, "x") as f:
            f.write(info.model_dump_json(by_alias=True))
            f.write("\n")
    except OSError as e:
        raise MetadataError(f"error writing Timescale info to {path}: {e}") from e


def read_ts_info(path: Path) -> TimescaleInfo:
    """Read and validate the version info file.

    Raises:
        MetadataError: If the file is missing, is not valid JSON, or has an
            unsupported ``metadataVersion``.
    """
    try:
        content = Path(path).read_text()
    except OSError as e:
        raise MetadataError(f"failed to open version file: {e}") from e

    try:
        return TimescaleInfo.model_validate_json(content)
    except ValidationError as e:
        raise MetadataError(f"failed to decode Timescale info JSON: {e}") from e
