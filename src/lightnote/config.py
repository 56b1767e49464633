"""Configuration module for the LightNote storage layer."""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config lives alongside the local databases
_USER_ENV = Path.home() / ".lightnote" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

DEFAULT_DATABASE_NAME = "LightNoteDB"
# Latest schema generation understood by the embedded provider
LATEST_SCHEMA_VERSION = 2
IN_MEMORY_DATABASE = ":memory:"


class ProviderKind(str, Enum):
    """Storage providers known to the factory."""

    SQLITE = "sqlite"  # Local embedded provider
    SUPABASE = "supabase"  # Networked provider (seam only)


# Provider names from earlier app releases, resolved to their current kind
PROVIDER_ALIASES = {"dexie": ProviderKind.SQLITE.value}


class ProviderOptions(BaseModel):
    """Options passed to a provider at construction time.

    Only the fields a provider understands are read; unknown keys are kept
    so that a future provider can receive its own settings unchanged.
    Rule checks (version >= 1, non-empty database name, HTTPS URLs) live in
    the factory's ``validate_config`` and are reported as a list of errors,
    not as model construction failures.
    """

    # Embedded provider
    database_name: Optional[str] = None
    version: Optional[int] = None
    data_dir: Optional[Path] = None
    prune_recent_notes: bool = False
    # Shared
    enable_sync: Optional[bool] = None
    enable_cache: Optional[bool] = None
    enable_logging: Optional[bool] = None
    # Networked provider
    url: Optional[str] = None
    anon_key: Optional[str] = None
    enable_realtime: Optional[bool] = None

    model_config = ConfigDict(extra="allow")


class DatabaseConfig(BaseModel):
    """Configuration object consumed by the provider factory."""

    provider: str = Field(..., description="Provider kind, e.g. 'sqlite'")
    options: ProviderOptions = Field(default_factory=ProviderOptions)

    def is_same_as(self, other: Optional["DatabaseConfig"]) -> bool:
        """Return True when both configs name the same provider and options."""
        if other is None:
            return False
        return self.provider == other.provider and self.options.model_dump(
            exclude_none=True
        ) == other.options.model_dump(exclude_none=True)


class LightNoteConfig(BaseModel):
    """Process-wide settings read from the environment."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("LIGHTNOTE_BASE_DIR", "."))
    )
    # Where embedded databases live
    data_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("LIGHTNOTE_DATA_DIR", "data/db"))
    )
    env: str = Field(
        default_factory=lambda: os.getenv("LIGHTNOTE_ENV", "development").lower()
    )
    log_level: str = Field(
        default_factory=lambda: os.getenv("LIGHTNOTE_LOG_LEVEL", "INFO").upper()
    )
    database_name: str = Field(
        default_factory=lambda: os.getenv(
            "LIGHTNOTE_DATABASE_NAME", DEFAULT_DATABASE_NAME
        )
    )
    schema_version: int = Field(
        default_factory=lambda: int(
            os.getenv("LIGHTNOTE_SCHEMA_VERSION", str(LATEST_SCHEMA_VERSION))
        )
    )
    backup_dir: Path = Field(
        default_factory=lambda: Path(
            os.getenv("LIGHTNOTE_BACKUP_DIR", str(Path.home() / ".lightnote" / "backups"))
        )
    )

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_database_path(
        self, database_name: str, data_dir: Optional[Path] = None
    ) -> Path:
        """Get the SQLite file path for a named database.

        The containing directory is created if needed.
        """
        directory = self.get_absolute_path(Path(data_dir) if data_dir else self.data_dir)
        directory.mkdir(parents=True, exist_ok=True)
        return directory / f"{database_name}.db"


def default_database_config(
    environ: Optional[Mapping[str, str]] = None,
) -> DatabaseConfig:
    """Select the default provider configuration from an environment mapping.

    Outside development, a fully configured networked provider (URL and
    anonymous key both present) is preferred; everything else gets the local
    embedded provider. The result depends only on ``environ`` (defaulting to
    ``os.environ``), never on runtime state.
    """
    env = os.environ if environ is None else environ
    is_development = env.get("LIGHTNOTE_ENV", "development").lower() in (
        "development",
        "dev",
    )
    url = env.get("LIGHTNOTE_SUPABASE_URL")
    anon_key = env.get("LIGHTNOTE_SUPABASE_ANON_KEY")

    if not is_development and url and anon_key:
        return DatabaseConfig(
            provider=ProviderKind.SUPABASE.value,
            options=ProviderOptions(
                url=url, anon_key=anon_key, enable_realtime=True, enable_sync=True
            ),
        )

    return DatabaseConfig(
        provider=ProviderKind.SQLITE.value,
        options=ProviderOptions(
            database_name=env.get("LIGHTNOTE_DATABASE_NAME", DEFAULT_DATABASE_NAME),
            version=LATEST_SCHEMA_VERSION,
            enable_sync=False,
            enable_cache=True,
            enable_logging=is_development,
        ),
    )


# Create a global config instance
config = LightNoteConfig()
