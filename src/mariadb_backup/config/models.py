"""Settings model for the backup system.

Values come from a key=value ``.env`` file and the process environment
(environment wins). Field names map to upper-case variable names, e.g.
``mariadb_root_password`` reads ``MARIADB_ROOT_PASSWORD``.
"""

from pathlib import Path
from urllib.parse import quote

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ============================================================================
# Settings
# ============================================================================


class BackupSettings(BaseSettings):
    """Connection credentials, container name, and state directories."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Server
    mariadb_container: str = "mariadb"
    mariadb_root_password: str
    mariadb_host: str = "127.0.0.1"
    mariadb_port: int = 3306
    mariadb_user: str = Field(
        default="root",
        validation_alias=AliasChoices("MARIADB_ADMIN_USER", "MARIADB_USER_ADMIN"),
    )

    # State directories (derived from backup_dir when unset)
    backup_dir: Path = Path("./backups")
    binlog_dir: Path | None = None
    binlog_info_dir: Path | None = None
    incr_info_dir: Path | None = None
    checksum_dir: Path | None = None
    log_dir: Path = Path("./logs")
    key_file: Path = Field(
        default=Path(".backup_encryption_key"),
        validation_alias=AliasChoices("BACKUP_KEY_FILE", "KEY_FILE"),
    )

    # Databases to try when the server cannot list them
    mariadb_database1: str | None = None
    mariadb_database2: str | None = None
    mariadb_database3: str | None = None
    mariadb_database4: str | None = None
    mariadb_database5: str | None = None

    # Retention and scheduling
    keep_backup_generations: int = Field(default=7, ge=1)
    keep_binlog_generations: int = Field(default=2, ge=1)
    parallel_jobs: int = Field(default=3, ge=1)
    strict_binlog_replay: bool = False

    @model_validator(mode="after")
    def _derive_directories(self) -> "BackupSettings":
        if self.binlog_dir is None:
            self.binlog_dir = self.backup_dir / "binlogs"
        if self.binlog_info_dir is None:
            self.binlog_info_dir = self.backup_dir / "binlog_info"
        if self.incr_info_dir is None:
            self.incr_info_dir = self.backup_dir / "incr"
        if self.checksum_dir is None:
            self.checksum_dir = self.backup_dir / "checksums"
        return self

    @property
    def fallback_databases(self) -> list[str]:
        """Databases named by ``MARIADB_DATABASE1`` .. ``MARIADB_DATABASE5``."""
        names = [
            self.mariadb_database1,
            self.mariadb_database2,
            self.mariadb_database3,
            self.mariadb_database4,
            self.mariadb_database5,
        ]
        return [n for n in names if n]

    @property
    def state_directories(self) -> list[Path]:
        """All directories the backup system writes to."""
        return [
            self.backup_dir,
            self.binlog_dir,
            self.binlog_info_dir,
            self.incr_info_dir,
            self.checksum_dir,
            self.log_dir,
        ]

    def database_url(self) -> str:
        """SQLAlchemy URL for the server (no default schema selected)."""
        user = quote(self.mariadb_user, safe="")
        password = quote(self.mariadb_root_password, safe="")
        return f"mysql+aiomysql://{user}:{password}@{self.mariadb_host}:{self.mariadb_port}/"
