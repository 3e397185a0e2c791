"""Settings loading from a key=value ``.env`` file."""

from pathlib import Path

from pydantic import ValidationError

from mariadb_backup.config.models import BackupSettings
from mariadb_backup.errors import ConfigError, DirectoryError

DEFAULT_ENV_FILE = Path(".env")


def load_settings(env_file: Path | None = None) -> BackupSettings:
    """Load backup settings from an env file and the process environment.

    Args:
        env_file: Path to a key=value file.  When ``None``, ``./.env`` is
            read if present; otherwise only the environment is used.

    Returns:
        Validated BackupSettings.

    Raises:
        ConfigError: If an explicit env file doesn't exist or a required
            setting (e.g. MARIADB_ROOT_PASSWORD) is missing.
    """
    if env_file is not None and not env_file.exists():
        raise ConfigError(
            f"Environment file not found: {env_file}\n"
            f"Copy .env.example to .env and set MARIADB_ROOT_PASSWORD."
        )

    source = env_file if env_file is not None else DEFAULT_ENV_FILE

    try:
        return BackupSettings(_env_file=source if source.exists() else None)
    except ValidationError as e:
        fields = ", ".join(
            ".".join(str(part) for part in err["loc"]).upper() for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration in {source}: {fields}") from e


def ensure_directories(settings: BackupSettings) -> None:
    """Create every state directory (backups, binlogs, markers, logs).

    Raises:
        DirectoryError: If a directory cannot be created.
    """
    for directory in settings.state_directories:
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DirectoryError(f"Failed to create directory {directory}: {e}") from e
