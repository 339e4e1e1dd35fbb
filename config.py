"""
Configuration module for stagetrack.

Provides centralized configuration management with support for:
- Environment variables
- Default values
- Path resolution
- Logging configuration
- Custom stage catalogs
"""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from models.stages import StageSchema
from utils.validation import DEFAULT_MAX_BATCH_SIZE

# Load environment variables from .env file at project root
_env_path = Path(__file__).resolve().parent / ".env"
load_dotenv(dotenv_path=_env_path)


def _parse_int(env_var: str, default: int) -> int:
    """Parse a positive integer from an environment variable."""
    value = os.getenv(env_var)
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value)
    except ValueError:
        logging.warning(f"Ignoring non-integer {env_var}={value!r}; using {default}")
        return default
    return parsed if parsed > 0 else default


class Config:
    """
    Configuration class for engine settings.

    Supports configuration via environment variables (and .env file) with sensible defaults.
    Relative paths are resolved against the repository root.
    """

    def __init__(self):
        """Initialize configuration from environment variables and defaults."""
        self._repo_root = self._find_repo_root()

        # Database configuration
        self.db_path = self._resolve_db_path()

        # Logging configuration
        self.log_level = os.getenv("STAGETRACK_LOG_LEVEL", "INFO").upper()
        self.log_file = self._resolve_optional_path("STAGETRACK_LOG_FILE")

        # Stage catalog (None means the default board columns)
        self.stages_file = self._resolve_optional_path("STAGETRACK_STAGES_FILE")

        # bulk_move / delete_entities limit
        self.bulk_max = _parse_int("STAGETRACK_BULK_MAX", DEFAULT_MAX_BATCH_SIZE)

    def _find_repo_root(self) -> Path:
        """config.py sits at the repository root."""
        return Path(__file__).resolve().parent

    def _resolve_db_path(self) -> Path:
        """
        Resolve the database path from environment or default.

        Resolution order:
        1. STAGETRACK_DB environment variable (absolute or relative)
        2. STAGETRACK_ROOT/data/stagetrack.db
        3. Default: <repo_root>/data/stagetrack.db

        Returns:
            Resolved absolute Path to database
        """
        db_env = os.getenv("STAGETRACK_DB")
        if db_env:
            db_path = Path(db_env)
            if db_path.is_absolute():
                return db_path
            return self._repo_root / db_path

        root_env = os.getenv("STAGETRACK_ROOT")
        if root_env:
            return Path(root_env) / "data" / "stagetrack.db"

        return self._repo_root / "data" / "stagetrack.db"

    def _resolve_optional_path(self, env_var: str) -> Optional[Path]:
        """Resolve an optional path setting; unset means None."""
        value = os.getenv(env_var)
        if not value:
            return None

        path = Path(value)
        if path.is_absolute():
            return path
        return self._repo_root / path

    def load_stage_schema(self) -> StageSchema:
        """
        Build the stage catalog.

        Returns the default board columns unless STAGETRACK_STAGES_FILE names
        a YAML catalog.
        """
        if self.stages_file is None:
            return StageSchema.default()
        return StageSchema.from_yaml(self.stages_file)

    def setup_logging(self):
        """
        Configure logging based on configuration settings.

        Sets up logging to stderr and optionally to a file.
        Log level is controlled by STAGETRACK_LOG_LEVEL.
        """
        numeric_level = getattr(logging, self.log_level, logging.INFO)

        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
        )

        root_logger = logging.getLogger()
        root_logger.setLevel(numeric_level)

        # Remove existing handlers to avoid duplicates
        root_logger.handlers.clear()

        stderr_handler = logging.StreamHandler()
        stderr_handler.setLevel(numeric_level)
        stderr_handler.setFormatter(formatter)
        root_logger.addHandler(stderr_handler)

        if self.log_file:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(self.log_file)
            file_handler.setLevel(numeric_level)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

            logging.info(f"Logging to file: {self.log_file}")

        logging.info(f"Log level set to: {self.log_level}")
        logging.info(f"Database path: {self.db_path}")

    def get_db_path_str(self) -> str:
        """Database path as string for the SQLite adapter."""
        return str(self.db_path)

    def validate(self) -> list[str]:
        """
        Validate configuration and return any warnings.

        Returns:
            List of warning messages (empty if all valid)
        """
        warnings = []

        if not self.db_path.exists():
            warnings.append(
                f"Database file not found: {self.db_path}. "
                "Call SqliteRemoteSync.ensure_schema() to create it."
            )

        if self.stages_file and not self.stages_file.exists():
            warnings.append(f"Stage catalog file not found: {self.stages_file}")

        if self.log_file:
            log_dir = self.log_file.parent
            if not log_dir.exists():
                try:
                    log_dir.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    warnings.append(f"Cannot create log directory {log_dir}: {e}")
            elif not os.access(log_dir, os.W_OK):
                warnings.append(f"Log directory not writable: {log_dir}")

        return warnings


# Global configuration instance
config = Config()


def get_config() -> Config:
    """
    Get the global configuration instance.

    Returns:
        Global Config instance
    """
    return config
