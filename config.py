#!/usr/bin/env python3
"""
Configuration management for the feed ingestion engine.

Settings come from the process environment, an optional ``.env`` file next
to this module and an optional YAML secrets file pointed to by
``SECRETS_FILE``. Values are validated once at import time and exposed as
UPPER_CASE attributes on the global ``config`` object.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

LOGGER_ROOT = "FeedReader"


def _setup_global_logger():
    """Configure the single application-wide logger.

    Environment Variables:
        LOG_LEVEL: DEBUG, INFO, WARNING or ERROR (defaults to INFO)
        LOG_TIMESTAMPS: set to "false" to drop timestamps (useful under cron,
            which usually stamps lines itself)

    Output goes to stdout with line buffering so cron/journald capture lines
    as they are written.
    """
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR,
    }
    level = level_map.get(environ.get("LOG_LEVEL", "INFO").upper(), INFO)

    if environ.get("LOG_TIMESTAMPS", "true").lower() != "false":
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True,
    )
    for stream in (sys.stdout, sys.stderr):
        if hasattr(stream, "reconfigure"):
            stream.reconfigure(line_buffering=True)

    # Third-party clients are chatty at INFO
    for name in ("aiohttp.access", "redis", "azure.monitor.opentelemetry.exporter"):
        getLogger(name).setLevel(WARNING)

    return getLogger(LOGGER_ROOT)


def get_logger(name: str):
    """Return a module logger named ``FeedReader.<name>``.

    Example:
        logger = get_logger("fetcher")
        logger.info("Fetched 12 entries")  # FeedReader.fetcher - INFO - ...
    """
    return getLogger(f"{LOGGER_ROOT}.{name}")


logger = _setup_global_logger()


class Config:
    """Configuration manager.

    Loading order (later sources win):
    1. Process environment
    2. ``.env`` file beside this module
    3. YAML secrets file named by ``SECRETS_FILE``

    Example secrets.yaml:
    ```yaml
    CRON_SECRET: "long-random-string"
    REDIS_URL: "redis://localhost:6379/0"
    ```
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()

    def _load_environment(self):
        """Load .env and the optional secrets file into ``os.environ``."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")
        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _optional_str(self, env_var: str) -> Optional[str]:
        value = environ.get(env_var, "").strip()
        return value or None

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Storage
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # HTTP fetching
        self.USER_AGENT = environ.get(
            "USER_AGENT",
            "Mozilla/5.0 (compatible; FeedReader/1.0; +https://github.com/feedreader)",
        )
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 10, 1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)
        self.PROXY_FALLBACK_URL = environ.get(
            "PROXY_FALLBACK_URL", "https://api.allorigins.win/raw?url={url}"
        )
        self.REDDIT_BASE_URL = environ.get("REDDIT_BASE_URL", "https://www.reddit.com").rstrip("/")

        # Whole fetch+parse budget for subscribe and refresh
        self.FETCH_TIMEOUT_SECONDS = self._validate_positive_float("FETCH_TIMEOUT_SECONDS", 15.0, 0.01)

        # Parsing
        self.DESCRIPTION_MAX_LENGTH = self._validate_positive_int("DESCRIPTION_MAX_LENGTH", 300, 10)

        # Refresh-all token bucket: capacity and seconds per refilled permit
        self.REFRESH_ALL_BUCKET_SIZE = self._validate_positive_int("REFRESH_ALL_BUCKET_SIZE", 1, 1)
        self.REFRESH_ALL_REFILL_SECONDS = self._validate_positive_int("REFRESH_ALL_REFILL_SECONDS", 300, 1)

        # Feeds refreshed at once by batch operations (1 = sequential)
        self.REFRESH_CONCURRENCY = self._validate_positive_int("REFRESH_CONCURRENCY", 1, 1)

        # Cron sweep
        self.CRON_SECRET = self._optional_str("CRON_SECRET")

        # Cache
        self.REDIS_URL = self._optional_str("REDIS_URL")
        self.REDIS_KEY_PREFIX = environ.get("REDIS_KEY_PREFIX", "")
        self.CACHE_TTL_SECONDS = self._validate_positive_int("CACHE_TTL_SECONDS", 1800, 1)

        # Per-user setting defaults
        self.DEFAULT_REFRESH_INTERVAL_HOURS = self._validate_positive_int("DEFAULT_REFRESH_INTERVAL_HOURS", 24, 1)
        self.DEFAULT_RETENTION_DAYS = self._validate_positive_int("DEFAULT_RETENTION_DAYS", 30, 1)

    def _load_secrets_file(self):
        """Copy key/value pairs from the YAML file named by SECRETS_FILE into the environment.

        Both a top-level mapping and a mapping nested under ``environment``
        are accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets_config, dict):
            if secrets_config is not None:
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config.get('environment')
        if not isinstance(env_vars, dict):
            env_vars = secrets_config

        loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")
        logger.info(f"Loaded {loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Read a YAML file after existence, permission and size checks.

        Returns:
            Parsed YAML or None on any failure (failures are logged).
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def get_config_summary(self) -> Dict[str, Any]:
        """Summary of the active configuration, without secret values."""
        return {
            "database_path": self.DATABASE_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "fetch_timeout_seconds": self.FETCH_TIMEOUT_SECONDS,
            "refresh_concurrency": self.REFRESH_CONCURRENCY,
            "refresh_all_bucket": f"{self.REFRESH_ALL_BUCKET_SIZE}/{self.REFRESH_ALL_REFILL_SECONDS}s",
            "cache_backend": "redis" if self.REDIS_URL else "memory",
            "cache_ttl_seconds": self.CACHE_TTL_SECONDS,
            "has_cron_secret": bool(self.CRON_SECRET),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()
