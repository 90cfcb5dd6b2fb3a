#!/usr/bin/env python3
"""
Configuration management for Feed Sweeper.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, the optional YAML secrets file and feeds.yaml,
and provides a clean interface for accessing configuration values throughout
the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import re
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    environ["PYTHONUNBUFFERED"] = "1"

    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"

    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True  # Force reconfiguration if already configured
    )

    # pytest swaps stdout for a capture object without reconfigure()
    for stream in (sys.stdout, sys.stderr):
        if hasattr(stream, "reconfigure"):
            stream.reconfigure(line_buffering=True)

    # Reduce Azure exporter verbosity unless explicitly overridden
    azure_level = level_map.get(environ.get("AZURE_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("azure", "azure.core", "azure.monitor.opentelemetry.exporter"):
        getLogger(name).setLevel(azure_level)

    return getLogger("FeedSweeper")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Loggers are named "FeedSweeper.{name}" and inherit the global logging
    configuration set by _setup_global_logger().

    Example:
        logger = get_logger("sweeper")
        logger.info("This will appear as 'FeedSweeper.sweeper - INFO - ...'")
    """
    return getLogger(f"FeedSweeper.{name}")

# Create single global logger instance
logger = _setup_global_logger()

_OFFSET_RE = re.compile(r'^[+-]\d{2}:?\d{2}$')

VALID_FEED_TYPES = ("rss", "atom", "sitemap", "html")

class Config:
    """Configuration manager for Feed Sweeper.

    Values are loaded from, in order:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. feeds.yaml (pipeline settings and the feed seed list)

    Example feeds.yaml:
    ```yaml
    settings:
      default_timezone_offset: "+05:30"
      unreliable_date_sources: [example-times]
    feeds:
      example-rss:
        source_id: example
        url: https://example.com/rss.xml
        type: rss
        interval_minutes: 15
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
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
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Basic configuration
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "sweeper.db")
        # Empty means "rotate through the built-in browser pool"
        self.USER_AGENT = environ.get("USER_AGENT", "")
        self.ARTICLE_USER_AGENT = environ.get(
            "ARTICLE_USER_AGENT", "Mozilla/5.0 (compatible; FeedSweeperBot/1.0)"
        )

        # Sweep scheduling
        self.FETCH_INTERVAL_MINUTES = self._validate_positive_int("FETCH_INTERVAL_MINUTES", 30, 1)
        self.FEED_SWEEP_DELAY = self._validate_positive_float("FEED_SWEEP_DELAY", 0.5, 0.0)
        self.CRON_TIME_BUDGET_SECONDS = self._validate_positive_int("CRON_TIME_BUDGET_SECONDS", 300, 10)

        # HTTP request configuration
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 3, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.0)
        self.RETRY_MAX_DELAY = self._validate_positive_float("RETRY_MAX_DELAY", 10.0, 0.0)
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 1)
        self.ARTICLE_HTTP_TIMEOUT = self._validate_positive_int("ARTICLE_HTTP_TIMEOUT", 12, 1)

        # Health / circuit breaker
        self.MAX_CONSECUTIVE_FAILURES = self._validate_positive_int("MAX_CONSECUTIVE_FAILURES", 5, 1)

        # Dedup caches
        self.RECENT_HASHES_LIMIT = self._validate_positive_int("RECENT_HASHES_LIMIT", 200, 1)

        # Article processing queue
        self.ARTICLE_FETCH_DELAY = self._validate_positive_float("ARTICLE_FETCH_DELAY", 0.2, 0.0)
        self.PROCESS_QUEUE_DEFAULT_LIMIT = self._validate_positive_int("PROCESS_QUEUE_DEFAULT_LIMIT", 10, 1)
        self.PROCESS_QUEUE_MAX_LIMIT = self._validate_positive_int("PROCESS_QUEUE_MAX_LIMIT", 50, 1)
        self.QUEUE_DRAIN_ITERATIONS = self._validate_positive_int("QUEUE_DRAIN_ITERATIONS", 5, 0)
        self.QUEUE_DRAIN_BATCH = self._validate_positive_int("QUEUE_DRAIN_BATCH", 10, 1)
        self.MIN_CONTENT_CHARS = self._validate_positive_int("MIN_CONTENT_CHARS", 50, 1)
        self.MAX_CONTENT_CHARS = self._validate_positive_int("MAX_CONTENT_CHARS", 10000, 100)
        self.MIN_WORD_COUNT = self._validate_positive_int("MIN_WORD_COUNT", 100, 1)

        # HTTP server
        self.SERVER_HOST = environ.get("SERVER_HOST", "0.0.0.0")
        self.SERVER_PORT = self._validate_positive_int("SERVER_PORT", 8080, 1)

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Supports a top-level mapping or one nested under `environment`.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets_config, dict):
            if secrets_config is not None:
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config
        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")
        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'feeds')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
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

    def _load_feed_sources(self) -> None:
        """Populate FEED_SOURCES and date-handling settings from feeds.yaml.

        Any failure results in an empty feed list and default settings.
        """
        feeds_path = self.FEEDS_CONFIG_PATH
        self.DEFAULT_TIMEZONE_OFFSET = environ.get("DEFAULT_TIMEZONE_OFFSET", "+05:30")
        self.UNRELIABLE_DATE_SOURCES: List[str] = []
        self.FEED_SOURCES: Dict[str, Dict[str, Any]] = {}

        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        if not isinstance(config_data, dict):
            return

        settings = config_data.get('settings')
        if isinstance(settings, dict):
            offset = settings.get('default_timezone_offset')
            if offset is not None and "DEFAULT_TIMEZONE_OFFSET" not in environ:
                offset = str(offset).strip()
                if _OFFSET_RE.match(offset):
                    self.DEFAULT_TIMEZONE_OFFSET = offset
                else:
                    logger.warning(f"Invalid default_timezone_offset '{offset}' in {feeds_path}; keeping {self.DEFAULT_TIMEZONE_OFFSET}")
            interval = settings.get('default_fetch_interval_minutes')
            if interval is not None and "FETCH_INTERVAL_MINUTES" not in environ:
                try:
                    interval_val = int(str(interval).strip())
                    if interval_val >= 1:
                        self.FETCH_INTERVAL_MINUTES = interval_val
                    else:
                        logger.warning("default_fetch_interval_minutes must be >=1 (got %s)", interval)
                except ValueError:
                    logger.warning("Invalid default_fetch_interval_minutes '%s' in feeds.yaml", interval)
            unreliable = settings.get('unreliable_date_sources')
            if isinstance(unreliable, list):
                self.UNRELIABLE_DATE_SOURCES = [str(s).strip() for s in unreliable if str(s).strip()]

        feeds_section = config_data.get('feeds')
        if not isinstance(feeds_section, dict):
            logger.warning(f"No valid feeds found in {feeds_path}")
            return

        for feed_id, feed_cfg in feeds_section.items():
            if not isinstance(feed_cfg, dict) or 'url' not in feed_cfg:
                logger.warning(f"Skipping invalid feed configuration for '{feed_id}': {feed_cfg}")
                continue
            feed_type = str(feed_cfg.get('type', 'rss')).lower()
            if feed_type not in VALID_FEED_TYPES:
                logger.warning(f"Unknown feed type '{feed_type}' for '{feed_id}'; assuming rss")
                feed_type = 'rss'
            interval = feed_cfg.get('interval_minutes')
            self.FEED_SOURCES[str(feed_id)] = {
                'source_id': str(feed_cfg.get('source_id') or feed_id),
                'url': feed_cfg['url'],
                'type': feed_type,
                'active': bool(feed_cfg.get('active', True)),
                'interval_minutes': int(interval) if isinstance(interval, int) and interval > 0 else None,
            }
            logger.debug(f"Loaded feed {feed_id}: {feed_cfg['url']}")

        logger.info(f"Successfully loaded {len(self.FEED_SOURCES)} feeds from {feeds_path}")

    def reload_feed_sources(self):
        """Reload feed sources from configuration file."""
        logger.info("Reloading feed sources configuration")
        self._load_feed_sources()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "fetch_interval_minutes": self.FETCH_INTERVAL_MINUTES,
            "max_retries": self.MAX_RETRIES,
            "http_timeout": self.HTTP_TIMEOUT,
            "article_http_timeout": self.ARTICLE_HTTP_TIMEOUT,
            "max_consecutive_failures": self.MAX_CONSECUTIVE_FAILURES,
            "default_timezone_offset": self.DEFAULT_TIMEZONE_OFFSET,
            "unreliable_date_sources": len(self.UNRELIABLE_DATE_SOURCES),
            "feed_count": len(self.FEED_SOURCES),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
