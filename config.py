#!/usr/bin/env python3
"""
Configuration management for the feed commentary service.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, validation, and provides a clean interface
for accessing configuration values throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering so stage subprocesses
    stream their progress to the pipeline runner as it happens.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    # Child processes (pipeline stages) must not buffer their output
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

    try:
        sys.stdout.reconfigure(line_buffering=True)
        sys.stderr.reconfigure(line_buffering=True)
    except AttributeError:
        # Replaced streams (e.g. under test capture) may not support reconfigure
        pass

    # Keep third-party chatter down unless explicitly debugging
    for name in ("aiohttp.access", "httpx", "openai"):
        getLogger(name).setLevel(max(level, WARNING))

    return getLogger("FeedCommentary")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    This function creates a logger with a name in the format "FeedCommentary.{name}".

    Args:
        name: The logger name (e.g., "fetcher", "summarizer", "pipeline")

    Returns:
        A logger instance with the unified configuration
    """
    return getLogger(f"FeedCommentary.{name}")

# Create single global logger instance
logger = _setup_global_logger()

class Config:
    """Configuration manager for the feed commentary service.

    This class handles loading and validation of configuration from multiple sources:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. feeds.yaml configuration file

    Example secrets.yaml format:
    ```yaml
    OPENAI_API_KEY: "your-api-key"
    ADMIN_TOKEN: "long-random-string"
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

    def _validate_bool(self, env_var: str, default: bool) -> bool:
        return environ.get(env_var, "true" if default else "false").strip().lower() in ("1", "true", "yes", "on")

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Storage
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "articles.db")
        self.RATE_STATE_PATH = environ.get("RATE_STATE_PATH", "rate_state.json")
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedCommentary/1.0)")

        # Ingest
        self.FEED_TIMEOUT_SECONDS = self._validate_positive_int("FEED_TIMEOUT_SECONDS", 20, 1)
        self.MAX_ITEMS_PER_FEED = self._validate_positive_int("MAX_ITEMS_PER_FEED", 25, 1)
        self.FEED_CONCURRENCY = self._validate_positive_int("FEED_CONCURRENCY", 5, 1)
        self.DEFAULT_CATEGORY = environ.get("DEFAULT_CATEGORY", "news").strip() or "news"

        # Summarize stage (daily quota and throttling)
        self.SUMMARY_BATCH_LIMIT = self._validate_positive_int("SUMMARY_BATCH_LIMIT", 10, 1)
        self.SUMMARY_DAILY_CAP = self._validate_positive_int("SUMMARY_DAILY_CAP", 30, 1)
        self.SUMMARY_COOLDOWN_SECONDS = self._validate_positive_float("SUMMARY_COOLDOWN_SECONDS", 1.2, 0.0)
        self.SUMMARIZER_MAX_RETRIES = self._validate_positive_int("SUMMARIZER_MAX_RETRIES", 2, 0)
        self.SUMMARIZER_RETRY_DELAY_BASE = self._validate_positive_float("SUMMARIZER_RETRY_DELAY_BASE", 1.0, 0.1)

        # Text generation: Azure OpenAI when AZURE_ENDPOINT is set, public OpenAI otherwise
        self.OPENAI_API_KEY = environ.get("OPENAI_API_KEY")
        self.OPENAI_MODEL = environ.get("OPENAI_MODEL", "gpt-4.1-mini")
        self.AZURE_ENDPOINT = environ.get("AZURE_ENDPOINT")
        # Normalize endpoint (strip scheme and trailing slashes) to avoid malformed URLs
        if self.AZURE_ENDPOINT:
            normalized = self.AZURE_ENDPOINT.strip()
            if normalized.lower().startswith("https://"):
                normalized = normalized[8:]
            elif normalized.lower().startswith("http://"):
                normalized = normalized[7:]
            normalized = normalized.strip("/")
            if normalized != self.AZURE_ENDPOINT:
                logger.info(f"Normalized AZURE_ENDPOINT to '{normalized}'")
            self.AZURE_ENDPOINT = normalized or None
        self.DEPLOYMENT_NAME = environ.get("DEPLOYMENT_NAME")
        self.OPENAI_API_VERSION = environ.get("OPENAI_API_VERSION")

        # Pipeline runner
        self.PIPELINE_STAGE_TIMEOUT_SECONDS = self._validate_positive_int("PIPELINE_STAGE_TIMEOUT_SECONDS", 480, 1)
        self.PIPELINE_OUTPUT_TAIL_CHARS = self._validate_positive_int("PIPELINE_OUTPUT_TAIL_CHARS", 4000, 200)

        # Scheduler
        self.PIPELINE_INTERVAL_MINUTES = self._validate_positive_int("PIPELINE_INTERVAL_MINUTES", 30, 1)
        self.SCHEDULER_RUN_IMMEDIATELY = self._validate_bool("SCHEDULER_RUN_IMMEDIATELY", True)
        self.SCHEDULER_WARMUP_SECONDS = self._validate_positive_int("SCHEDULER_WARMUP_SECONDS", 15, 0)

        # HTTP API
        self.ADMIN_TOKEN = (environ.get("ADMIN_TOKEN") or "").strip() or None
        self.HOST = environ.get("HOST", "0.0.0.0")
        self.PORT = self._validate_positive_int("PORT", 3000, 1)
        self.API_DEFAULT_LIMIT = self._validate_positive_int("API_DEFAULT_LIMIT", 20, 1)
        self.API_MAX_LIMIT = self._validate_positive_int("API_MAX_LIMIT", 50, 1)

        # Feed shaping
        self.SHAPER_WINDOW = self._validate_positive_int("SHAPER_WINDOW", 40, 1)
        self.SHAPER_SCAN_HORIZON = self._validate_positive_int("SHAPER_SCAN_HORIZON", 180, 1)
        self.SHAPER_POOL_SIZE = self._validate_positive_int("SHAPER_POOL_SIZE", 300, 1)

        # File paths
        self.BASE_DIR = base_dir
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))
        self.PROMPT_CONFIG_PATH = environ.get("PROMPT_CONFIG_PATH", path.join(base_dir, "prompt.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, loads the YAML mapping it points to and copies
        its entries into the environment. Both a top-level mapping and the
        older nested `environment:` section are accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
            return
        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
        else:
            env_vars = secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
                logger.debug(f"Set environment variable {key} from secrets file")
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
            with open(file_path, 'r', encoding='utf-8') as f:
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
        """Populate self.FEED_SOURCES from feeds.yaml.

        Each source becomes a dict with `slug`, `name`, `url` and `category`.
        Any failure results in an empty mapping.
        """
        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        feeds_section = config_data.get('feeds') if isinstance(config_data, dict) else None
        if not isinstance(feeds_section, dict):
            logger.warning(f"No valid feeds found in {feeds_path}")
            self.FEED_SOURCES = {}
            return

        new_sources: Dict[str, Dict[str, str]] = {}
        for feed_slug, feed_cfg in feeds_section.items():
            if isinstance(feed_cfg, str):
                feed_cfg = {'url': feed_cfg}
            if not isinstance(feed_cfg, dict) or not str(feed_cfg.get('url') or '').strip():
                logger.warning(f"Skipping invalid feed configuration for '{feed_slug}': {feed_cfg}")
                continue
            new_sources[str(feed_slug)] = {
                'slug': str(feed_slug),
                'name': str(feed_cfg.get('name') or feed_slug).strip(),
                'url': str(feed_cfg['url']).strip(),
                'category': str(feed_cfg.get('category') or self.DEFAULT_CATEGORY).strip(),
            }
            logger.debug(f"Loaded feed {feed_slug}: {feed_cfg['url']}")

        self.FEED_SOURCES = new_sources
        logger.info(f"Loaded {len(self.FEED_SOURCES)} feeds from {feeds_path}")

    def reload_feed_sources(self):
        """Reload feed sources from configuration file."""
        logger.info("Reloading feed sources configuration")
        self._load_feed_sources()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "rate_state_path": self.RATE_STATE_PATH,
            "feed_count": len(self.FEED_SOURCES),
            "feed_timeout_seconds": self.FEED_TIMEOUT_SECONDS,
            "summary_batch_limit": self.SUMMARY_BATCH_LIMIT,
            "summary_daily_cap": self.SUMMARY_DAILY_CAP,
            "pipeline_interval_minutes": self.PIPELINE_INTERVAL_MINUTES,
            "pipeline_stage_timeout_seconds": self.PIPELINE_STAGE_TIMEOUT_SECONDS,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
            "has_azure_endpoint": bool(self.AZURE_ENDPOINT),
            "has_openai_key": bool(self.OPENAI_API_KEY),
            "admin_enabled": bool(self.ADMIN_TOKEN),
        }

# Global configuration instance
config = Config()
