"""
Configuration Management
Loads config.yaml, applies environment variable overrides and validates the result.
Environment variables take precedence over the file.
"""

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"
DEFAULT_BASE_URL = "https://ui.boondmanager.com/api"

ENVIRONMENTS = ("production", "sandbox")

HTTP_DEFAULTS = {
    "timeout": 30,
    "max_retries": 5,
    "backoff_factor": 1.5,
    "max_backoff": 30,
    # BoondManager tolerates a handful of calls per second per account
    "min_interval": 0.15,
    "page_size": 100,
    "max_pages": 100,
}


# --- Logging ---
def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """Configure console logging, plus a log file when one is requested"""
    log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir and not os.path.exists(log_dir):
                os.makedirs(log_dir)
            handlers.append(logging.FileHandler(log_file, encoding='utf-8'))
        except OSError as e:
            logger.warning(f"File logging disabled ({log_file}): {e}")

    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=log_format,
        handlers=handlers,
        force=True,
    )
    return logging.getLogger("boond_sync")


# --- Configuration ---
@dataclass
class Config:
    """Engine configuration with validation"""
    raw: Dict[str, Any]

    @property
    def boondmanager(self) -> Dict[str, Any]:
        return self.raw.get("boondmanager", {})

    @property
    def base_url(self) -> str:
        return self.boondmanager.get("base_url") or DEFAULT_BASE_URL

    @property
    def http(self) -> Dict[str, Any]:
        merged = dict(HTTP_DEFAULTS)
        merged.update(self.raw.get("http") or {})
        return merged

    @property
    def sync(self) -> Dict[str, Any]:
        return self.raw.get("sync") or {}

    @property
    def workers(self) -> int:
        return int(self.sync.get("workers", 4))

    @property
    def dictionary(self) -> Dict[str, Any]:
        return self.raw.get("dictionary") or {}

    @property
    def dictionary_ttl(self) -> float:
        return float(self.dictionary.get("ttl_seconds", 3600))

    @property
    def log_settings(self) -> Dict[str, Any]:
        return self.raw.get("logging") or {}

    def credentials(self, environment: str) -> Dict[str, str]:
        """Username/password pair for one tenant"""
        return self.boondmanager.get(environment) or {}

    def validate(self) -> List[str]:
        """Validate configuration"""
        errors = []

        for environment in ENVIRONMENTS:
            creds = self.credentials(environment)
            for key in ("username", "password"):
                if not creds.get(key):
                    errors.append(f"Missing boondmanager.{environment}.{key}")

        try:
            if self.workers < 1:
                errors.append("sync.workers must be at least 1")
        except (TypeError, ValueError):
            errors.append("sync.workers must be an integer")

        try:
            if self.dictionary_ttl <= 0:
                errors.append("dictionary.ttl_seconds must be positive")
        except (TypeError, ValueError):
            errors.append("dictionary.ttl_seconds must be a number")

        http = self.http
        for key in ("timeout", "max_retries", "page_size", "max_pages"):
            value = http.get(key)
            if not isinstance(value, (int, float)) or value <= 0:
                errors.append(f"http.{key} must be a positive number")

        return errors


def _apply_env_overrides(raw: Dict[str, Any]) -> None:
    """Environment variables win over file values"""
    boond = raw.setdefault("boondmanager", {})

    base_url = os.environ.get("BOOND_BASE_URL")
    if base_url:
        boond["base_url"] = base_url

    for environment in ENVIRONMENTS:
        prefix = f"BOOND_{environment.upper()}_"
        for key in ("username", "password"):
            value = os.environ.get(prefix + key.upper())
            if value:
                boond.setdefault(environment, {})
                boond[environment][key] = value
                logger.info(f"Loaded {environment} {key} from environment")


def load_config(path: Optional[str] = None) -> Config:
    """Load and validate configuration"""
    config_path = Path(path or os.environ.get("BOOND_CONFIG") or DEFAULT_CONFIG_PATH)

    raw: Any = {}
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ConfigurationError("Config YAML must be a mapping at the top level.")
        logger.info(f"Configuration loaded from {config_path}")
    elif path:
        raise ConfigurationError(f"Config file not found: {config_path}")

    _apply_env_overrides(raw)

    config = Config(raw=raw)
    errors = config.validate()

    if errors:
        error_msg = "Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
        logger.error(error_msg)
        raise ConfigurationError(error_msg)

    return config
