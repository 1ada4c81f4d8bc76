"""
Configuration Module
====================
Centralized environment variable loading, validation, and access.
Validates all required configuration at startup to fail fast.

NO BUSINESS LOGIC - Pure configuration management only.
"""

import os
import logging
from typing import Optional, Dict, Any, List
from pathlib import Path
from dotenv import load_dotenv


# ============================================================================
# LOGGING
# ============================================================================

logger = logging.getLogger(__name__)


# ============================================================================
# ENVIRONMENT LOADING
# ============================================================================

def load_environment():
    """
    Load environment variables from .env file if present.
    Safe to call multiple times.
    """
    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from .env file")
    else:
        logger.info("No .env file found, using system environment variables")


# Load on module import
load_environment()


# ============================================================================
# CONFIGURATION EXCEPTION
# ============================================================================

class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# ============================================================================
# VALIDATION HELPERS
# ============================================================================

def _get_required_env(key: str, description: str = None) -> str:
    """
    Get required environment variable.

    Args:
        key: Environment variable name
        description: Optional description for error message

    Returns:
        Environment variable value

    Raises:
        ConfigurationError: If variable is missing or empty
    """
    value = os.getenv(key)

    if not value or value.strip() == "":
        desc = f" ({description})" if description else ""
        raise ConfigurationError(
            f"Missing required environment variable: {key}{desc}"
        )

    return value.strip()


def _get_optional_env(key: str, default: str = None) -> Optional[str]:
    """Get optional environment variable, stripped, or the default."""
    value = os.getenv(key, default)
    return value.strip() if value else default


def _get_bool_env(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on", "enabled")


def _get_int_env(key: str, default: int = None) -> Optional[int]:
    """
    Get integer environment variable.

    Raises:
        ConfigurationError: If value is not a valid integer
    """
    value = os.getenv(key)

    if not value:
        return default

    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid integer value for {key}: {value}"
        )


def _get_float_env(key: str, default: float = None) -> Optional[float]:
    """
    Get float environment variable.

    Raises:
        ConfigurationError: If value is not a valid number
    """
    value = os.getenv(key)

    if not value:
        return default

    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid numeric value for {key}: {value}"
        )


# ============================================================================
# SERVER CONFIGURATION
# ============================================================================

class ServerConfig:
    """HTTP server configuration."""

    def __init__(self):
        self.host = _get_optional_env("HOST", "0.0.0.0")
        self.port = _get_int_env("PORT", 3000)

        if not 0 < self.port < 65536:
            raise ConfigurationError(f"PORT out of range: {self.port}")

        # CORS settings (FRONTEND_URL kept for older deployments)
        origins = _get_optional_env(
            "CORS_ORIGINS",
            _get_optional_env("FRONTEND_URL", "http://localhost:5173")
        )
        self.cors_origins = [o.strip() for o in origins.split(",") if o.strip()]

        self.environment = _get_optional_env("ENVIRONMENT", "development").lower()

        # Logging
        self.log_level = _get_optional_env("LOG_LEVEL", "INFO").upper()

        if self.log_level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ConfigurationError(
                f"Invalid LOG_LEVEL: {self.log_level}"
            )


# ============================================================================
# REALTIME CONFIGURATION
# ============================================================================

class RealtimeConfig:
    """WebSocket server, broadcast and liveness configuration."""

    def __init__(self, default_host: str = "0.0.0.0"):
        self.enabled = _get_bool_env("ENABLE_WEBSOCKET_SERVER", True)
        self.host = _get_optional_env("WS_HOST", default_host)
        self.port = _get_int_env("WS_PORT", 3001)
        self.path = _get_optional_env("WS_PATH", "/ws")

        if not self.path.startswith("/"):
            raise ConfigurationError(f"WS_PATH must start with /: {self.path}")

        # Liveness sweep (seconds)
        self.liveness_interval = _get_float_env("LIVENESS_INTERVAL_SECONDS", 30.0)
        self.liveness_timeout = _get_float_env("LIVENESS_TIMEOUT_SECONDS", 60.0)

        if self.liveness_interval <= 0:
            raise ConfigurationError(
                f"LIVENESS_INTERVAL_SECONDS must be positive: {self.liveness_interval}"
            )

        if self.liveness_timeout <= self.liveness_interval:
            raise ConfigurationError(
                "LIVENESS_TIMEOUT_SECONDS must be greater than "
                f"LIVENESS_INTERVAL_SECONDS: {self.liveness_timeout} <= {self.liveness_interval}"
            )

        self.send_timeout = _get_float_env("SEND_TIMEOUT_SECONDS", 5.0)
        self.max_message_bytes = _get_int_env("MAX_MESSAGE_BYTES", 64 * 1024)


# ============================================================================
# STORE CONFIGURATION
# ============================================================================

class StoreConfig:
    """Order store configuration."""

    BACKENDS = ("supabase", "memory")

    def __init__(self):
        self.backend = _get_optional_env("ORDER_STORE", "supabase").lower()

        if self.backend not in self.BACKENDS:
            raise ConfigurationError(
                f"Invalid ORDER_STORE: {self.backend}. "
                f"Must be one of {', '.join(self.BACKENDS)}"
            )

        self.supabase_url: Optional[str] = None
        self.supabase_key: Optional[str] = None

        if self.backend == "supabase":
            self.supabase_url = _get_required_env(
                "SUPABASE_URL",
                "Supabase project URL"
            )
            self.supabase_key = _get_required_env(
                "SUPABASE_KEY",
                "Supabase anon or service role key"
            )

            if not self.supabase_url.startswith("https://"):
                raise ConfigurationError(
                    f"SUPABASE_URL must start with https://: {self.supabase_url}"
                )

        self.timeout = _get_float_env("SUPABASE_TIMEOUT", 10.0)


# ============================================================================
# MAIN CONFIGURATION CLASS
# ============================================================================

class Config:
    """
    Main configuration container.
    Loads and validates all configuration on initialization.
    """

    def __init__(self):
        """
        Initialize and validate all configuration.

        Raises:
            ConfigurationError: If any required configuration is missing or invalid
        """
        try:
            self.server = ServerConfig()
            self.realtime = RealtimeConfig(default_host=self.server.host)
            self.store = StoreConfig()

            logger.info("Configuration loaded and validated successfully")

        except ConfigurationError as e:
            logger.error(f"Configuration error: {str(e)}")
            raise
        except Exception as e:
            logger.error(f"Unexpected error loading configuration: {str(e)}")
            raise ConfigurationError(f"Configuration initialization failed: {str(e)}")

    def get_safe_summary(self) -> Dict[str, Any]:
        """
        Get safe configuration summary (no secrets).

        Returns:
            Dictionary with non-sensitive configuration
        """
        return {
            "environment": self.server.environment,
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "log_level": self.server.log_level,
                "cors_origins": list(self.server.cors_origins),
            },
            "realtime": {
                "enabled": self.realtime.enabled,
                "host": self.realtime.host,
                "port": self.realtime.port,
                "path": self.realtime.path,
                "liveness_interval": self.realtime.liveness_interval,
                "liveness_timeout": self.realtime.liveness_timeout,
            },
            "store": {
                "backend": self.store.backend,
                "timeout": self.store.timeout,
            },
        }

    def validate_runtime_dependencies(self) -> List[str]:
        """Return warnings about settings that are valid but probably unintended."""
        warnings = []

        if self.store.backend == "memory" and self.server.environment == "production":
            warnings.append("ORDER_STORE=memory in production: orders are lost on restart")

        if self.realtime.enabled and self.realtime.port == self.server.port:
            warnings.append(
                f"WS_PORT and PORT are both {self.server.port}; one server will fail to bind"
            )

        return warnings


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """
    Get global configuration instance.
    Initializes on first call.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    global _config

    if _config is None:
        _config = Config()

    return _config


def reload_config() -> Config:
    """
    Reload configuration from environment.
    Useful for testing or dynamic reconfiguration.
    """
    global _config
    load_environment()
    _config = Config()
    logger.info("Configuration reloaded")
    return _config


# ============================================================================
# VALIDATION FUNCTION
# ============================================================================

def validate_configuration():
    """
    Validate configuration and log a summary.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    config = get_config()
    summary = config.get_safe_summary()

    logger.info("Configuration Summary:")
    logger.info(f"  Environment: {summary['environment']}")
    logger.info(f"  HTTP: {summary['server']['host']}:{summary['server']['port']}")
    logger.info(f"  Log Level: {summary['server']['log_level']}")
    logger.info(f"  Order Store: {summary['store']['backend']}")

    realtime = summary["realtime"]
    if realtime["enabled"]:
        logger.info(
            f"  Realtime: ws://{realtime['host']}:{realtime['port']}{realtime['path']} "
            f"(liveness every {realtime['liveness_interval']}s, "
            f"timeout {realtime['liveness_timeout']}s)"
        )
    else:
        logger.info("  Realtime: disabled")

    warnings = config.validate_runtime_dependencies()
    if warnings:
        logger.warning("Configuration warnings:")
        for warning in warnings:
            logger.warning(f"  - {warning}")

    logger.info("Configuration validation complete")
