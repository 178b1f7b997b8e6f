import os
import tempfile
from typing import Optional

from stowaway.backup.object_store import ObjectStore
from stowaway.backup.retry import RetryPolicy
from stowaway.backup.uploader import ChunkedUploader


class ConfigError(Exception):
    """Raised when a configuration value is invalid."""
    pass


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.environ.get(name)
    if value in (None, ''):
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value in (None, ''):
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {value!r}")


class Config:
    """Base configuration"""

    DEBUG = False

    # Working directories
    TEMP_DIR = os.environ.get('STOWAWAY_TEMP_DIR') or os.path.join(tempfile.gettempdir(), 'stowaway')

    # Logging
    LOG_DIR = os.environ.get('STOWAWAY_LOG_DIR') or '/var/log/stowaway'
    LOG_LEVEL = os.environ.get('STOWAWAY_LOG_LEVEL') or 'INFO'

    # Retries for storage operations
    MAX_RETRIES = _env_int('STOWAWAY_MAX_RETRIES', 10)
    RETRY_WAITSEC = _env_float('STOWAWAY_RETRY_WAITSEC', 30.0)

    # Uploads (0 disables segmentation)
    SEGMENT_SIZE_MB = _env_int('STOWAWAY_SEGMENT_SIZE_MB', 0)
    DAYS_TO_KEEP = _env_int('STOWAWAY_DAYS_TO_KEEP', None)


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    LOG_LEVEL = 'DEBUG'

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    RETRY_WAITSEC = 1.0


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration"""
    DEBUG = True
    LOG_DIR = None
    MAX_RETRIES = 1
    RETRY_WAITSEC = 0.0
    SEGMENT_SIZE_MB = 0
    DAYS_TO_KEEP = None


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


def get_config(config_name: Optional[str] = None):
    """
    Look up a configuration class.

    Args:
        config_name: Key in `config` (default: $STOWAWAY_ENV or 'production')

    Raises:
        ConfigError: If the name is unknown
    """
    if config_name is None:
        config_name = os.environ.get('STOWAWAY_ENV', 'production')

    try:
        return config[config_name]
    except KeyError:
        raise ConfigError(
            f"Unknown configuration: {config_name}. Valid options: {sorted(config.keys())}"
        )


def retry_policy_from_config(cfg) -> RetryPolicy:
    """Build the retry policy for storage operations."""
    try:
        return RetryPolicy(max_retries=cfg.MAX_RETRIES, wait_seconds=cfg.RETRY_WAITSEC)
    except ValueError as e:
        raise ConfigError(str(e)) from e


def uploader_from_config(store: ObjectStore, cfg, segments_prefix: Optional[str] = None) -> ChunkedUploader:
    """
    Build an uploader for store with the configured segment size, retries and expiry.

    Raises:
        ConfigError: If the configured values are invalid for the store
    """
    segment_size = (cfg.SEGMENT_SIZE_MB or 0) * 1024 * 1024
    try:
        return ChunkedUploader(
            store,
            segments_prefix=segments_prefix,
            segment_size=segment_size,
            retry_policy=retry_policy_from_config(cfg),
            days_to_keep=cfg.DAYS_TO_KEEP
        )
    except ValueError as e:
        raise ConfigError(str(e)) from e
