import os
import logging
from logging.handlers import RotatingFileHandler

__version__ = '0.1.0'


def configure_logging(cfg=None):
    """Configure application logging"""

    if cfg is None:
        from stowaway.config import get_config
        cfg = get_config()

    # Set log level based on environment
    log_level = logging.DEBUG if getattr(cfg, 'DEBUG', False) else logging.getLevelName(
        str(getattr(cfg, 'LOG_LEVEL', 'INFO')).upper()
    )
    if not isinstance(log_level, int):
        log_level = logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler
    log_dir = getattr(cfg, 'LOG_DIR', None)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'stowaway.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure package logger
    logger = logging.getLogger('stowaway')
    logger.setLevel(log_level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    for handler in handlers:
        logger.addHandler(handler)

    logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")
    return logger
