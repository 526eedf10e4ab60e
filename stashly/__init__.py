import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '0.1.0'


def configure_logging(config):
    """Configure application logging"""

    log_level = logging.getLevelName(config.logger.level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    handlers = []

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers.append(console_handler)

    # File handler (optional)
    if config.logger.file:
        log_dir = os.path.dirname(os.path.abspath(config.logger.file))
        os.makedirs(log_dir, exist_ok=True)

        file_handler = RotatingFileHandler(
            config.logger.file,
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # Quieten chatty libraries
    for noisy in ('botocore', 'boto3', 'urllib3', 's3transfer', 'gnupg'):
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))

    logging.getLogger('stashly').info(f"Logging configured (level: {logging.getLevelName(log_level)})")
