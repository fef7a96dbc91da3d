import logging
import logging.handlers
from pathlib import Path
from typing import Dict, Any

def setup_logging(config: Dict[str, Any]) -> None:
    """
    Setup application-wide logging configuration.

    Args:
        config: Dictionary containing logging configuration
            {
                'level': str,  # DEBUG, INFO, WARNING, ERROR, CRITICAL
                'file': str,   # Log file path, empty to log to console only
                'max_size': int,  # Max size in MB before rotation
                'backup_count': int,  # Number of backup files to keep
                'format': str  # Log message format
            }
    """
    # Set default values if not provided
    log_level = getattr(logging, str(config.get('level', 'INFO')).upper(), logging.INFO)
    log_file = config.get('file', 'logs/iot_hub.log')
    max_size = config.get('max_size', 10) * 1024 * 1024  # Convert MB to bytes
    backup_count = config.get('backup_count', 5)
    log_format = config.get('format',
        '%(asctime)s - %(name)s - [%(levelname)s] - %(message)s')

    formatter = logging.Formatter(log_format)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_size,
            backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # aiomqtt and hypercorn are chatty at DEBUG
    for noisy in ('aiomqtt', 'hypercorn.access'):
        logging.getLogger(noisy).setLevel(max(log_level, logging.INFO))

def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    Args:
        name: Usually __name__ of the module

    Returns:
        logging.Logger: Configured logger instance
    """
    return logging.getLogger(name)
