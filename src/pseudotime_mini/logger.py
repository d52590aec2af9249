import logging
import logging.config
import os
from pathlib import Path

import structlog
import yaml

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "logging.yaml"


def setup_logging(config_path: Path = DEFAULT_CONFIG_PATH, log_format: str = "console"):
    """
    Sets up structured logging for the entire application.
    """
    config_path = Path(config_path)
    if config_path.exists():
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
        selected_formatter = log_format if log_format in config.get('formatters', {}) else 'console'
        logging.config.dictConfig(config)
    else:
        logging.basicConfig(level=logging.INFO)
        selected_formatter = log_format

    renderer = (
        structlog.processors.JSONRenderer()
        if selected_formatter == 'json'
        else structlog.dev.ConsoleRenderer()
    )

    # Configure structlog to wrap the standard logger
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str):
    """
    Returns a pre-configured logger instance.
    """
    return structlog.get_logger(name)


# --- Initial setup on import ---
# e.g., `LOG_FORMAT=json pseudotime-mini run --config config/params.yaml`
setup_logging(
    config_path=Path(os.environ.get("PSEUDOTIME_LOG_CONFIG", DEFAULT_CONFIG_PATH)),
    log_format=os.environ.get("LOG_FORMAT", "console"),
)
