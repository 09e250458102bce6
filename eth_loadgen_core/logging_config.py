import logging
import logging.config
import os
import sys
from typing import Any, Dict, Optional

from . import config as core_config


def build_logging_config(level: Optional[str] = None,
                         log_to_file: bool = core_config.LOG_TO_FILE,
                         log_file_path: str = core_config.LOG_FILE_PATH
                        ) -> Dict[str, Any]:
    """Returns a dictConfig mapping for the eth_loadgen_core logger tree."""
    level = (level or os.getenv("LOG_LEVEL", core_config.LOG_LEVEL)).upper()
    handlers = ["console"]

    config: Dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)-7s %(threadName)s %(name)s:%(lineno)d %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": sys.stdout,
            },
        },
        "loggers": {
            "eth_loadgen_core": {
                "level": level,
                "handlers": handlers,
                "propagate": False,
            },
            # Quiet the libraries
            "web3": {"level": "WARNING", "handlers": handlers, "propagate": False},
            "urllib3": {"level": "WARNING", "handlers": handlers, "propagate": False},
        },
        "root": {
            "level": "WARNING",
            "handlers": handlers,
        },
    }

    if log_to_file:
        config["handlers"]["file"] = {
            "class": "logging.FileHandler",
            "formatter": "default",
            "filename": log_file_path,
            "mode": "a",
        }
        handlers.append("file")

    return config


def setup_logging(level: Optional[str] = None,
                  log_to_file: bool = core_config.LOG_TO_FILE,
                  log_file_path: str = core_config.LOG_FILE_PATH) -> None:
    """ Apply the logging configuration. """
    logging.config.dictConfig(build_logging_config(level, log_to_file, log_file_path))
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
