import logging
import logging.config
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "/tmp/rio-bench.log")

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)-6s %(name)8s:%(lineno)d %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "stream": sys.stderr,
        },
        "file": {
            "class": "logging.FileHandler",
            "formatter": "default",
            "filename": LOG_FILE,
            "mode": "a",
        },
    },
    "loggers": {
        "rio_bench": {
            "level": LOG_LEVEL,
            "handlers": ["console", "file"],
            "propagate": False, # Don't pass 'rio_bench' logs up to the root logger
        },
        # Shut the log levels for libraries up
        "substrateinterface": {
            "level": "WARNING",
            "handlers": ["console", "file"],
            "propagate": False,
        },
        "websockets": {
            "level": "WARNING",
            "handlers": ["console", "file"],
            "propagate": False,
        },
        "uvicorn.access": {
             "level": "WARNING", # Quiets the noisy access logs
             "handlers": ["console", "file"],
             "propagate": False,
        },
    },
    # Default for all other loggers
    "root": {
        "level": "WARNING",
        "handlers": ["console", "file"],
    },
}

def setup_logging(level: str | None = None):
    """ Apply the logging configuration. """
    conf = LOGGING_CONFIG
    if level:
        conf = {**LOGGING_CONFIG, "loggers": {**LOGGING_CONFIG["loggers"]}}
        conf["loggers"]["rio_bench"] = {**conf["loggers"]["rio_bench"], "level": level.upper()}
    logging.config.dictConfig(conf)
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
