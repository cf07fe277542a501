import logging
import logging.config
import os

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LOG_FILE = "scanflow.log"

# Client libraries log every request at INFO; the pipeline logs its own stage summaries.
QUIET_LOGGERS = ("httpx", "httpcore", "openai")


class LevelColourFormatter(logging.Formatter):
    """Console formatter that paints the level name."""

    COLOURS = {
        logging.DEBUG: "\x1b[90m",
        logging.INFO: "\x1b[32m",
        logging.WARNING: "\x1b[33m",
        logging.ERROR: "\x1b[31m",
        logging.CRITICAL: "\x1b[31;1m",
    }
    RESET = "\x1b[0m"

    def format(self, record: logging.LogRecord) -> str:
        colour = self.COLOURS.get(record.levelno)
        if colour is None:
            return super().format(record)
        plain = record.levelname
        record.levelname = f"{colour}{plain}{self.RESET}"
        try:
            return super().format(record)
        finally:
            # Handlers share the record; the file handler needs the plain name.
            record.levelname = plain


def get_logging_config() -> dict:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    handlers: dict[str, dict] = {
        "console": {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
            "formatter": "console",
        },
    }

    log_dir = os.getenv("LOG_DIR")
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers["file"] = {
            "class": "logging.FileHandler",
            "filename": os.path.join(log_dir, os.getenv("LOG_FILE") or DEFAULT_LOG_FILE),
            "formatter": "file",
            "encoding": "utf-8",
        }
    names = list(handlers)

    loggers: dict[str, dict] = {
        "": {"handlers": names, "level": level},
        "scanflow": {"handlers": names, "level": level, "propagate": False},
    }
    for name in QUIET_LOGGERS:
        loggers[name] = {"handlers": names, "level": "WARNING", "propagate": False}
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        loggers[name] = {"handlers": names, "level": "INFO", "propagate": False}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {"()": "scanflow.logger.LevelColourFormatter", "format": LOG_FORMAT, "datefmt": DATE_FORMAT},
            "file": {"format": LOG_FORMAT, "datefmt": DATE_FORMAT},
        },
        "handlers": handlers,
        "loggers": loggers,
    }


def setup_logging() -> None:
    logging.config.dictConfig(get_logging_config())


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
