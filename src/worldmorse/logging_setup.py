#!/usr/bin/env python3
"""
Centralized logging configuration for WorldMorse.

Every module asks for its logger through get_logger(__name__); the relay
server and the CLI call setup_logging() once at startup. Timestamped lines
carry the local station (the operator's call-sign, or "relay" for the
server) so logs of several stations on one host can be told apart.
"""
import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(station)-8s | %(name)-22s | %(message)s"
LOG_FORMAT_SIMPLE = "%(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

DEFAULT_STATION = "relay"

# Messages starting with one of these are already decorated
_EMOJI_PREFIXES = tuple("⚠️❌💥📡🔑📻🔄")

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("aiohttp", "uvicorn.access", "sse_starlette")


class StationFilter(logging.Filter):
    """Stamps records with the local station unless they carry one already."""

    def __init__(self, station: str = DEFAULT_STATION):
        super().__init__()
        self.station = station

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "station"):
            record.station = self.station
        return True


class EmojiFormatter(logging.Formatter):
    """Adds a level emoji to warnings and errors that carry none yet."""

    LEVEL_EMOJIS = {
        logging.WARNING: "⚠️ ",
        logging.ERROR: "❌ ",
        logging.CRITICAL: "💥 ",
    }

    def formatMessage(self, record: logging.LogRecord) -> str:
        emoji = self.LEVEL_EMOJIS.get(record.levelno)
        if emoji and not record.message.lstrip().startswith(_EMOJI_PREFIXES):
            # Other handlers see the same record
            record = logging.makeLogRecord({**record.__dict__, "message": emoji + record.message})
        return super().formatMessage(record)


def _handler(handler: logging.Handler, level: int, formatter: logging.Formatter,
             station: str) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(StationFilter(station))
    return handler


def setup_logging(
    verbose: bool = False,
    console_output: bool = True,
    log_file: str | None = None,
    simple_format: bool = False,
    station: str = DEFAULT_STATION,
) -> None:
    """
    Configure logging for WorldMorse.

    Args:
        verbose: Enable DEBUG level logging (default: INFO)
        console_output: Output to stdout (default: True)
        log_file: Optional file path; always written with timestamps
        simple_format: Console without timestamps (CLI client commands)
        station: Call-sign stamped on each line
    """
    level = logging.DEBUG if verbose else logging.INFO
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_fmt = LOG_FORMAT_SIMPLE if simple_format else LOG_FORMAT
    if console_output:
        root_logger.addHandler(_handler(
            logging.StreamHandler(sys.stdout),
            level,
            EmojiFormatter(console_fmt, datefmt=DATE_FORMAT),
            station,
        ))
    if log_file:
        root_logger.addHandler(_handler(
            logging.FileHandler(log_file, encoding="utf-8"),
            level,
            logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT),
            station,
        ))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def set_station(station: str | None) -> None:
    """Change the station stamped on log lines, e.g. once the config is loaded."""
    for handler in logging.getLogger().handlers:
        for log_filter in handler.filters:
            if isinstance(log_filter, StationFilter):
                log_filter.station = station or DEFAULT_STATION


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Usage:
        from .logging_setup import get_logger
        logger = get_logger(__name__)
        logger.info("Relay listening on %s:%d", host, port)
    """
    return logging.getLogger(name)
