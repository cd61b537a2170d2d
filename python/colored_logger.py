import logging
import sys
from typing import Optional, TextIO, Union

# Extra levels used by the indexer and the bot loop
TRACE_LEVEL = 5
PROGRESS_LEVEL = 22
SUCCESS_LEVEL = 25
NOTICE_LEVEL = 35
FAILURE_LEVEL = 45

_CUSTOM_LEVELS = {
    TRACE_LEVEL: "TRACE",
    PROGRESS_LEVEL: "PROGRESS",
    SUCCESS_LEVEL: "SUCCESS",
    NOTICE_LEVEL: "NOTICE",
    FAILURE_LEVEL: "FAILURE",
}

for _level, _name in _CUSTOM_LEVELS.items():
    logging.addLevelName(_level, _name)


class ColoredFormatter(logging.Formatter):
    """Formatter that wraps each line in an ANSI colour picked by level name."""

    COLORS = {
        "TRACE": "\033[90m",
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "PROGRESS": "\033[94m",
        "SUCCESS": "\033[92m",
        "WARNING": "\033[33m",
        "NOTICE": "\033[96m",
        "ERROR": "\033[31m",
        "FAILURE": "\033[91m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: str = None,
        datefmt: str = None,
        stream: Optional[TextIO] = None,
    ):
        super().__init__(fmt, datefmt)
        self.stream = stream or sys.stderr

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)

        # Plain text when piped to a file or journald
        isatty = getattr(self.stream, "isatty", None)
        if not isatty or not isatty():
            return message

        color = self.COLORS.get(record.levelname, "")
        return f"{color}{message}{self.RESET}"


def _resolve_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level

    name = str(level).strip().upper()
    for value, custom_name in _CUSTOM_LEVELS.items():
        if custom_name == name:
            return value

    resolved = logging.getLevelName(name)
    if isinstance(resolved, int):
        return resolved

    raise ValueError(f"Unknown log level: {level}")


def setup_colored_logging(level: Union[int, str] = logging.INFO) -> None:
    """
    Configure the root logger with a single coloured stderr handler.

    Args:
        level: Logging level as an int or a level name ("DEBUG", "TRACE", ...)
    """
    stream = sys.stderr
    formatter = ColoredFormatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=stream,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(_resolve_level(level))

    # Replace handlers so repeated calls don't duplicate output
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(stream)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)


class EnhancedLogger:
    """Thin wrapper adding the custom level methods to a stdlib logger."""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def trace(self, msg, *args, **kwargs):
        """Per-term and per-posting detail, normally off."""
        self._logger.log(TRACE_LEVEL, msg, *args, **kwargs)

    def progress(self, msg, *args, **kwargs):
        """Batch progress for ingestion runs."""
        self._logger.log(PROGRESS_LEVEL, msg, *args, **kwargs)

    def success(self, msg, *args, **kwargs):
        self._logger.log(SUCCESS_LEVEL, msg, *args, **kwargs)

    def notice(self, msg, *args, **kwargs):
        self._logger.log(NOTICE_LEVEL, msg, *args, **kwargs)

    def failure(self, msg, *args, **kwargs):
        """Unrecoverable failures of a whole operation (batch, bot loop)."""
        self._logger.log(FAILURE_LEVEL, msg, *args, **kwargs)

    # debug/info/warning/error/exception/critical come from the wrapped logger
    def __getattr__(self, name):
        return getattr(self._logger, name)


def get_colored_logger(name: str) -> EnhancedLogger:
    """
    Get an enhanced logger with the custom level methods.

    Args:
        name: Logger name (typically __name__)

    Returns:
        EnhancedLogger wrapping ``logging.getLogger(name)``
    """
    return EnhancedLogger(logging.getLogger(name))
