import logging
import warnings
from logging import Logger
from pathlib import Path
from typing import Any, Optional

PILOT_LOGGER_NAME = "pilot"
PILOT_OUTPUT_LOGGER_NAME = f"{PILOT_LOGGER_NAME}.output"
PILOT_LOG_FNAME = f"{PILOT_LOGGER_NAME}.log"
WARNINGS_LOG_FNAME = "warnings.log"
# Libraries whose own loggers report problems the pilot runs into during replay.
LIBRARY_LOGGER_NAMES = ["psycopg"]
LOG_FORMAT = "%(levelname)s:%(asctime)s [%(name)s %(filename)s:%(lineno)s]  %(message)s"


def set_up_loggers(log_path: Path, verbose: bool = False) -> None:
    """
    Configure the pilot's loggers for one run. Everything ends up in log_path/pilot.log.

    The console only shows errors unless verbose is set, in which case it also shows the info messages
    of each planning cycle (forecast size, window, chosen action). Output meant for the person running
    the pilot goes through the output logger and is always printed.

    Call this once per run. Calling it again adds a second set of handlers.
    """
    pilot_log_path = log_path / PILOT_LOG_FNAME
    _set_up_logger(
        logging.getLogger(PILOT_LOGGER_NAME),
        LOG_FORMAT,
        pilot_log_path,
        console_level=logging.INFO if verbose else logging.ERROR,
    )

    # No file of its own: records propagate to the pilot logger and land in pilot.log.
    _set_up_logger(
        logging.getLogger(PILOT_OUTPUT_LOGGER_NAME),
        "%(message)s",
        None,
        console_level=logging.DEBUG,
    )

    # psycopg logs connection problems (e.g. a failed reconnect during replay) on its own loggers.
    for name in LIBRARY_LOGGER_NAMES:
        _add_file_handler(logging.getLogger(name), LOG_FORMAT, pilot_log_path, logging.WARNING)


def _set_up_logger(
    logger: Logger,
    format: str,
    output_log_path: Optional[Path],
    console_level: int = logging.ERROR,
    file_level: int = logging.DEBUG,
) -> None:
    # Capture everything and let the handlers filter.
    logger.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter(format))
    logger.addHandler(console_handler)

    if output_log_path is not None:
        _add_file_handler(logger, format, output_log_path, file_level)


def _add_file_handler(logger: Logger, format: str, path: Path, level: int) -> None:
    if logger.level == logging.NOTSET or logger.level > level:
        logger.setLevel(level)
    file_handler = logging.FileHandler(path)
    file_handler.setFormatter(logging.Formatter(format))
    file_handler.setLevel(level)
    logger.addHandler(file_handler)


def set_up_warnings(log_path: Path) -> None:
    """
    psycopg and numpy report some problems through warnings instead of logging (e.g. numpy on a
    degenerate softmax during child sampling). Send them to a file so they don't clutter the console.
    """
    warnings_path = log_path / WARNINGS_LOG_FNAME

    def write_warning_to_file(
        message: Any,
        category: Any,
        filename: Any,
        lineno: Any,
        file: Optional[Any] = None,
        line: Optional[Any] = None,
    ) -> None:
        with open(warnings_path, "a") as f:
            f.write(f"{filename}:{lineno}: {category.__name__}: {message}\n")

    warnings.showwarning = write_warning_to_file
