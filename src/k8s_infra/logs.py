"""Console and per-workflow file logging."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

CONSOLE_FORMAT = "%(asctime)s [%(levelname)8s] %(name)s: %(message)s"
FILE_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
FILE_DATEFMT = "%Y-%m-%d %H:%M:%S"

PACKAGE_LOGGER = "k8s_infra"


def configure_logging(verbose: bool = False, debug: bool = False) -> None:
    """Configure root logging the same way for every command.

    verbose shows debug output of this package only (remote and local
    commands); debug also enables it for libraries such as paramiko.
    """
    logging.basicConfig(level=logging.INFO, format=CONSOLE_FORMAT)
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)
    if verbose or debug:
        logging.getLogger(PACKAGE_LOGGER).setLevel(logging.DEBUG)


def attach_log_file(log_file: Path, title: str) -> logging.FileHandler:
    """Start a fresh workflow log and mirror package logging into it.

    The file is truncated and begins with a `=== <title> Log - <date> ===`
    header line.

    Returns:
        The handler, to be passed to detach_log_file when the workflow ends
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime("%a %b %d %H:%M:%S %Y")
    log_file.write_text(f"=== {title} Log - {stamp} ===\n")

    handler = logging.FileHandler(log_file)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=FILE_DATEFMT))

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.addHandler(handler)
    if package_logger.level == logging.NOTSET or package_logger.level > logging.INFO:
        package_logger.setLevel(logging.INFO)
    return handler


def detach_log_file(handler: Optional[logging.Handler]) -> None:
    if handler is None:
        return
    logging.getLogger(PACKAGE_LOGGER).removeHandler(handler)
    handler.close()
