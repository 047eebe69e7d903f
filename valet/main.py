import sys
import logging
import logging.handlers
from typing import List, Optional

from valet.core import config
from valet.cli import main as cli_main


# --- Custom Log Formatter for Colors ---
class ColorLogFormatter(logging.Formatter):
    """Adds ANSI color codes to log messages based on level for console output."""

    GREY = "\x1b[38;20m"
    YELLOW = "\x1b[33;20m"   # Warning
    RED = "\x1b[31;20m"      # Error
    BOLD_RED = "\x1b[31;1m"  # Critical
    RESET = "\x1b[0m"

    BASE_FORMAT = '%(asctime)s [%(levelname)-7s] %(name)s: %(message)s'
    DATE_FORMAT = '%H:%M:%S'

    FORMATS = {
        logging.DEBUG: GREY + BASE_FORMAT + RESET,
        logging.INFO: BASE_FORMAT,
        logging.WARNING: YELLOW + BASE_FORMAT + RESET,
        logging.ERROR: RED + BASE_FORMAT + RESET,
        logging.CRITICAL: BOLD_RED + BASE_FORMAT + RESET,
    }

    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno, self.BASE_FORMAT)
        return logging.Formatter(log_fmt, datefmt=self.DATE_FORMAT).format(record)
# --- End Custom Log Formatter ---


def setup_logging(verbose: bool = False) -> None:
    """Console handler (INFO, DEBUG with -v) plus a rotating file under LOG_DIR."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(ColorLogFormatter())
    root_logger.addHandler(console_handler)

    if not config.ensure_dir(config.LOG_DIR):
        logging.warning(f"MAIN: LOG_DIR '{config.LOG_DIR}' could not be ensured. Skipping file logging.")
        return
    log_file_path = config.LOG_DIR / 'valet.log'
    try:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file_path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding='utf-8'
        )
    except OSError as e:
        logging.warning(f"MAIN: Failed to set up file logging at {log_file_path}: {e}")
        return
    file_handler.setFormatter(logging.Formatter(ColorLogFormatter.BASE_FORMAT,
                                                datefmt=ColorLogFormatter.DATE_FORMAT))
    file_handler.setLevel(logging.DEBUG)
    root_logger.addHandler(file_handler)


def run(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    setup_logging(verbose=any(arg in ('-v', '--verbose') for arg in argv))
    return cli_main(argv)


if __name__ == "__main__":
    sys.exit(run())
