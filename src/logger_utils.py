import logging
import os
import sys
from typing import Optional


class ColoredFormatter(logging.Formatter):
    """Level-coloured formatter; records carrying a ``chain`` attribute get a bold [chain] tag"""

    # ANSI color codes
    COLORS = {
        'DEBUG': '\033[36m',    # cyan
        'INFO': '\033[32m',     # green
        'WARNING': '\033[33m',  # yellow
        'ERROR': '\033[31m',    # red
        'CRITICAL': '\033[35m', # magenta
    }
    RESET = '\033[0m'
    BOLD = '\033[1m'
    DIM = '\033[90m'

    def __init__(self, use_colors=True, stream=None):
        super().__init__()
        self.stream = stream if stream is not None else sys.stderr
        self.use_colors = use_colors and self._supports_color()

    def _supports_color(self):
        return (
            hasattr(self.stream, "isatty") and self.stream.isatty() and
            os.environ.get('TERM') != 'dumb' and
            os.environ.get('NO_COLOR') is None
        )

    def _chain_tag(self, record) -> str:
        chain = getattr(record, 'chain', None)
        if not chain:
            return ''
        if self.use_colors:
            return f"{self.BOLD}[{chain}]{self.RESET} "
        return f"[{chain}] "

    def format(self, record):
        message = f"{self._chain_tag(record)}{record.getMessage()}"
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            message = f"{message}\n{record.exc_text}"

        if not self.use_colors:
            return f"{self.formatTime(record, '%Y-%m-%d %H:%M:%S')} - {record.levelname} - {message}"

        level_color = self.COLORS.get(record.levelname, '')
        level_name = f"{level_color}{self.BOLD}{record.levelname:<8}{self.RESET}"
        timestamp = f"{self.DIM}{self.formatTime(record, '%H:%M:%S')}{self.RESET}"
        return f"{timestamp} {level_name} {message}"


def setup_logging(verbose=False, no_color=False, log_file: Optional[str] = None):
    """Configure the root logger for a monitor run.

    Console output goes to stderr. With ``log_file`` every record is also
    appended to that file in the plain format; a file that cannot be opened
    is reported and skipped.
    """
    logger = logging.getLogger()

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ColoredFormatter(use_colors=not no_color))
    console_handler.setLevel(level)
    logger.addHandler(console_handler)

    if log_file:
        try:
            file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        except OSError as e:
            logger.warning(f"Could not open log file {log_file}: {e}")
        else:
            file_handler.setFormatter(ColoredFormatter(use_colors=False))
            file_handler.setLevel(level)
            logger.addHandler(file_handler)

    # web3 and urllib3 are chatty at debug level
    for noisy in ('web3', 'urllib3'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logger


def log_result(logger: logging.Logger, chain_name: str, message: str) -> None:
    """Log a per-chain result line, tagged with the chain name"""
    logger.info(message, extra={'chain': chain_name})
