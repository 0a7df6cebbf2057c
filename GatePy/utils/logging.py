import logging
import sys


class LessThanFilter(logging.Filter):
    def __init__(self, exclusive_maximum, name=""):
        super().__init__(name)
        self.max_level = exclusive_maximum

    def filter(self, record):
        # non-zero return means we log this message
        return 1 if record.levelno < self.max_level else 0


LOG_FORMAT = "%(asctime)s - %(levelname)s - %(module)s %(lineno)d: %(message)s"
DATE_FORMAT = "[%d/%m/%Y %H:%M]"


def create_logger(level: str = "INFO", name: str = None) -> logging.Logger:
    """
    Attach stdout/stderr handlers to the named logger

    Records below WARNING go to stdout, everything else to stderr. Calling this
    twice for the same logger does not duplicate handlers.

    :param level: str
    :param name: str

    :return: logging.Logger
    """
    fmt = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.NOTSET)

    _logger = get_logger(name)
    existing = {h.get_name() for h in _logger.handlers}

    if "stdout" not in existing:
        stdout_handler = logging.StreamHandler(stream=sys.stdout)
        stdout_handler.setFormatter(fmt)
        stdout_handler.set_name("stdout")
        stdout_handler.setLevel(logging.DEBUG)
        stdout_handler.addFilter(LessThanFilter(logging.WARNING))
        _logger.addHandler(stdout_handler)

    if "stderr" not in existing:
        stderr_handler = logging.StreamHandler(stream=sys.stderr)
        stderr_handler.setFormatter(fmt)
        stderr_handler.set_name("stderr")
        stderr_handler.setLevel(logging.WARNING)
        _logger.addHandler(stderr_handler)

    _logger.setLevel(level.upper())
    _logger.log(logging.INFO, f"Setting loglevel to {level} for Logger {name}.")
    return _logger


def get_logger(name: str = None) -> logging.Logger:
    return logging.getLogger(name)
