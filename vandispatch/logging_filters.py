"""Logging setup for the dispatch core.

``RequestIdFilter`` injects the current request id into log records using
the ContextVar set by the request-id middleware. ``configure_logging``
installs a JSON handler on the ``vandispatch`` logger so every record is
emitted as one JSON object carrying that id.
"""

import logging
from logging import Filter, LogRecord

from pythonjsonlogger import jsonlogger

from .middleware import REQUEST_ID_CTX

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"


class RequestIdFilter(Filter):
    """Attach a ``request_id`` attribute to log records.

    Outside of a request the ContextVar default ("-") is used so formatters
    can reliably reference ``%(request_id)s``.
    """

    def filter(self, record: LogRecord) -> bool:
        record.request_id = REQUEST_ID_CTX.get()
        return True


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Install the JSON handler on the ``vandispatch`` logger once.

    Args:
        level: Logging level name for the package logger.

    Returns:
        logging.Logger: The configured package logger.
    """
    logger = logging.getLogger("vandispatch")
    if not logger.handlers:
        h = logging.StreamHandler()
        h.setFormatter(jsonlogger.JsonFormatter(LOG_FORMAT))
        h.addFilter(RequestIdFilter())
        logger.addHandler(h)
    logger.setLevel(level)
    return logger
