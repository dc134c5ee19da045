"""refreshvault logging configuration.

Every handler installed by setup_logging() carries SecretRedactionFilter, so a
refresh token value, bearer key or 32-byte hex secret that slips into a log
message is masked before it reaches any output. Token and user ids are not
secret and pass through untouched.
"""

import json
import logging
import re
import sys
from typing import Literal

# Human-readable format for development
DEV_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

REDACTED = "[REDACTED]"

# Group 1 is kept, the rest of the match is masked
_SECRET_PATTERNS = [
    re.compile(r"(Bearer\s+)\S+", re.IGNORECASE),
    re.compile(
        r"((?:refresh_token|plaintext|token_value|api_key|encryption_key)"
        r"['\"]?\s*[:=]\s*['\"]?)[^\s,'\"}]+",
        re.IGNORECASE,
    ),
    # AES keys and SHA-256 lookup hashes
    re.compile(r"(\b)[0-9a-fA-F]{64}\b"),
]


def redact(message: str) -> str:
    """Mask secret-shaped substrings in ``message``."""
    for pattern in _SECRET_PATTERNS:
        message = pattern.sub(lambda m: m.group(1) + REDACTED, message)
    return message


class SecretRedactionFilter(logging.Filter):
    """Rewrites a record's message with secrets masked. Never drops a record."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = redact(message)
        if masked != message:
            record.msg = masked
            record.args = ()
        return True


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter.

    Messages go through json.dumps() so quotes, backslashes and newlines in
    user-controlled fields (user agents, device names) cannot break a line.
    """

    def __init__(self):
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = redact(self.formatException(record.exc_info))
        return json.dumps(log_entry, default=str)


def setup_logging(
    level: str = "INFO",
    format_type: Literal["structured", "dev"] = "dev",
) -> None:
    """
    Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: Log format - 'structured' for JSON, 'dev' for readable
    """
    handler = logging.StreamHandler(sys.stdout)
    if format_type == "structured":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(DEV_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    handler.addFilter(SecretRedactionFilter())

    logging.root.handlers = [handler]
    logging.root.setLevel(getattr(logging, level.upper()))

    for logger_name in ["uvicorn", "uvicorn.error", "uvicorn.access"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    # Keep SQLAlchemy quiet unless debugging; its DEBUG output echoes bound
    # parameters, which include lookup hashes
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if level.upper() == "DEBUG" else logging.WARNING
    )

    logger = logging.getLogger("refreshvault")
    logger.info(f"Logging configured: level={level}, format={format_type}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the refreshvault prefix."""
    return logging.getLogger(f"refreshvault.{name}")
