import logging
import logging.handlers
import os
import re
from pathlib import Path

MASK = "***MASKED***"

# Payment gateway credentials and client secrets. Intent, refund and
# customer ids are safe to log and are left intact.
SECRET_PATTERNS = [
    (re.compile(r'(client_secret=)[\'"]?([^\'"\s,}]+)[\'"]?', re.IGNORECASE), rf"\1{MASK}"),
    (re.compile(r'(["\']client_secret["\']:\s*)["\']([^"\']+)["\']', re.IGNORECASE), rf'\1"{MASK}"'),
    (re.compile(r'((?:api|secret|webhook)_key=)[\'"]?([^\'"\s,]+)[\'"]?', re.IGNORECASE), rf"\1{MASK}"),
    (re.compile(r'(Bearer\s+)([A-Za-z0-9_\-\.]+)', re.IGNORECASE), rf"\1{MASK}"),
    (re.compile(r'\b(sk|rk)_(live|test)_[A-Za-z0-9]+'), rf"\1_\2_{MASK}"),
]


def mask_secrets(text: str) -> str:
    for pattern, replacement in SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class SensitiveDataFilter(logging.Filter):
    """
    Masks payment credentials in the message and in any string arguments.
    """

    def filter(self, record):
        if isinstance(record.msg, str):
            record.msg = mask_secrets(record.msg)
        if isinstance(record.args, tuple) and record.args:
            record.args = tuple(mask_secrets(a) if isinstance(a, str) else a for a in record.args)
        return True


def setup_logging(log_file_path: str = None):
    """
    Sends application logs to stdout and a rotating file (10MB x 5).
    The file defaults to LOG_FILE_PATH, the level to LOG_LEVEL.
    """
    log_file = Path(log_file_path or os.environ.get("LOG_FILE_PATH", "/tmp/logs/boost-engine.log"))
    log_file.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    sensitive_filter = SensitiveDataFilter()

    handlers = [
        logging.StreamHandler(),
        logging.handlers.RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5),
    ]
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(sensitive_filter)

    root_logger = logging.getLogger()
    root_logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())
    # Replaces handlers so repeated calls do not duplicate output
    root_logger.handlers = handlers

    for noisy in ("sqlalchemy.engine", "aiosqlite", "httpcore", "httpx", "aiohttp.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return log_file
