import logging
import logging.handlers
import re
from pathlib import Path

from vnqueue.core.config import settings

class SensitiveDataFilter(logging.Filter):
    """
    Filter to mask staff credentials and patient contact details in log records.
    """
    def __init__(self, name=""):
        super().__init__(name)
        self.patterns = [
            (r'(password=)[\'"]?([^\'"\s,]+)[\'"]?', r'\1***MASKED***'),
            (r'(token=)[\'"]?([^\'"\s,]+)[\'"]?', r'\1***MASKED***'),
            (r'(phone=)[\'"]?([^\'"\s,]+)[\'"]?', r'\1***MASKED***'),
            (r'("password"\s*:\s*)"[^"]*"', r'\1"***MASKED***"'),
        ]

    def filter(self, record):
        if not isinstance(record.msg, str):
            return True

        msg = record.msg
        for pattern, replacement in self.patterns:
            msg = re.sub(pattern, replacement, msg, flags=re.IGNORECASE)

        record.msg = msg
        return True

def setup_logging(log_file_path: str = None, log_level: str = None):
    """
    Configures logging for the queue client.
    Writes logs to stdout and to a rotating file.
    """
    log_file = Path(log_file_path or settings.LOG_FILE_PATH)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    sensitive_filter = SensitiveDataFilter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(sensitive_filter)

    # Rotates when file size reaches 10MB, keeps 5 backup files
    file_handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=10 * 1024 * 1024, backupCount=5
    )
    file_handler.setFormatter(formatter)
    file_handler.addFilter(sensitive_filter)

    root_logger = logging.getLogger()
    level = (log_level or settings.LOG_LEVEL).upper()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicates if called multiple times
    root_logger.handlers = []

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.client").setLevel(logging.WARNING)

    return log_file
