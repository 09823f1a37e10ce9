"""
Centralized Logging Setup
Console + file logging for the monitor, and a structured JSON log for records
that need operator attention
"""

import json
import logging
import os
import sys
from typing import Any, Dict, Optional

from utils.datetime_helpers import get_naive_utc_now

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that are chatty at INFO
NOISY_LOGGERS = ("apscheduler.executors.default", "apscheduler.scheduler", "aiohttp.access")


def configure_logging(level: str = "INFO", log_dir: Optional[str] = "logs") -> None:
    """Configure root logging once at process start"""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    formatter = logging.Formatter(LOG_FORMAT)
    if not any(getattr(h, "_refund_monitor", False) for h in root.handlers):
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        console._refund_monitor = True
        root.addHandler(console)

        if log_dir:
            try:
                os.makedirs(log_dir, exist_ok=True)
                file_handler = logging.FileHandler(
                    os.path.join(log_dir, "refund_monitor.log"), mode="a", encoding="utf-8"
                )
                file_handler.setFormatter(formatter)
                file_handler._refund_monitor = True
                root.addHandler(file_handler)
            except OSError as e:
                logging.getLogger(__name__).warning(f"Failed to setup file logging: {e}")

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    centralized_logger.setup_file_handler(log_dir)


class CentralizedLogger:
    """Structured error log for failed refunds and cycle-level fatals"""

    def __init__(self):
        self.logger = logging.getLogger("refund_monitor.errors")
        self.logger.setLevel(logging.ERROR)
        self._file_handler_ready = False

    def setup_file_handler(self, log_dir: Optional[str]):
        """Add logs/refund_errors.log; safe to call more than once"""
        if self._file_handler_ready or not log_dir:
            return
        try:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.FileHandler(
                os.path.join(log_dir, "refund_errors.log"), mode="a", encoding="utf-8"
            )
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            self.logger.addHandler(file_handler)
            self._file_handler_ready = True
        except OSError as e:
            logging.getLogger(__name__).warning(f"Failed to setup error file logging: {e}")

    def log_error(self, error_type: str, message: str, context: Optional[Dict[str, Any]] = None):
        """Log error with structured data"""
        error_data = {
            "timestamp": get_naive_utc_now().isoformat(),
            "error_type": error_type,
            "message": message,
            "context": context or {},
        }
        self.logger.error(json.dumps(error_data, ensure_ascii=False, default=str))

    def log_refund_failed(self, tx_hash: str, output_index: int, details: Optional[Dict] = None):
        """A deposit exhausted its refund attempts and needs manual action"""
        self.log_error(
            "REFUND_FAILED",
            f"Refund for {tx_hash}#{output_index} failed permanently",
            context=details,
        )

    def log_cycle_fatal(self, message: str, details: Optional[Dict] = None):
        self.log_error("CYCLE_FATAL", message, context=details)


# Global instance
centralized_logger = CentralizedLogger()
