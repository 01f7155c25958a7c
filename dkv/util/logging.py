"""
Structured logging for store, watch, auth and dead-man operations.
"""

import logging
import os
from typing import Any, Dict, Optional


class StructuredLogger:
    """Structured logger for dkv operations."""

    def __init__(self, name: str = "dkv"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_kv_operation(self, operation: str, path: str, versionstamp: Optional[str] = None, status: str = "success", details: Dict[str, Any] = None):
        """Log a KV-specific operation."""
        log_details = {"path": path}
        if versionstamp is not None:
            log_details["versionstamp"] = versionstamp
        if details:
            log_details.update(details)

        self.log_operation(f"kv.{operation}", status, log_details)

    def log_watch_event(self, action: str, paths, fmt: str, transport: str, details: Dict[str, Any] = None):
        """Log watch subscription lifecycle."""
        log_details = {"paths": list(paths), "format": fmt, "transport": transport}
        if details:
            log_details.update(details)

        self.log_operation(f"watch.{action}", "ok", log_details)

    def log_auth_decision(self, capability: str, path: str, granted: bool, principal: str = "unknown"):
        """Log a capability check. Denials are warnings."""
        log_details = {"capability": capability, "path": path, "principal": principal}
        if granted:
            self.log_operation("auth.check", "granted", log_details, level=logging.DEBUG)
        else:
            self.log_operation("auth.check", "denied", log_details, level=logging.WARNING)

    def log_deadman_alert(self, name: str, last_ping: float, silence_sec: float, status: str = "sent"):
        """Log a dead-man alert attempt."""
        log_details = {
            "entity": name,
            "last_ping": last_ping,
            "silence_sec": round(silence_sec, 1),
        }
        level = logging.WARNING if status == "sent" else logging.ERROR
        self.log_operation("deadman.alert", status, log_details, level=level)

    def log_scheduler_task(self, task_name: str, start_time: float, end_time: float, status: str = "success", details: Dict[str, Any] = None):
        """Log scheduled task execution."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)
        elif status == "success":
            log_details["message"] = f"Task '{task_name}' completed in {duration_ms}ms"
        elif status == "failed":
            log_details["message"] = f"Task '{task_name}' failed after {duration_ms}ms"

        self.log_operation(f"scheduler.{task_name}", status, log_details)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()
