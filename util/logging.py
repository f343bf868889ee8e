"""
Structured logging for memory compression, scheduling and context composition.
"""

import logging
from typing import Any, Dict, List

SENSITIVE_FIELDS = ['content', 'query', 'text', 'summary', 'formatted', 'prompt']


class StructuredLogger:
    """Structured logger for compression, scheduler, heartbeat and context operations."""

    def __init__(self, name: str = "plan_memory"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

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
            message += f", Details: {sanitize_payload(details)}"

        self.logger.log(level, message)

    def log_compression_event(self, action: str, plan_id: str = None, status: str = "success",
                              details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a memory compression stage."""
        log_details = {"plan_id": plan_id}
        if details:
            log_details.update(details)

        self.log_operation(f"memory_compression.{action}", status, log_details, level)

    def log_context_event(self, action: str, status: str = "success", details: Dict[str, Any] = None,
                          level: int = logging.INFO):
        """Log a context builder or composer stage."""
        self.log_operation(action, status, details, level)

    def log_scheduler_event(self, action: str, status: str = "success", details: Dict[str, Any] = None,
                            level: int = logging.INFO):
        """Log a compression scheduler sweep or submission."""
        self.log_operation(f"scheduler.{action}", status, details, level)

    def log_heartbeat_task(self, task_name: str, start_time: float, end_time: float, status: str = "success",
                           details: Dict[str, Any] = None):
        """Log heartbeat task execution."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)
        elif status == "success":
            log_details["message"] = f"Heartbeat task '{task_name}' completed in {duration_ms}ms"
        elif status == "failed":
            log_details["message"] = f"Heartbeat task '{task_name}' failed after {duration_ms}ms"

        level = logging.INFO if status == "success" else logging.ERROR
        self.log_operation(f"heartbeat.{task_name}", status, log_details, level)

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


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for logging: shorten long strings, preview memory text fields."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            elif isinstance(v, str):
                sanitized[k] = f"[{len(v)} chars]"
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        if len(payload) > 20:
            return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload[:20]] + [f"... {len(payload) - 20} more"]
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload


# Global logger instance
logger = StructuredLogger()
