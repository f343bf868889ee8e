"""
Structured logging and payload sanitization.
"""

import logging

from util.logging import StructuredLogger, logger, sanitize_payload


class TestSanitizePayload:

    def test_memory_text_is_never_logged(self):
        payload = {"plan_id": "plan-1", "content": "Passport number 123", "query": "where is my passport"}

        sanitized = sanitize_payload(payload)

        assert sanitized["plan_id"] == "plan-1"
        assert sanitized["content"] == "[19 chars]"
        assert sanitized["query"] == "[20 chars]"

    def test_reveal_sensitive(self):
        assert sanitize_payload({"content": "hello"}, reveal_sensitive=True) == {"content": "hello"}

    def test_non_string_sensitive_value_is_redacted(self):
        assert sanitize_payload({"summary": {"text": "x"}}) == {"summary": "[REDACTED]"}

    def test_long_strings_are_shortened(self):
        assert sanitize_payload("a" * 150) == "a" * 100 + "..."

    def test_long_lists_are_capped(self):
        sanitized = sanitize_payload(list(range(30)))
        assert len(sanitized) == 21
        assert sanitized[-1] == "... 10 more"

    def test_nested_structures(self):
        payload = {"details": {"prompt": "secret", "count": 3}}
        assert sanitize_payload(payload) == {"details": {"prompt": "[6 chars]", "count": 3}}


class TestStructuredLogger:

    def test_compression_event_is_namespaced(self, caplog):
        with caplog.at_level(logging.INFO, logger="plan_memory"):
            logger.log_compression_event("complete", "plan-1", details={"after_count": 22})

        assert "Operation: memory_compression.complete, Status: success" in caplog.text
        assert "'plan_id': 'plan-1'" in caplog.text
        assert "'after_count': 22" in caplog.text

    def test_context_event_hides_content(self, caplog):
        with caplog.at_level(logging.INFO, logger="plan_memory"):
            logger.log_context_event("embedding_context.build.start", details={"query": "my home address"})

        assert "my home address" not in caplog.text
        assert "[15 chars]" in caplog.text

    def test_scheduler_event_level(self, caplog):
        with caplog.at_level(logging.INFO, logger="plan_memory"):
            logger.log_scheduler_event("light_sweep.plan_failed", status="failed", level=logging.ERROR)

        [record] = [r for r in caplog.records if "scheduler.light_sweep.plan_failed" in r.getMessage()]
        assert record.levelno == logging.ERROR

    def test_heartbeat_task_failure_is_error(self, caplog):
        with caplog.at_level(logging.INFO, logger="plan_memory"):
            logger.log_heartbeat_task("memory_compression_light_sweep", 10.0, 10.25, status="failed")

        [record] = [r for r in caplog.records if "heartbeat.memory_compression_light_sweep" in r.getMessage()]
        assert record.levelno == logging.ERROR
        assert "250.0" in record.getMessage()

    def test_handler_installed_once(self):
        first = StructuredLogger("plan_memory.test_once")
        second = StructuredLogger("plan_memory.test_once")
        assert first.logger is second.logger
        assert len(second.logger.handlers) == 1
