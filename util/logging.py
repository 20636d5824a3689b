"""
Structured logging for the context store, the control plane and the
self-improvement tick.
"""

import logging
from typing import Any, Dict, List


class StructuredLogger:
    """Structured logger for store maintenance operations."""

    def __init__(self, name: str = "opencontext"):
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
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_store_operation(self, operation: str, entry_id: str, content: str = None, status: str = "success"):
        """Log a context store operation."""
        details = {"entry_id": entry_id}
        if content is not None:
            details["content"] = content[:50] + "..." if len(content) > 50 else content

        self.log_operation(f"store.{operation}", status, details)

    def log_tick_phase(self, phase: str, start_time: float, end_time: float, details: Dict[str, Any] = None):
        """Log completion of one self-improvement tick phase."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)

        self.log_operation(f"tick.{phase}", "completed", log_details)

    def log_tick_deadline(self, phase: str, remaining_candidates: int = 0):
        """Log that the tick deadline cut a phase short."""
        self.log_operation("tick.deadline", "exceeded", {
            "phase": phase,
            "remaining_candidates": remaining_candidates
        }, level=logging.WARNING)

    def log_action_executed(self, action_type: str, count: int, mode: str = "auto"):
        """Log an improvement action applied to the store."""
        self.log_operation("improvement.executed", "success", {
            "action_type": action_type,
            "count": count,
            "mode": mode
        })

    def log_action_failed(self, action_type: str, error: Exception, mode: str = "auto"):
        """Log a best-effort improvement that failed."""
        self.log_operation("improvement.executed", "failed", {
            "action_type": action_type,
            "error": str(error)[:100],
            "mode": mode
        }, level=logging.WARNING)

    def log_action_skipped(self, action_type: str, reason: str):
        """Log a candidate action that was not routed."""
        self.log_operation("improvement.skipped", reason, {"action_type": action_type})

    def log_action_enqueued(self, action_id: str, action_type: str, risk: str):
        """Log a proposal parked for human approval."""
        self.log_operation("pending_action.enqueued", "pending", {
            "action_id": action_id,
            "action_type": action_type,
            "risk": risk
        })

    def log_approval_decision(self, action_id: str, decision: str, reason: str = ""):
        """Log an approve/dismiss decision on a pending action."""
        log_details = {
            "action_id": action_id,
            "decision": decision,
            "reason": reason[:100] if reason else ""  # Limit reason length
        }
        self.log_operation("pending_action.decision", decision, log_details)

    def log_actions_expired(self, count: int):
        """Log pending actions that passed their expiry."""
        self.log_operation("pending_action.expired", "expired", {"count": count})

    def log_protection_added(self, action_type: str, entry_id: str = None, pattern: str = None, learned: bool = False):
        """Log a new protection rule."""
        log_details = {"action_type": action_type}
        if entry_id:
            log_details["entry_id"] = entry_id
        if pattern:
            log_details["pattern"] = pattern
        status = "learned" if learned else "added"
        self.log_operation("protection.created", status, log_details)

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


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None, sensitive_fields: List[str] = None):
    """General audit event logging with payload sanitisation."""
    if sensitive_fields is None:
        sensitive_fields = ['content', 'data', 'secret', 'password']

    log_details = identifiers.copy() if identifiers else {}

    if payload:
        log_details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    logger.log_operation(event_type.replace(".", "_"), "audit", log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = ['content', 'data', 'secret', 'password']

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
