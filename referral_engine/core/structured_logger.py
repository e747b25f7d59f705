"""
Structured logging normalization.

Single contract for lifecycle logs of the engine:
- component (state_machine, ledger, sweeper, lock, ...)
- operation
- correlation_id (optional)
- outcome
- duration_ms (optional, omitted if None)
- reason (optional)

Do not log PII or full usage payloads; ids only.
"""
from logging import Logger
from typing import Optional


def log_event(
    logger: Logger,
    *,
    component: str,
    operation: str,
    correlation_id: Optional[str] = None,
    outcome: str,
    duration_ms: Optional[int] = None,
    reason: Optional[str] = None,
    level: str = "info",
    message: Optional[str] = None,
    **fields,
) -> None:
    """
    Emit structured log event.

    Args:
        logger: Logger instance
        component: Component name (e.g., "state_machine", "sweeper")
        operation: Operation name (e.g., "evaluate_usage", "reserve_slot")
        correlation_id: Request/iteration identifier (optional)
        outcome: Outcome (e.g., "success", "failed", "vetoed", "noop")
        duration_ms: Duration in milliseconds (omitted if None)
        reason: Short non-PII explanation (optional)
        level: Log level ("info", "warning", "error", "critical", "debug")
        message: Optional override message (defaults to component/operation/outcome)
        **fields: Extra ids (usage_id, link_id, program_id)
    """
    extra: dict = {
        "component": component,
        "operation": operation,
        "outcome": outcome,
    }
    if correlation_id is not None:
        extra["correlation_id"] = str(correlation_id)
    if duration_ms is not None:
        extra["duration_ms"] = duration_ms
    if reason is not None:
        extra["reason"] = reason
    for key, value in fields.items():
        if value is not None:
            extra[key] = str(value)

    msg = message or f"{component} {operation} outcome={outcome}"
    if reason is not None and message is None:
        msg = f"{msg} reason={reason}"
    log_method = getattr(logger, level.lower(), logger.info)
    log_method(msg, extra=extra)
