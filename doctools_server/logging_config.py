"""
Structured logging configuration with request tracking and rotation.
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import structlog
from structlog.types import EventDict, Processor


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application context to all log entries."""
    event_dict["app"] = "doctools-server"
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
    log_max_bytes: int = 10485760,  # 10MB
    log_backup_count: int = 5,
) -> None:
    """
    Configure structured logging with rotation.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ('json' or 'console')
        log_file: Optional log file path
        log_max_bytes: Max log file size before rotation
        log_backup_count: Number of backup files to keep
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_app_context,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]

    if log_format == "json":
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=True)
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=log_max_bytes,
            backupCount=log_backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(numeric_level)

        root_logger = logging.getLogger()
        root_logger.addHandler(file_handler)


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return structlog.get_logger(name)


def log_request_end(
    method: str,
    path: str,
    request_id: str,
    status_code: int,
    duration_ms: float,
    client_ip: str = None,
    **kwargs
) -> None:
    """
    Log completed API request.

    Args:
        method: HTTP method
        path: Request path
        request_id: Unique request ID
        status_code: HTTP status code
        duration_ms: Request duration in milliseconds
        client_ip: Client IP address
        **kwargs: Additional context
    """
    logger = get_logger("api")
    logger.info(
        "request_end",
        method=method,
        path=path,
        request_id=request_id,
        status_code=status_code,
        duration_ms=round(duration_ms, 2),
        client_ip=client_ip,
        **kwargs
    )


def log_rate_limit_exceeded(
    key: str,
    limit_type: str,
    limit_value: int,
    current_count: int,
    retry_after: int,
    **kwargs
) -> None:
    """
    Log rate limit exceeded event.

    Args:
        key: Rate limit key (client IP or scope)
        limit_type: Which limiter rejected (global, action, rapid)
        limit_value: Limit threshold
        current_count: Request count that tripped the limit
        retry_after: Seconds until the key is allowed again
        **kwargs: Additional context
    """
    logger = get_logger("rate_limiter")
    logger.warning(
        "rate_limit_exceeded",
        key=key,
        limit_type=limit_type,
        limit_value=limit_value,
        current_count=current_count,
        retry_after=retry_after,
        **kwargs
    )


def log_request_rejected(
    client_ip: str,
    reason: str,
    status_code: int,
    path: str,
    **kwargs
) -> None:
    """Log a gateway rejection."""
    logger = get_logger("gateway")
    logger.warning(
        "request_rejected",
        client_ip=client_ip,
        reason=reason,
        status_code=status_code,
        path=path,
        **kwargs
    )


def log_bad_bot(ip: str, user_agent: str, suspicious_score: int, **kwargs) -> None:
    """Log a request classified as a known automation tool."""
    logger = get_logger("gateway")
    logger.warning(
        "bad_bot_detected",
        client_ip=ip,
        user_agent=user_agent[:100],
        suspicious_score=suspicious_score,
        **kwargs
    )


def log_suspicious_request(
    entry: Dict[str, Any],
    patterns: Iterable[str],
    **kwargs
) -> None:
    """
    Log a request whose path, query or user agent matched an attack pattern.

    Args:
        entry: Serialized log entry
        patterns: Names of the matched pattern categories
        **kwargs: Additional context
    """
    logger = get_logger("request_log")
    logger.warning(
        "suspicious_request",
        patterns=sorted(patterns),
        client_ip=entry.get("ip"),
        method=entry.get("method"),
        path=entry.get("path"),
        request_id=entry.get("requestId"),
        user_agent=(entry.get("userAgent") or "")[:100],
        **kwargs
    )


def log_persistence_failure(
    resource: str,
    path: str,
    error: Exception,
    will_retry: bool = False,
    **kwargs
) -> None:
    """
    Log a failed write to a durable file.

    Args:
        resource: Logical store name (request_log, analytics, admin)
        path: File path that failed
        error: The underlying exception
        will_retry: Whether the caller is going to retry the write
        **kwargs: Additional context
    """
    logger = get_logger("persistence")
    logger.warning(
        "persistence_write_failed",
        resource=resource,
        path=path,
        error=str(error),
        error_type=type(error).__name__,
        will_retry=will_retry,
        **kwargs
    )


def log_exception(
    exception: Exception,
    context: Dict[str, Any] = None,
    **kwargs
) -> None:
    """
    Log exception with full context.

    Args:
        exception: Exception instance
        context: Additional context dictionary
        **kwargs: Additional context
    """
    logger = get_logger("exception")

    log_data = {
        "exception_type": type(exception).__name__,
        "exception_message": str(exception),
        **(context or {}),
        **kwargs
    }

    logger.exception(
        "exception_occurred",
        **log_data
    )
