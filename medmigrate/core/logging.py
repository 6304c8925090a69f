"""
medmigrate Core Logging Module

LOG-001: Events are structlog key/value pairs: identifiers, counts, codes
         and latencies. Record values and prompt text never reach a sink.
LOG-002: Every event emitted inside a migration run carries run_id/vendor.
LOG-003: Errors are optionally forwarded to Sentry with PII disabled.

Usage:
    from medmigrate.core.logging import setup_logging, get_logger

    setup_logging(level="INFO", json_output=True)

    logger = get_logger(__name__)
    logger.info("phase_completed", run_id="run_01", phase="transform")
"""

from __future__ import annotations

import logging
import os
import sys
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel, Field

run_id_var: ContextVar[str | None] = ContextVar("run_id", default=None)
vendor_var: ContextVar[str | None] = ContextVar("vendor", default=None)

# Event keys that could hold literal record content
SENSITIVE_LOG_KEYS = frozenset(
    {"value", "values", "record", "payload", "prompt", "system_prompt", "user_message"}
)
REDACTED = "[redacted]"

# Third-party loggers that echo request bodies at DEBUG
QUIET_LOGGERS = ("httpx", "httpcore", "anthropic", "openai", "urllib3")


# =============================================================================
# Error Context
# =============================================================================

class ErrorContext(BaseModel):
    """What gets recorded about a failure: type, message, location, run."""

    error_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    error_type: str
    error_message: str
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    module: str = "unknown"
    function: str = "unknown"
    line_number: int | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    run_id: str | None = None
    vendor: str | None = None

    @classmethod
    def from_exception(cls, error: BaseException, **context: Any) -> "ErrorContext":
        """Locate the innermost frame of the traceback; locals are not read."""
        frames = traceback.extract_tb(error.__traceback__)
        location: dict[str, Any] = {}
        if frames:
            innermost = frames[-1]
            location = {
                "module": innermost.filename,
                "function": innermost.name,
                "line_number": innermost.lineno,
            }
        return cls(
            error_type=type(error).__name__,
            error_message=str(error),
            context=context,
            run_id=run_id_var.get(),
            vendor=vendor_var.get(),
            **location,
        )


# =============================================================================
# Sentry
# =============================================================================

def _scrub_sentry_event(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any]:
    """before_send hook: blank any extra that could carry a record value."""
    extra = event.get("extra") or {}
    for key in SENSITIVE_LOG_KEYS.intersection(extra):
        extra[key] = REDACTED
    return event


class SentryIntegration:
    """Optional Sentry forwarding. Every method is a no-op until initialized."""

    _sdk: Any = None

    @classmethod
    def enabled(cls) -> bool:
        return cls._sdk is not None

    @classmethod
    def initialize(cls, dsn: str, environment: str = "development") -> bool:
        """Start the SDK. Returns False when sentry-sdk is missing or init fails."""
        try:
            import sentry_sdk
            from sentry_sdk.integrations.logging import LoggingIntegration
        except ImportError:
            logging.warning("sentry-sdk not installed. Sentry integration disabled.")
            return False

        try:
            sentry_sdk.init(
                dsn=dsn,
                environment=environment,
                release=os.environ.get("MEDMIGRATE_VERSION", "0.1.0"),
                traces_sample_rate=0.0,
                integrations=[
                    LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)
                ],
                send_default_pii=False,
                include_local_variables=False,
                before_send=_scrub_sentry_event,
            )
        except Exception as e:
            logging.warning(f"Failed to initialize Sentry: {e}")
            return False

        cls._sdk = sentry_sdk
        return True

    @classmethod
    def capture_exception(
        cls,
        exception: BaseException,
        extras: dict[str, Any] | None = None,
        tags: dict[str, str] | None = None,
    ) -> str | None:
        """Send an exception with run tags. Returns the Sentry event id."""
        if not cls.enabled():
            return None

        tags = dict(tags or {})
        for name, var in (("run_id", run_id_var), ("vendor", vendor_var)):
            if current := var.get():
                tags[name] = current

        try:
            with cls._sdk.push_scope() as scope:
                for key, item in (extras or {}).items():
                    scope.set_extra(key, item)
                for key, item in tags.items():
                    scope.set_tag(key, item)
                return cls._sdk.capture_exception(exception)
        except Exception:
            return None

    @classmethod
    def add_breadcrumb(cls, message: str, category: str, data: dict[str, Any]) -> None:
        if not cls.enabled():
            return
        try:
            cls._sdk.add_breadcrumb(message=message, category=category, level="info", data=data)
        except Exception:
            logging.debug("sentry breadcrumb dropped")


# =============================================================================
# structlog Processors
# =============================================================================

def add_context_processor(
    logger: structlog.typing.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Stamp run_id/vendor from the current run context."""
    for name, var in (("run_id", run_id_var), ("vendor", vendor_var)):
        current = var.get()
        if current:
            event_dict.setdefault(name, current)
    return event_dict


def drop_sensitive_keys_processor(
    logger: structlog.typing.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Replace keys that could carry literal record content."""
    for key in SENSITIVE_LOG_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def forward_errors_processor(
    logger: structlog.typing.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Forward error-level events that carry exc_info to Sentry."""
    if method_name not in ("error", "critical", "exception"):
        return event_dict

    exc_info = event_dict.get("exc_info")
    if not isinstance(exc_info, tuple) or exc_info[1] is None:
        return event_dict

    event_id = SentryIntegration.capture_exception(
        exc_info[1],
        extras={k: v for k, v in event_dict.items() if k != "exc_info"},
        tags={"module": event_dict.get("logger", "unknown")},
    )
    if event_id:
        event_dict["sentry_event_id"] = event_id
    return event_dict


def _pre_chain() -> list[structlog.typing.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_context_processor,
        drop_sensitive_keys_processor,
        forward_errors_processor,
        structlog.processors.UnicodeDecoder(),
    ]


def _handler(
    handler: logging.Handler,
    renderer: structlog.typing.Processor,
    pre_chain: list[structlog.typing.Processor],
) -> logging.Handler:
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=pre_chain)
    )
    return handler


# =============================================================================
# Setup
# =============================================================================

def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    sentry_dsn: str | None = None,
    sentry_environment: str = "development",
    log_file: str | None = None,
) -> None:
    """
    Route structlog and stdlib logging through one processor chain.

    MEDMIGRATE_LOG_LEVEL, MEDMIGRATE_LOG_FILE, SENTRY_DSN and MEDMIGRATE_ENV
    override the matching arguments when set.
    """
    dsn = sentry_dsn or os.environ.get("SENTRY_DSN")
    if dsn:
        SentryIntegration.initialize(
            dsn, environment=os.environ.get("MEDMIGRATE_ENV", sentry_environment)
        )

    pre_chain = _pre_chain()
    if json_output:
        pre_chain.append(structlog.processors.format_exc_info)
        console: structlog.typing.Processor = structlog.processors.JSONRenderer()
    else:
        console = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers = [_handler(logging.StreamHandler(sys.stdout), console, pre_chain)]
    file_path = log_file or os.environ.get("MEDMIGRATE_LOG_FILE")
    if file_path:
        handlers.append(
            _handler(logging.FileHandler(file_path), structlog.processors.JSONRenderer(), pre_chain)
        )

    root = logging.getLogger()
    root.handlers = handlers
    root.setLevel(os.environ.get("MEDMIGRATE_LOG_LEVEL", level).upper())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_error(
    logger: structlog.stdlib.BoundLogger,
    error: Exception,
    message: str | None = None,
    **context: Any,
) -> ErrorContext:
    """Log an exception at error level and return what was recorded."""
    recorded = ErrorContext.from_exception(error, **context)
    logger.error(
        message or recorded.error_message,
        error_id=recorded.error_id,
        error_type=recorded.error_type,
        exc_info=(type(error), error, error.__traceback__),
        **context,
    )
    return recorded


# =============================================================================
# Run Context
# =============================================================================

def set_run_context(run_id: str, vendor: str | None = None) -> None:
    run_id_var.set(run_id)
    if vendor:
        vendor_var.set(vendor)
    SentryIntegration.add_breadcrumb(
        "Run context set", category="migration", data={"run_id": run_id, "vendor": vendor}
    )


def clear_run_context() -> None:
    run_id_var.set(None)
    vendor_var.set(None)


__all__ = [
    "setup_logging",
    "get_logger",
    "log_error",
    "set_run_context",
    "clear_run_context",
    "add_context_processor",
    "drop_sensitive_keys_processor",
    "SentryIntegration",
    "ErrorContext",
]
