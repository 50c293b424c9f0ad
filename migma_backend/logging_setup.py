# migma_backend/logging_setup.py
# ============================================================================
# STRUCTURED LOGGING
# ============================================================================
# JSON logs via structlog. Components bind `component=<name>`; the API
# middleware binds `correlation_id` through contextvars so every line written
# while handling a request carries it.
# ============================================================================

import logging

import structlog

from migma_backend.errors import ConfigurationError

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_configured = False


def resolve_level(level: str) -> int:
    """Numeric level for a LOG_LEVEL name; ConfigurationError for anything else."""
    name = (level or "").strip().upper()
    if name not in LOG_LEVELS:
        raise ConfigurationError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {level!r}")
    return logging.getLevelNamesMapping()[name]


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog once per process."""
    global _configured
    level_no = resolve_level(level)
    if _configured:
        return

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


def mask_secret(value: str, visible: int = 4) -> str:
    """Show only the first few characters of a credential."""
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return f"{value[:visible]}***"
