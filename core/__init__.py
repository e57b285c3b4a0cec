"""
Core utilities and configuration for the place-listing pipeline.

Modules:
    config: Settings and environment validation
    database: Database engine, session factory, dialect-aware inserts
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration
    timing: Time-budget guard for time-boxed invocations
    retry: Timeout wrapper, backoff retry, bounded concurrency
    background: Supervised background tasks

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.logging import setup_logging
    from core.timing import TimeBudgetGuard
"""

