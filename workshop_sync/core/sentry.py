"""Sentry error tracking integration."""

import sentry_sdk

from workshop_sync.core.config import settings


def init_sentry() -> bool:
    """Initialize Sentry error tracking if DSN is configured.

    Returns:
        True if Sentry was initialized, False when no DSN is set.
    """
    if not settings.sentry_dsn:
        return False

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        traces_sample_rate=0.1,
        send_default_pii=False,  # client names and phone numbers stay local
    )
    return True


def report_background_failure(exc: BaseException) -> None:
    """Send an exception raised by background sync work to Sentry.

    A no-op when Sentry was never initialized.
    """
    sentry_sdk.capture_exception(exc)
