# salonhub/monitoring/__init__.py
"""
Error tracking and monitoring integration.

Provides:
- Sentry error tracking
- Request/user context on events
- Billing failure capture for webhook processing (the webhook endpoint
  always acknowledges, so Sentry is where processing failures surface)
"""

import os
from typing import Optional

import sentry_sdk
from flask import Flask, request
from flask_login import current_user
from sentry_sdk.integrations.flask import FlaskIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration


def init_sentry(app: Flask):
    """
    Initialize Sentry error tracking and performance monitoring.

    Args:
        app: Flask application instance
    """
    sentry_dsn = app.config.get('SENTRY_DSN') or os.getenv('SENTRY_DSN')

    if not sentry_dsn:
        app.logger.info("Sentry DSN not configured - error tracking disabled")
        return

    sentry_sdk.init(
        dsn=sentry_dsn,
        integrations=[
            FlaskIntegration(transaction_style="url"),
            SqlalchemyIntegration(),
            LoggingIntegration(
                level=app.config.get('SENTRY_LOG_LEVEL', None),
                event_level=app.config.get('SENTRY_EVENT_LEVEL', None),
            ),
        ],
        traces_sample_rate=app.config.get('SENTRY_TRACES_SAMPLE_RATE', 0.1),
        environment=app.config.get('SENTRY_ENVIRONMENT', os.getenv('ENVIRONMENT', 'production')),
        release=app.config.get('SENTRY_RELEASE', os.getenv('GIT_COMMIT', 'unknown')),
        send_default_pii=False,
        attach_stacktrace=True,
        max_breadcrumbs=50,
        sample_rate=app.config.get('SENTRY_SAMPLE_RATE', 1.0),
        before_send=before_send_event,
    )

    app.logger.info(
        f"Sentry initialized (environment={app.config.get('SENTRY_ENVIRONMENT', 'production')}, "
        f"traces_sample_rate={app.config.get('SENTRY_TRACES_SAMPLE_RATE', 0.1)})"
    )

    register_context_processors(app)


def before_send_event(event, hint):
    """
    Filter or modify events before sending to Sentry.

    Returns:
        Modified event dict or None to drop the event
    """
    # Health checks are noise
    if event.get('request', {}).get('url', '').endswith('/__health__'):
        return None

    values = event.get('exception', {}).get('values') or [{}]
    if values[0].get('type') == 'NotFound':
        return None

    if 'exception' in event:
        exc_type = values[0].get('type', 'Unknown')
        exc_value = (values[0].get('value') or '')[:100]
        # Billing failures carry their own fingerprint
        if not event.get('fingerprint') or event['fingerprint'] == ['{{ default }}']:
            event['fingerprint'] = [exc_type, exc_value]

    return event


def register_context_processors(app: Flask):
    """Register before_request hook that adds user and request context."""

    @app.before_request
    def add_sentry_context():
        if current_user and current_user.is_authenticated:
            sentry_sdk.set_user({"id": str(current_user.id), "role": current_user.role})

        sentry_sdk.set_tag("request_method", request.method)
        sentry_sdk.set_tag("endpoint", request.endpoint or "unknown")


# Helper functions for manual error reporting

def capture_exception(error: Exception, **extra_context):
    """
    Manually capture an exception to Sentry.

    Args:
        error: Exception to capture
        **extra_context: Additional context dicts to attach
    """
    with sentry_sdk.new_scope() as scope:
        for key, value in extra_context.items():
            scope.set_context(key, value)
        sentry_sdk.capture_exception(error)


def capture_billing_exception(error: Exception, event_id: Optional[str] = None, event_type: Optional[str] = None):
    """
    Report a webhook processing failure.

    Tagged so alerts can be routed on billing.webhook=failed; grouped per
    event type rather than per message.
    """
    with sentry_sdk.new_scope() as scope:
        scope.set_tag("billing.webhook", "failed")
        scope.set_tag("billing.event_type", event_type or "unknown")
        scope.set_context("stripe_event", {"id": event_id, "type": event_type})
        scope.fingerprint = ["billing-webhook", event_type or "unknown", type(error).__name__]
        sentry_sdk.capture_exception(error)


def capture_message(message: str, level: str = "info", **extra_context):
    with sentry_sdk.new_scope() as scope:
        for key, value in extra_context.items():
            scope.set_context(key, value)
        sentry_sdk.capture_message(message, level=level)
