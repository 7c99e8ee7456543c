"""
Logfire observability for the BuildStory decision engine.

Provides tracing for:
- Variant selection per storyboard section
- Reward application and timeout sweeps
- Storyboard assembly fan-out

Usage:
    # At process startup (web worker, cron sweep)
    from buildstory.core.observability import setup_logfire
    setup_logfire()

    # In services
    lf = get_logfire()
    with lf.span("choose_variant", scope=scope, slot=slot):
        lf.info("Chose {variant}", variant=variant_id)

Environment Variables:
    LOGFIRE_TOKEN: Logfire write token (required to send traces)
    LOGFIRE_PROJECT_NAME: Project name in Logfire dashboard
    LOGFIRE_ENVIRONMENT: Environment name (development, staging, production)
"""

import os
import logging
from typing import Optional

import logfire

logger = logging.getLogger(__name__)

_logfire_configured = False


def setup_logfire(
    project_name: Optional[str] = None,
    environment: Optional[str] = None,
    service_name: str = "buildstory"
) -> bool:
    """
    Configure Logfire for observability.

    Args:
        project_name: Logfire project name (or LOGFIRE_PROJECT_NAME env var)
        environment: Environment name (or LOGFIRE_ENVIRONMENT env var)
        service_name: Service name for tracing

    Returns:
        True if Logfire was configured, False if skipped (no token)
    """
    global _logfire_configured

    if _logfire_configured:
        logger.debug("Logfire already configured")
        return True

    token = os.environ.get("LOGFIRE_TOKEN")
    if not token:
        logger.info("LOGFIRE_TOKEN not set, skipping Logfire configuration")
        return False

    project = project_name or os.environ.get("LOGFIRE_PROJECT_NAME", "buildstory")
    env = environment or os.environ.get("LOGFIRE_ENVIRONMENT", "development")

    try:
        logfire.configure(
            token=token,
            service_name=service_name,
            environment=env,
            send_to_logfire=True,
        )
        logfire.instrument_pydantic()
    except Exception as e:
        logger.error(f"Failed to configure Logfire: {e}")
        return False

    _logfire_configured = True
    logger.info(f"Logfire configured: project={project}, environment={env}")
    return True


def get_logfire():
    """
    Return the logfire module once configured, otherwise a no-op tracer.

    Usage:
        lf = get_logfire()
        with lf.span("operation"):
            lf.info("message")
    """
    if _logfire_configured:
        return logfire
    return _DisabledTracer()


class _DisabledTracer:
    """Tracer used until setup_logfire() succeeds; spans and logs are dropped."""

    def span(self, *args, **kwargs):
        return _NoOpSpan()

    def __getattr__(self, name):
        return lambda *args, **kwargs: None


class _NoOpSpan:
    """Context manager standing in for a logfire span."""

    def __enter__(self):
        return self

    def __exit__(self, *args):
        return False

    def set_attribute(self, key, value):
        pass
