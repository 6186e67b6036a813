"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in programhub/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from programhub.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# Wizard submissions fan out into many backend writes
PROVISIONING_LIMIT = "10/minute"
WRITE_LIMIT = "60/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Provisioning:     10/minute  (one request → 1 + N + N·M writes)
        - CRUD endpoints:   60/minute
        - Health check:     exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("provisioning")
    if bp:
        limiter.limit(PROVISIONING_LIMIT)(bp)

    bp = app.blueprints.get("program")
    if bp:
        limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured: provisioning: %s, crud: %s",
        PROVISIONING_LIMIT, WRITE_LIMIT,
    )
