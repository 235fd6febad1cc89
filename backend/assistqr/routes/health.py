"""
AssistQR Backend — Health Check Route
=======================================

What:  Health check endpoint for monitoring and load balancer probes.
Why:   A report that cannot be stored is lost to the bystander, so the
       database decides health. Notification providers only degrade it:
       reports are still stored when nobody can be alerted.
How:   SELECT 1 against the database, plus the configured provider lists.

Status levels:
    - healthy:   database up, at least one email and one SMS provider
    - degraded:  database up, a channel has no configured provider
    - unhealthy: database unreachable
"""

import logging
import time

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from assistqr import __version__
from assistqr.database import engine
from assistqr.schemas.report import HealthResponse
from assistqr.services.notifications.fanout import notification_fanout

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
    description=(
        "Returns database connectivity and the configured notification providers. "
        "Used by Docker health checks and load balancers."
    ),
)
async def health_check() -> HealthResponse:
    db_status = "connected"
    overall = "healthy"

    # ── Check Database ────────────────────────────────────────────────────
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable: %s", str(e))

    # ── Notification providers ────────────────────────────────────────────
    email_providers = notification_fanout.email.provider_names
    sms_providers = notification_fanout.sms.provider_names
    if overall == "healthy" and not (email_providers and sms_providers):
        overall = "degraded"

    return HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        email_providers=email_providers,
        sms_providers=sms_providers,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
