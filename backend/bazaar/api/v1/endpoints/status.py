"""
Status and health check endpoints.

WHAT: Health monitoring for the database and background maintenance
WHY: Quick diagnostics for ops
HOW: FastAPI endpoint calling the DB ping
"""

from fastapi import APIRouter

from ....core.database import ping_database
from ....core.config import settings
from ....services import maintenance_scheduler

router = APIRouter()


@router.get("/health")
def health_check():
    """
    Overall application health check.

    Returns:
        JSON with overall health status
    """
    db_status = ping_database()

    return {
        "status": "healthy" if db_status["available"] else "degraded",
        "version": settings.APP_VERSION,
        "app_name": settings.APP_NAME,
        "components": {
            "database": db_status,
            "maintenance": {
                "enabled": settings.MAINTENANCE_ENABLED,
                "running": maintenance_scheduler.running,
                "interval_seconds": maintenance_scheduler.interval_seconds,
            },
        }
    }
