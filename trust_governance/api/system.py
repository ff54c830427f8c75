"""
System Router - Health checks and monitoring
"""
from fastapi import APIRouter, Depends
from datetime import datetime
import redis
from sqlalchemy import text
from sqlalchemy.orm import Session
from trust_governance.config import settings
from trust_governance.dependencies import get_db
from trust_governance.services.signal_client import signal_client
from trust_governance.services.recalc_queue_service import recalc_queue_service

router = APIRouter()


@router.get("/health")
async def health_check(db: Session = Depends(get_db)):
    """
    Health check endpoint returning status of all dependencies.
    """
    database_status = "unhealthy"
    trust_queue_size = None
    try:
        db.execute(text("SELECT 1"))
        database_status = "healthy"
        trust_queue_size = recalc_queue_service.queue_size(db)
    except Exception:
        pass

    # Check Redis
    redis_status = "unhealthy"
    worker_queue_depth = 0
    try:
        r = redis.from_url(settings.REDIS_URL)
        r.ping()
        redis_status = "healthy"
        # Celery default queue
        worker_queue_depth = r.llen("celery") or 0
    except Exception:
        pass

    signals_status = "healthy" if await signal_client.health_check() else "unhealthy"

    return {
        "database": database_status,
        "redis": redis_status,
        "signals": signals_status,
        "trust_queue_size": trust_queue_size,
        "worker_queue_depth": worker_queue_depth,
        "timestamp": datetime.utcnow().isoformat() + "Z"
    }
