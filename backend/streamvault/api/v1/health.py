from fastapi import APIRouter, Depends
from sqlmodel import Session, select
from streamvault.api.deps import get_pool
from streamvault.core.db import get_session
from streamvault.models import StorageAccount
from streamvault.services.queue import conversion_queue, preview_queue, redis_conn
from streamvault.services.storage_pool import StoragePool
from datetime import datetime
from typing import Callable, Dict

router = APIRouter()


def _probe(checks: Dict[str, dict], name: str, check: Callable[[], dict]) -> bool:
    try:
        checks[name] = {"status": "healthy", **check()}
    except Exception as e:
        checks[name] = {"status": "unhealthy", "message": str(e)}
        return False
    return True


@router.get("/")
def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "service": "streamvault-backend",
    }


@router.get("/ready")
def readiness_check(session: Session = Depends(get_session), pool: StoragePool = Depends(get_pool)):
    """database, redis queues and writable pool capacity"""
    checks: Dict[str, dict] = {}

    def database():
        session.exec(select(StorageAccount.id).limit(1))
        return {"message": "connected"}

    def queues():
        redis_conn.ping()
        return {"conversions": len(conversion_queue), "previews": len(preview_queue)}

    def storage_pool():
        report = [a for a in pool.usage_report(session) if a["isActive"] and a["loaded"]]
        free = sum(max(a["limit"] - a["usage"], 0) for a in report)
        return {"accounts": len(report), "freeBytes": free}

    healthy = all([
        _probe(checks, "database", database),
        _probe(checks, "redis", queues),
        _probe(checks, "storage_pool", storage_pool),
    ])
    # no writable accounts is a warning, not a failure
    if healthy and checks["storage_pool"]["accounts"] == 0:
        checks["storage_pool"]["status"] = "warning"

    return {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": datetime.utcnow().isoformat(),
        "checks": checks,
    }
