# chargequeue/routers/health.py
"""
System health check endpoint.
Returns status of backend + DB + messaging API reachability + live counts.
"""

import requests
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from sqlalchemy import text
from chargequeue.database import get_db
from chargequeue.config import settings
from datetime import datetime

router = APIRouter()


@router.get("/health", summary="System health check")
def health_check(request: Request, db: Session = Depends(get_db)):
    """
    Returns:
    - Backend status
    - Database connectivity
    - Messaging API reachability (only when notifications are enabled)
    - Live queue entries, sessions and pending timers
    """
    result = {
        "status": "ok",
        "timestamp": datetime.utcnow().isoformat(),
        "backend": "ok",
        "database": "unknown",
        "messaging": "disabled",
        "live": {},
    }

    try:
        db.execute(text("SELECT 1"))
        result["database"] = "ok"
    except Exception as e:
        result["database"] = f"error: {str(e)}"
        result["status"] = "degraded"

    if settings.NOTIFICATIONS_ENABLED:
        try:
            resp = requests.get(settings.WHATSAPP_API_URL, timeout=3)
            result["messaging"] = "ok" if resp.status_code < 500 else f"http_{resp.status_code}"
        except requests.exceptions.ConnectionError:
            result["messaging"] = "unreachable"
            result["status"] = "degraded"
        except Exception as e:
            result["messaging"] = f"error: {str(e)}"

    core = getattr(request.app.state, "core", None)
    if core is not None:
        result["live"] = {
            "queue_entries": len(core.store.all_entries()),
            "sessions": len(core.store.sessions()),
            "timers": core.clock.pending(),
            "notifications_in_flight": core.notifier.pending,
        }

    return result
