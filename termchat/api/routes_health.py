import os
import platform
import time
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Request

from .deps import get_app_config, get_store

router = APIRouter(prefix="/api/v1/health", tags=["health"])

APP_NAME = "termchat"
APP_VERSION = "1.0.0"

ACTIVE_WINDOW = timedelta(hours=24)


def _basic(request: Request) -> dict:
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - request.app.state.started_at, 3),
        "environment": get_app_config(request).server.environment,
    }


@router.get("")
async def health(request: Request):
    return _basic(request)


@router.get("/detailed")
async def health_detailed(request: Request):
    summaries = await get_store(request).list_conversations()
    cutoff = (datetime.now(timezone.utc) - ACTIVE_WINDOW).isoformat()
    load = os.getloadavg() if hasattr(os, "getloadavg") else None
    return {
        **_basic(request),
        "server": {
            "platform": platform.platform(),
            "pythonVersion": platform.python_version(),
            "pid": os.getpid(),
            "cpuCount": os.cpu_count(),
            "loadAverage": list(load) if load else None,
        },
        "application": {
            "name": APP_NAME,
            "version": APP_VERSION,
            "defaultModel": get_app_config(request).chat.default_model,
        },
        "statistics": {
            "totalConversations": len(summaries),
            "activeConversations": sum(1 for s in summaries if s.updated_at > cutoff),
        },
    }
