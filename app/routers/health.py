"""
Health & Metrics Router

Endpoints:
- /healthz - Liveness: the process answers
- /readyz - Readiness: database and rate-limit store answer in time
- /metrics/rate-limits - Limiter and suspicious-activity counters
"""

import asyncio
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from app.core.database import ping_db

router = APIRouter()

PROBE_TIMEOUT_SECONDS = 5.0

_started_at = time.time()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _probe(name: str, check, details: dict) -> bool:
    """Run one readiness check, recording latency or the failure."""
    started = time.perf_counter()
    try:
        result = await asyncio.wait_for(check(), timeout=PROBE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        details[f"{name}_error"] = f"timeout after {PROBE_TIMEOUT_SECONDS:g}s"
        return False
    except Exception as e:
        details[f"{name}_error"] = str(e)
        return False
    details[f"{name}_latency_ms"] = round((time.perf_counter() - started) * 1000, 2)
    if isinstance(result, dict) and "backend" in result:
        details[f"{name}_backend"] = result["backend"]
    return True


@router.get("/healthz")
async def health_check():
    return {"status": "ok", "timestamp": _now_iso()}


@router.get("/readyz")
async def readiness_check(request: Request):
    """503 when any dependency is unreachable, so load balancers drain us."""
    details: dict = {}
    checks = {
        "database": await _probe("database", ping_db, details),
        "rate_limit_store": await _probe("rate_limit_store", request.app.state.rate_limiter.get_stats, details),
    }
    ready = all(checks.values())
    return JSONResponse(
        status_code=200 if ready else 503,
        content={
            "status": "ready" if ready else "degraded",
            "checks": checks,
            "details": details,
            "uptime_seconds": round(time.time() - _started_at, 2),
            "timestamp": _now_iso(),
        },
    )


@router.get("/metrics/rate-limits")
async def rate_limit_metrics(request: Request):
    state = request.app.state
    tracker = state.suspicious_activity
    return {
        "rate_limits": await state.rate_limiter.get_stats(),
        "suspicious_activity": {
            "tracked_identifiers": len(tracker),
            "threshold": tracker.threshold,
            "window_seconds": tracker.window_seconds,
        },
        "app_version": state.settings.app_version,
        "timestamp": _now_iso(),
    }
