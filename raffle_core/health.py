import json
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

ReadyCheck = Callable[[], Awaitable[bool]]


def create_health_router(
    service_name: str,
    checks: Optional[dict[str, ReadyCheck]] = None,
) -> APIRouter:
    """Liveness, readiness and metrics endpoints.

    Readiness runs every named check (ledger, event stream, scheduler loop)
    and reports which ones failed.
    """
    router = APIRouter(tags=["health"])
    checks = checks or {}

    @router.get("/health/live")
    async def liveness():
        return {"status": "ok", "service": service_name}

    @router.get("/health/ready")
    async def readiness():
        results = {}
        for name, check in checks.items():
            try:
                results[name] = bool(await check())
            except Exception:
                results[name] = False
        body = {"service": service_name, "checks": results}
        if not all(results.values()):
            body["status"] = "not_ready"
            return Response(
                content=json.dumps(body), status_code=503, media_type="application/json"
            )
        body["status"] = "ready"
        return body

    @router.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return router
