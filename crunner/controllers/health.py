from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from crunner import state
from crunner.dependencies import OptionalRedis, OptionalSandbox

router = APIRouter()


@router.get("/health")
async def health(redis_client: OptionalRedis) -> Dict[str, Any]:
    redis_status = "disabled"
    if redis_client:
        try:
            await redis_client.ping()
            redis_status = "healthy"
        except Exception:
            redis_status = "unhealthy"

    return {
        "status": "ok",
        "redis": redis_status,
        "sessions": len(state.active_sessions),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/sandbox")
async def sandbox_health(sandbox: OptionalSandbox) -> JSONResponse:
    available = sandbox is not None and await sandbox.is_available()
    image = sandbox.settings.image if sandbox else None
    return JSONResponse(
        status_code=200 if available else 503,
        content={"status": "available" if available else "unavailable", "image": image},
    )
