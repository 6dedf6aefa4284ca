import datetime
import time

from fastapi import APIRouter, Depends

from chat_gateway.api.deps import get_app_settings
from chat_gateway.config import Settings

router = APIRouter(prefix="/health", tags=["health"])

_STARTED = time.monotonic()


@router.get("")
async def health(settings: Settings = Depends(get_app_settings)):
    return {
        "status": "ok",
        "module_id": settings.module_id,
        "module_name": settings.module_name,
        "version": settings.version,
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - _STARTED, 3),
    }


@router.get("/ready")
async def ready():
    return {"ready": True}


@router.get("/live")
async def live():
    return {"alive": True}
