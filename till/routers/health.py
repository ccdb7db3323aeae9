from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from till.core.config import Settings, get_settings
from till.core.deps import get_till

router = APIRouter(tags=["health"])


@router.get("/health", operation_id="health_v1")
async def health(till=Depends(get_till), cfg: Settings = Depends(get_settings)):
    return {
        "status": "ok",
        "time": datetime.now(timezone.utc).isoformat(),
        "app": cfg.app_name,
        "env": cfg.app_env,
        "version": cfg.app_version,
        "rate_available": till.rate.available,
        "active_cart": till.carts.active_id,
    }
