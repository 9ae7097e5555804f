from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from order_engine.routes.deps import get_service
from order_engine.service import Service

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/audit/replay")
async def audit_replay(
    limit: int = Query(default=100, ge=1, le=1000),
    service: Service = Depends(get_service),
) -> JSONResponse:
    """
    Replay audit entries from the DLQ into the audit log.
    Stops early if the audit store is still failing.
    Returns number of entries replayed and how many remain.
    """
    replayed = await service.audit.replay_dead_letters(limit=limit)
    remaining = await service.stores.dead_letters.length()
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "replayed": replayed, "remaining": remaining},
    )
