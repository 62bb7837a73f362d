from typing import Any

from fastapi import APIRouter, Depends

from linkshelf.api.deps import get_runtime
from linkshelf.services.repository import RepositoryUnavailableError
from linkshelf.services.runtime import Runtime

router = APIRouter()


@router.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz")
async def healthz(runtime: Runtime = Depends(get_runtime)) -> dict[str, Any]:
    try:
        link_count: int | None = await runtime.repository.count()
        store = "ok"
    except RepositoryUnavailableError:
        link_count = None
        store = "unavailable"

    return {
        "status": "ok" if store == "ok" else "degraded",
        "store": store,
        "links": link_count,
        "network": "online" if runtime.gate.is_online() else "offline",
        "enrichment_pending": runtime.scheduler.pending_count,
        "enrichment_running": runtime.scheduler.running_count,
    }
