from fastapi import APIRouter, Depends
from starlette.concurrency import run_in_threadpool

from onboarding.api.auth import require_admin
from onboarding.mapping.translation_table import mapping_registry
from onboarding.settings import settings
import onboarding.observability.metrics as metrics

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/metrics")
def get_metrics():
    """CM gateway availability/latency and workflow outcome counters."""
    return metrics.get_gateway_snapshot()


@router.get("/mapping")
def get_mapping_summary():
    """Row counts per entity category and group of the active MZ mapping snapshot."""
    table = mapping_registry.current()
    return {
        "key": settings.MZ_MAPPING_KEY,
        "refreshSec": int(settings.MZ_MAPPING_REFRESH_SEC),
        "rows": len(table),
        "groups": table.summary(),
    }


@router.post("/mapping/reload")
async def reload_mapping():
    table = await run_in_threadpool(mapping_registry.reload)
    return {"reloaded": True, "rows": len(table), "groups": table.summary()}
