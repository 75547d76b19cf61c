from dataclasses import asdict
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from onboarding.api.auth import request_context, require_api_key
from onboarding.api.schemas import OnboardingRequest, UpdateRequest
from onboarding.core import orchestrator
from onboarding.gateway import cm_client
from onboarding.store.activity_log import list_activity
from onboarding.store.models import AGENT, CUSTOMER, OnboardingRecord, RequestContext, StepResult
from onboarding.store.record_repo import load_record
from onboarding.utils.lock import record_lock

router = APIRouter(prefix="/api", dependencies=[Depends(require_api_key)])


def _step_response(result: StepResult, ok_status: int = 200) -> JSONResponse:
    # A connectivity failure is folded into RETRY but still reported as transient
    status_code = 503 if result.outcome == orchestrator.OUTCOME_TRANSIENT_FAILURE else ok_status
    return JSONResponse(
        status_code=status_code,
        content={
            "status": "success" if status_code < 400 else "error",
            "outcome": result.outcome,
            "message": result.message,
            "record": asdict(result.record),
            "activity": asdict(result.activity),
        },
    )


def _locked_step(record_id: str, step: Callable, *args) -> StepResult:
    """Load the current snapshot and run one workflow step under the record's advisory lock."""
    with record_lock(record_id):
        record = load_record(record_id)
        return step(record, *args)


async def _submit(kind: str, body: OnboardingRequest, ctx: RequestContext) -> JSONResponse:
    data = body.model_dump()
    record = OnboardingRecord(entityKind=kind, **{k: (v or "") for k, v in data.items()})
    result = await run_in_threadpool(orchestrator.submit_initial, record, ctx)
    return _step_response(result, ok_status=201)


@router.post("/agents")
async def submit_agent(body: OnboardingRequest, ctx: RequestContext = Depends(request_context)):
    return await _submit(AGENT, body, ctx)


@router.post("/customers")
async def submit_customer(body: OnboardingRequest, ctx: RequestContext = Depends(request_context)):
    return await _submit(CUSTOMER, body, ctx)


@router.get("/records/{record_id}")
async def get_record(record_id: str) -> Dict[str, Any]:
    record = await run_in_threadpool(load_record, record_id)
    return asdict(record)


@router.get("/records/{record_id}/activity")
async def get_record_activity(record_id: str):
    entries = await run_in_threadpool(list_activity, record_id)
    return {"recordId": record_id, "activity": [asdict(a) for a in entries]}


@router.post("/records/{record_id}/kyc")
async def release_record_to_kyc(record_id: str, ctx: RequestContext = Depends(request_context)):
    result = await run_in_threadpool(_locked_step, record_id, orchestrator.release_to_kyc, ctx)
    return _step_response(result)


@router.post("/records/{record_id}/approve")
async def approve_record(record_id: str, ctx: RequestContext = Depends(request_context)):
    result = await run_in_threadpool(_locked_step, record_id, orchestrator.approve, ctx)
    return _step_response(result)


@router.post("/records/{record_id}/retry")
async def retry_record(record_id: str, ctx: RequestContext = Depends(request_context)):
    result = await run_in_threadpool(_locked_step, record_id, orchestrator.retry, ctx)
    return _step_response(result)


@router.post("/records/{record_id}/requeue")
async def requeue_record(record_id: str, ctx: RequestContext = Depends(request_context)):
    result = await run_in_threadpool(_locked_step, record_id, orchestrator.requeue, ctx)
    return _step_response(result)


@router.post("/records/{record_id}/sync")
async def sync_record(record_id: str, ctx: RequestContext = Depends(request_context)):
    result = await run_in_threadpool(_locked_step, record_id, orchestrator.sync, ctx)
    return _step_response(result)


@router.patch("/records/{record_id}")
async def update_record(record_id: str, body: UpdateRequest, ctx: RequestContext = Depends(request_context)):
    changes = {k: (v or "") for k, v in body.model_dump(exclude_unset=True).items()}
    result = await run_in_threadpool(_locked_step, record_id, orchestrator.update, changes, ctx)
    return _step_response(result)


# ---------------------------------------------------------------------------
# Read-side CM lookups (not used by the workflow)
# ---------------------------------------------------------------------------
@router.get("/cm/parties")
async def list_cm_parties(ctx: RequestContext = Depends(request_context)):
    parties = await run_in_threadpool(cm_client.list_parties, ctx.transactionId)
    return {"items": parties, "count": len(parties)}


@router.get("/cm/parties/{party_id}")
async def get_cm_party(party_id: str, ctx: RequestContext = Depends(request_context)):
    party: Optional[dict] = await run_in_threadpool(cm_client.get_by_external_id, party_id, ctx.transactionId)
    if party is None:
        return JSONResponse(status_code=404, content={"status": "error", "error": "not_found",
                                                      "message": f"CM party {party_id} not found"})
    return party
