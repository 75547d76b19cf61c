from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from onboarding.api.routes import router
from onboarding.api.admin_routes import router as admin_router
from onboarding.core import errors
from onboarding.observability.logging import log
from onboarding.settings import settings

app = FastAPI(title="CM Onboarding Workflow API")

origins = [x.strip() for x in settings.CORS_ORIGINS.split(",") if x.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)
app.include_router(admin_router)


@app.get("/health")
def health():
    return {"status": "ok"}


def _error(status_code: int, error: str, exc: Exception, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"status": "error", "error": error, "message": str(exc), **extra},
    )


# ---------------------------------------------------------------------------
# Engine errors -> HTTP. Only aborting errors reach here; CM business and
# connectivity failures on the workflow path come back as step results.
# ---------------------------------------------------------------------------
@app.exception_handler(errors.ValidationError)
async def validation_error_handler(request: Request, exc: errors.ValidationError):
    return _error(422, "validation_error", exc, fields=exc.fields)


@app.exception_handler(errors.StageConflict)
async def stage_conflict_handler(request: Request, exc: errors.StageConflict):
    return _error(409, "stage_conflict", exc, stage=exc.stage)


@app.exception_handler(errors.RecordNotFound)
async def record_not_found_handler(request: Request, exc: errors.RecordNotFound):
    return _error(404, "not_found", exc)


@app.exception_handler(errors.TranslationMiss)
async def translation_miss_handler(request: Request, exc: errors.TranslationMiss):
    log(event="mz_mapping_miss", path=request.url.path, entityCategory=exc.entity_category,
        groupKey=exc.group_key, sourceValue=exc.source_value)
    return _error(500, "configuration_error", exc)


@app.exception_handler(errors.ExternalConnectivityError)
async def connectivity_error_handler(request: Request, exc: errors.ExternalConnectivityError):
    # Read-side CM lookups only
    return _error(503, "cm_unavailable", exc, kind=exc.kind)
