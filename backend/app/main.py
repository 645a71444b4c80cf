"""
Assessment Costing API
FastAPI service over the costing core: estimate ledger, additionals overlay,
reconciliation and final repair costing, gated by the assessment stage machine.
"""
import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from starlette.responses import JSONResponse

# Load .env before app.config reads the environment
load_dotenv()

from app import config  # noqa: E402
from app.services.errors import (  # noqa: E402
    AssessmentNotFound,
    ConcurrentModification,
    CostingError,
    LineItemNotFound,
    PersistenceError,
    ReconciliationInvariantViolation,
    StageViolation,
    ValidationError,
)
from app.services.logging_config import setup_logging  # noqa: E402
from app.services.middleware import RequestTimingMiddleware  # noqa: E402

setup_logging(level=config.LOG_LEVEL, json_output=config.LOG_FORMAT != "text")
logger = logging.getLogger("costing-api")

# Most specific first
ERROR_STATUS = (
    (LineItemNotFound, 404),
    (AssessmentNotFound, 404),
    (ValidationError, 422),
    (StageViolation, 409),
    (ConcurrentModification, 409),
    (ReconciliationInvariantViolation, 500),
    (PersistenceError, 503),
)


def status_for(exc: CostingError) -> int:
    for exc_type, status in ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        from app.db import init_db
        await init_db()
    except Exception as e:
        logger.warning(f"Table init warning (OK if the schema is managed elsewhere): {e}")
    yield


app = FastAPI(
    title="Assessment Costing API",
    version="1.0.0",
    description="Estimate, additionals and final repair costing for vehicle-damage assessments",
    lifespan=lifespan,
)

app.add_middleware(RequestTimingMiddleware)


@app.exception_handler(CostingError)
async def costing_error_handler(request: Request, exc: CostingError):
    status = status_for(exc)
    if exc.fatal or status >= 500:
        logger.error(
            f"{exc.code}: {exc.message}",
            extra={"assessment_id": request.path_params.get("assessment_id"), "http_status": status},
        )
    return JSONResponse(status_code=status, content=exc.to_dict())


# Routers
from app.api.assessment_routes import router as assessment_router  # noqa: E402

app.include_router(assessment_router)


@app.get("/health")
async def health_check():
    return {
        "status": "active",
        "version": "1.0.0",
        "currency": config.CURRENCY,
        "audit_sink": config.AUDIT_SINK,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
