"""FastAPI dependency injection — the workflow and its collaborators."""
from functools import lru_cache

from app import config
from app.db import AsyncSessionLocal
from app.services.assessment_workflow import AssessmentWorkflow
from app.services.audit import LoggingAuditSink, SqlAuditSink
from app.services.rate_source import SqlRateSource
from app.services.sql_store import SqlAssessmentStore


@lru_cache(maxsize=1)
def get_workflow() -> AssessmentWorkflow:
    """
    Process-wide workflow over the configured database.

    Tests replace it with ``app.dependency_overrides[get_workflow]``.
    """
    audit_sink = SqlAuditSink(AsyncSessionLocal) if config.AUDIT_SINK == "sql" else LoggingAuditSink()
    return AssessmentWorkflow(
        store=SqlAssessmentStore(AsyncSessionLocal),
        rate_source=SqlRateSource(AsyncSessionLocal),
        audit_sink=audit_sink,
    )
