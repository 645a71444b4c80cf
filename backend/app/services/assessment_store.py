"""
Persistence port for the costing core, plus the in-memory implementation.

``cas_stage`` is the one atomic primitive every stage transition goes through:
the stage moves from ``expected_stage`` to ``new_stage`` together with any
extra assessment fields and any documents (ledger / overlay / FRC snapshot)
passed alongside, or nothing is written at all.

Document saves outside a transition take ``expected_stage`` as well, so an
edit raced by a transition fails with ConcurrentModification instead of
overwriting the transitioned state. Every document also carries the version it
was read at; a save whose version no longer matches the stored one (another
edit at the same stage got there first) fails the same way. A successful save
bumps the version on the stored row and on the passed document.
"""
from __future__ import annotations

import asyncio
import copy
import logging
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Tuple

from pydantic import BaseModel

from app.models.assessment import Assessment, AssessmentStage, utcnow
from app.services.additionals_overlay import AdditionalsOverlay
from app.services.errors import (
    AssessmentNotFound,
    CostingError,
    ConcurrentModification,
    PersistenceError,
    ValidationError,
)
from app.services.estimate_ledger import EstimateLedger
from app.services.frc_engine import FRCSnapshot

logger = logging.getLogger("costing-store")

# Assessment fields a transition may set alongside the stage
TRANSITION_FIELDS = frozenset({
    "status",
    "estimate_finalized_at",
    "finalized_rates",
    "completed_at",
    "cancelled_at",
})


def check_extra_fields(extra_fields: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    extra_fields = dict(extra_fields or {})
    unknown = set(extra_fields) - TRANSITION_FIELDS
    if unknown:
        raise ValidationError(
            f"Fields cannot change with a stage transition: {', '.join(sorted(unknown))}",
        )
    return extra_fields


def check_version(kind: str, document: Any, stored_version: Optional[int]) -> int:
    """Version to store for ``document``; raises if the stored copy changed since it was read."""
    current = stored_version or 0
    if current != document.version:
        raise ConcurrentModification(
            f"{kind} for assessment {document.assessment_id} changed since it was read "
            f"(read version {document.version}, stored version {current})",
            assessment_id=document.assessment_id,
            document=kind,
            expected_version=document.version,
            current_version=current,
        )
    return current + 1


def bump_versions(*documents: Any) -> None:
    for document in documents:
        if document is not None:
            document.version += 1


def to_column(value: Any) -> Any:
    """Plain JSON-able value for a model, enum or scalar."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    return value


class AssessmentStore(Protocol):
    async def load_assessment(self, assessment_id: str) -> Assessment: ...

    async def save_assessment(self, assessment: Assessment) -> Assessment: ...

    async def load_ledger(self, assessment_id: str) -> EstimateLedger: ...

    async def save_ledger(
        self, ledger: EstimateLedger, expected_stage: Optional[AssessmentStage] = None
    ) -> None: ...

    async def load_overlay(self, assessment_id: str) -> Optional[AdditionalsOverlay]: ...

    async def save_overlay(
        self, overlay: AdditionalsOverlay, expected_stage: Optional[AssessmentStage] = None
    ) -> None: ...

    async def load_snapshot(self, assessment_id: str) -> Optional[FRCSnapshot]: ...

    async def save_snapshot(
        self, snapshot: FRCSnapshot, expected_stage: Optional[AssessmentStage] = None
    ) -> None: ...

    async def cas_stage(
        self,
        assessment_id: str,
        expected_stage: AssessmentStage,
        new_stage: AssessmentStage,
        extra_fields: Optional[Dict[str, Any]] = None,
        ledger: Optional[EstimateLedger] = None,
        overlay: Optional[AdditionalsOverlay] = None,
        snapshot: Optional[FRCSnapshot] = None,
    ) -> Assessment: ...


class InMemoryAssessmentStore:
    """
    Dict-backed store. Documents are kept as JSON payloads, so every load hands
    out an independent copy. One asyncio lock serialises all writes.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {
            "assessments": {},
            "estimates": {},
            "additionals": {},
            "frc": {},
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _row(self, table: str, assessment_id: str) -> Optional[Dict[str, Any]]:
        return self._tables[table].get(assessment_id)

    def _current_stage(self, assessment_id: str) -> AssessmentStage:
        row = self._row("assessments", assessment_id)
        if row is None:
            raise AssessmentNotFound(assessment_id)
        return AssessmentStage(row["stage"])

    def _check_stage(self, assessment_id: str, expected: Optional[AssessmentStage]) -> None:
        current = self._current_stage(assessment_id)
        if expected is not None and current != AssessmentStage(expected):
            raise ConcurrentModification(
                f"Assessment {assessment_id} moved to '{current.value}' "
                f"(expected '{AssessmentStage(expected).value}')",
                assessment_id=assessment_id,
                expected_stage=AssessmentStage(expected).value,
                current_stage=current.value,
            )

    def _document_write(self, table: str, document: Any) -> Tuple[str, Dict[str, Any]]:
        row = self._row(table, document.assessment_id)
        payload = document.model_dump(mode="json")
        payload["version"] = check_version(table, document, row.get("version") if row else None)
        return table, payload

    async def _save_document(
        self, table: str, document: Any, expected_stage: Optional[AssessmentStage]
    ) -> None:
        async with self._lock:
            self._check_stage(document.assessment_id, expected_stage)
            self._commit(document.assessment_id, (self._document_write(table, document),))
        bump_versions(document)

    def _write(self, table: str, assessment_id: str, payload: Dict[str, Any]) -> None:
        self._tables[table][assessment_id] = payload

    def _commit(self, assessment_id: str, writes: Tuple[Tuple[str, Dict[str, Any]], ...]) -> None:
        """Apply ``writes`` in order; on any failure restore every touched row."""
        backup = {table: copy.deepcopy(self._row(table, assessment_id)) for table, _ in writes}
        try:
            for table, payload in writes:
                self._write(table, assessment_id, payload)
        except CostingError:
            self._restore(assessment_id, backup)
            raise
        except Exception as exc:
            self._restore(assessment_id, backup)
            logger.exception("in-memory commit failed", extra={"assessment_id": assessment_id})
            raise PersistenceError(f"Commit failed for assessment {assessment_id}: {exc}") from exc

    def _restore(self, assessment_id: str, backup: Dict[str, Optional[Dict[str, Any]]]) -> None:
        for table, row in backup.items():
            if row is None:
                self._tables[table].pop(assessment_id, None)
            else:
                self._tables[table][assessment_id] = row

    # ------------------------------------------------------------------
    # Assessments
    # ------------------------------------------------------------------

    async def load_assessment(self, assessment_id: str) -> Assessment:
        row = self._row("assessments", assessment_id)
        if row is None:
            raise AssessmentNotFound(assessment_id)
        return Assessment.model_validate(row)

    async def save_assessment(self, assessment: Assessment) -> Assessment:
        """Insert a new assessment. Existing ids are rejected."""
        async with self._lock:
            if self._row("assessments", assessment.id) is not None:
                raise ValidationError(f"Assessment {assessment.id} already exists", assessment_id=assessment.id)
            self._commit(assessment.id, (("assessments", assessment.model_dump(mode="json")),))
        return assessment

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def load_ledger(self, assessment_id: str) -> EstimateLedger:
        self._current_stage(assessment_id)
        row = self._row("estimates", assessment_id)
        if row is None:
            return EstimateLedger(assessment_id=assessment_id)
        return EstimateLedger.model_validate(row)

    async def save_ledger(
        self, ledger: EstimateLedger, expected_stage: Optional[AssessmentStage] = None
    ) -> None:
        await self._save_document("estimates", ledger, expected_stage)

    async def load_overlay(self, assessment_id: str) -> Optional[AdditionalsOverlay]:
        self._current_stage(assessment_id)
        row = self._row("additionals", assessment_id)
        return AdditionalsOverlay.model_validate(row) if row is not None else None

    async def save_overlay(
        self, overlay: AdditionalsOverlay, expected_stage: Optional[AssessmentStage] = None
    ) -> None:
        await self._save_document("additionals", overlay, expected_stage)

    async def load_snapshot(self, assessment_id: str) -> Optional[FRCSnapshot]:
        self._current_stage(assessment_id)
        row = self._row("frc", assessment_id)
        return FRCSnapshot.model_validate(row) if row is not None else None

    async def save_snapshot(
        self, snapshot: FRCSnapshot, expected_stage: Optional[AssessmentStage] = None
    ) -> None:
        await self._save_document("frc", snapshot, expected_stage)

    # ------------------------------------------------------------------
    # Compare-and-swap
    # ------------------------------------------------------------------

    async def cas_stage(
        self,
        assessment_id: str,
        expected_stage: AssessmentStage,
        new_stage: AssessmentStage,
        extra_fields: Optional[Dict[str, Any]] = None,
        ledger: Optional[EstimateLedger] = None,
        overlay: Optional[AdditionalsOverlay] = None,
        snapshot: Optional[FRCSnapshot] = None,
    ) -> Assessment:
        extra_fields = check_extra_fields(extra_fields)
        async with self._lock:
            self._check_stage(assessment_id, expected_stage)
            current = self._row("assessments", assessment_id)
            updated = Assessment.model_validate({
                **current,
                **{k: to_column(v) for k, v in extra_fields.items()},
                "stage": AssessmentStage(new_stage).value,
                "updated_at": utcnow(),
            })
            writes = []
            if ledger is not None:
                writes.append(self._document_write("estimates", ledger))
            if overlay is not None:
                writes.append(self._document_write("additionals", overlay))
            if snapshot is not None:
                writes.append(self._document_write("frc", snapshot))
            writes.append(("assessments", updated.model_dump(mode="json")))
            self._commit(assessment_id, tuple(writes))
        bump_versions(ledger, overlay, snapshot)
        return updated
