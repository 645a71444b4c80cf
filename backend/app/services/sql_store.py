"""
SqlAssessmentStore — the persistence port on async SQLAlchemy 2.0.

Each call runs in its own transaction. ``cas_stage`` issues

    UPDATE assessments SET stage = :new, ... WHERE id = :id AND stage = :expected

and writes the accompanying documents in the same transaction; a rowcount of
0 means another request moved the stage first. Document saves outside a
transition use the same conditional UPDATE (stage unchanged) as their guard.

Document rows carry a version as well:

    UPDATE estimates SET version = :read + 1 WHERE assessment_id = :id AND version = :read

so a document read before another same-stage edit was committed cannot
overwrite that edit.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.assessment import Assessment, AssessmentStage, utcnow
from app.models.orm_models import AdditionalsRow, AssessmentRow, EstimateRow, FRCRow
from app.services.additionals_overlay import AdditionalsOverlay
from app.services.assessment_store import bump_versions, check_extra_fields, check_version, to_column
from app.services.errors import (
    AssessmentNotFound,
    ConcurrentModification,
    PersistenceError,
    ValidationError,
)
from app.services.estimate_ledger import EstimateLedger
from app.services.frc_engine import FRCSnapshot

logger = logging.getLogger("costing-sql-store")


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo; every timestamp in this store is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlAssessmentStore:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, description: str, assessment_id: str, fn):
        """Await ``fn(session)`` in one transaction, mapping driver errors to PersistenceError."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    return await fn(session)
        except SQLAlchemyError as exc:
            logger.error(
                f"{description} failed: {exc}",
                extra={"assessment_id": assessment_id},
            )
            raise PersistenceError(f"{description} failed for assessment {assessment_id}") from exc

    async def _guard_stage(
        self,
        session: AsyncSession,
        assessment_id: str,
        expected_stage: Optional[AssessmentStage],
        values: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Conditional UPDATE on the assessment row; raises if the stage moved."""
        stmt = update(AssessmentRow).where(AssessmentRow.id == assessment_id)
        if expected_stage is not None:
            stmt = stmt.where(AssessmentRow.stage == AssessmentStage(expected_stage).value)
        result = await session.execute(stmt.values(updated_at=utcnow(), **(values or {})))
        if result.rowcount == 0:
            row = await session.get(AssessmentRow, assessment_id)
            if row is None:
                raise AssessmentNotFound(assessment_id)
            raise ConcurrentModification(
                f"Assessment {assessment_id} moved to '{row.stage}' "
                f"(expected '{AssessmentStage(expected_stage).value}')",
                assessment_id=assessment_id,
                expected_stage=AssessmentStage(expected_stage).value,
                current_stage=row.stage,
            )

    @staticmethod
    async def _guard_version(session: AsyncSession, row_cls, document: Any) -> int:
        """Conditional UPDATE on the document row's version; returns the version to write."""
        new_version = document.version + 1
        result = await session.execute(
            update(row_cls)
            .where(row_cls.assessment_id == document.assessment_id, row_cls.version == document.version)
            .values(version=new_version)
        )
        if result.rowcount == 0:
            row = await session.get(row_cls, document.assessment_id)
            return check_version(row_cls.__tablename__, document, row.version if row is not None else None)
        return new_version

    @staticmethod
    async def _require_assessment(session: AsyncSession, assessment_id: str) -> None:
        if await session.get(AssessmentRow, assessment_id) is None:
            raise AssessmentNotFound(assessment_id)

    @staticmethod
    def _to_assessment(row: AssessmentRow) -> Assessment:
        return Assessment(
            id=row.id,
            assessment_number=row.assessment_number,
            stage=row.stage,
            status=row.status,
            estimate_finalized_at=_aware(row.estimate_finalized_at),
            finalized_rates=row.finalized_rates,
            completed_at=_aware(row.completed_at),
            cancelled_at=_aware(row.cancelled_at),
            updated_at=_aware(row.updated_at),
        )

    # Document writers. Separate methods so a transaction can be observed
    # failing between individual writes.

    async def _write_ledger(self, session: AsyncSession, ledger: EstimateLedger) -> None:
        version = await self._guard_version(session, EstimateRow, ledger)
        await session.merge(EstimateRow(
            assessment_id=ledger.assessment_id,
            line_items=[line.model_dump(mode="json") for line in ledger.lines],
            rates=ledger.rates.model_dump(mode="json"),
            rate_overrides=ledger.model_dump(mode="json")["rate_overrides"],
            finalized_at=ledger.finalized_at,
            version=version,
        ))

    async def _write_overlay(self, session: AsyncSession, overlay: AdditionalsOverlay) -> None:
        version = await self._guard_version(session, AdditionalsRow, overlay)
        await session.merge(AdditionalsRow(
            assessment_id=overlay.assessment_id,
            line_items=[item.model_dump(mode="json") for item in overlay.items],
            rates=overlay.rates.model_dump(mode="json"),
            created_at=overlay.created_at,
            version=version,
        ))

    async def _write_snapshot(self, session: AsyncSession, snapshot: FRCSnapshot) -> None:
        version = await self._guard_version(session, FRCRow, snapshot)
        await session.merge(FRCRow(
            assessment_id=snapshot.assessment_id,
            status=snapshot.status.value,
            line_items=[line.model_dump(mode="json") for line in snapshot.lines],
            line_items_version=snapshot.line_items_version,
            rates=snapshot.rates.model_dump(mode="json"),
            quoted_total=snapshot.quoted_totals()["total"],
            actual_total=snapshot.actual_totals()["total"],
            started_at=snapshot.started_at,
            last_merge_at=snapshot.last_merge_at,
            completed_at=snapshot.completed_at,
            sign_off=to_column(snapshot.sign_off),
            version=version,
        ))
        await session.flush()

    # ------------------------------------------------------------------
    # Assessments
    # ------------------------------------------------------------------

    async def load_assessment(self, assessment_id: str) -> Assessment:
        async def load(session: AsyncSession) -> Assessment:
            row = await session.get(AssessmentRow, assessment_id)
            if row is None:
                raise AssessmentNotFound(assessment_id)
            return self._to_assessment(row)

        return await self._run("load_assessment", assessment_id, load)

    async def save_assessment(self, assessment: Assessment) -> Assessment:
        async def insert(session: AsyncSession) -> Assessment:
            if await session.get(AssessmentRow, assessment.id) is not None:
                raise ValidationError(f"Assessment {assessment.id} already exists", assessment_id=assessment.id)
            session.add(AssessmentRow(
                id=assessment.id,
                assessment_number=assessment.assessment_number,
                stage=assessment.stage.value,
                status=assessment.status.value,
                estimate_finalized_at=assessment.estimate_finalized_at,
                finalized_rates=to_column(assessment.finalized_rates),
                completed_at=assessment.completed_at,
                cancelled_at=assessment.cancelled_at,
                updated_at=assessment.updated_at,
            ))
            return assessment

        return await self._run("save_assessment", assessment.id, insert)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def load_ledger(self, assessment_id: str) -> EstimateLedger:
        async def load(session: AsyncSession) -> EstimateLedger:
            await self._require_assessment(session, assessment_id)
            row = await session.get(EstimateRow, assessment_id)
            if row is None:
                return EstimateLedger(assessment_id=assessment_id)
            return EstimateLedger(
                assessment_id=assessment_id,
                lines=row.line_items,
                rates=row.rates,
                rate_overrides=row.rate_overrides or {},
                finalized_at=_aware(row.finalized_at),
                version=row.version,
            )

        return await self._run("load_ledger", assessment_id, load)

    async def save_ledger(
        self, ledger: EstimateLedger, expected_stage: Optional[AssessmentStage] = None
    ) -> None:
        async def save(session: AsyncSession) -> None:
            await self._guard_stage(session, ledger.assessment_id, expected_stage)
            await self._write_ledger(session, ledger)

        await self._run("save_ledger", ledger.assessment_id, save)
        bump_versions(ledger)

    async def load_overlay(self, assessment_id: str) -> Optional[AdditionalsOverlay]:
        async def load(session: AsyncSession) -> Optional[AdditionalsOverlay]:
            await self._require_assessment(session, assessment_id)
            row = await session.get(AdditionalsRow, assessment_id)
            if row is None:
                return None
            return AdditionalsOverlay(
                assessment_id=assessment_id,
                rates=row.rates,
                items=row.line_items,
                created_at=_aware(row.created_at),
                version=row.version,
            )

        return await self._run("load_overlay", assessment_id, load)

    async def save_overlay(
        self, overlay: AdditionalsOverlay, expected_stage: Optional[AssessmentStage] = None
    ) -> None:
        async def save(session: AsyncSession) -> None:
            await self._guard_stage(session, overlay.assessment_id, expected_stage)
            await self._write_overlay(session, overlay)

        await self._run("save_overlay", overlay.assessment_id, save)
        bump_versions(overlay)

    async def load_snapshot(self, assessment_id: str) -> Optional[FRCSnapshot]:
        async def load(session: AsyncSession) -> Optional[FRCSnapshot]:
            await self._require_assessment(session, assessment_id)
            row = await session.get(FRCRow, assessment_id)
            if row is None:
                return None
            return FRCSnapshot(
                assessment_id=assessment_id,
                status=row.status,
                rates=row.rates,
                lines=row.line_items,
                line_items_version=row.line_items_version,
                started_at=_aware(row.started_at),
                last_merge_at=_aware(row.last_merge_at),
                completed_at=_aware(row.completed_at),
                sign_off=row.sign_off,
                version=row.version,
            )

        return await self._run("load_snapshot", assessment_id, load)

    async def save_snapshot(
        self, snapshot: FRCSnapshot, expected_stage: Optional[AssessmentStage] = None
    ) -> None:
        async def save(session: AsyncSession) -> None:
            await self._guard_stage(session, snapshot.assessment_id, expected_stage)
            await self._write_snapshot(session, snapshot)

        await self._run("save_snapshot", snapshot.assessment_id, save)
        bump_versions(snapshot)

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
        values = {k: to_column(v) for k, v in extra_fields.items()}
        values["stage"] = AssessmentStage(new_stage).value

        async def swap(session: AsyncSession) -> Assessment:
            await self._guard_stage(session, assessment_id, expected_stage, values)
            if ledger is not None:
                await self._write_ledger(session, ledger)
            if overlay is not None:
                await self._write_overlay(session, overlay)
            if snapshot is not None:
                await self._write_snapshot(session, snapshot)
            await session.flush()
            row = await session.get(AssessmentRow, assessment_id, populate_existing=True)
            return self._to_assessment(row)

        written = await self._run("cas_stage", assessment_id, swap)
        bump_versions(ledger, overlay, snapshot)
        return written
