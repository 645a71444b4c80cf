"""
conftest.py — Shared pytest fixtures for the assessment costing test suite.

Engine, ledger and overlay tests are pure unit tests. Workflow and API tests
run against the in-memory store; the SQL store tests use a throwaway SQLite
database (aiosqlite) per test.

The workflow and stores are async. Their tests carry ``pytest.mark.anyio``
and run on asyncio through the anyio pytest plugin.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``app.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import sys
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any app imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)


# ---------------------------------------------------------------------------
# Async
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


# ---------------------------------------------------------------------------
# Rates
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def rates():
    """
    Round-number rate snapshot for hand-checkable assertions.

      labour 500/h, paint 2000/panel, OEM markup 25%, alternative 15%,
      second-hand 10%, outwork 20%, VAT 15%, no sundries.
    """
    from app.models.assessment import RateSnapshot
    return RateSnapshot(
        labour_rate=Decimal("500.00"),
        paint_rate=Decimal("2000.00"),
        oem_markup_percentage=Decimal("25"),
        alt_markup_percentage=Decimal("15"),
        second_hand_markup_percentage=Decimal("10"),
        outwork_markup_percentage=Decimal("20"),
        vat_percentage=Decimal("15"),
        sundries_percentage=Decimal("0"),
    )


@pytest.fixture(scope="session")
def engine(rates):
    """CalculationEngine on the round-number rates."""
    from app.services.calculation_engine import CalculationEngine
    return CalculationEngine(rates)


# ---------------------------------------------------------------------------
# Ledger / overlay
# ---------------------------------------------------------------------------

@pytest.fixture
def finalized_ledger(rates):
    """
    Finalised ledger with three base lines:

      L1  new OEM part 8000 nett, 2h strip/assemble  → 10000 + 1000 = 11000.00
      L2  repair 3h labour, 1 paint panel            →  1500 + 2000 =  3500.00
      L3  outwork 1000 nett                          →  1000 + 200  =  1200.00
    """
    from app.services.estimate_ledger import EstimateLedger
    ledger = EstimateLedger(assessment_id="A-1")
    ledger.add_line({"id": "L1", "process_type": "new", "part_type": "oem",
                     "part_price_nett": "8000", "strip_assemble_hours": "2"})
    ledger.add_line({"id": "L2", "process_type": "repair", "labour_hours": "3", "paint_panels": "1"})
    ledger.add_line({"id": "L3", "process_type": "outwork", "outwork_charge_nett": "1000"})
    ledger.finalize(rates, datetime(2025, 3, 1, tzinfo=timezone.utc))
    return ledger


@pytest.fixture
def overlay(finalized_ledger):
    """Empty additionals overlay opened on the finalised ledger."""
    from app.services.additionals_overlay import AdditionalsOverlay
    return AdditionalsOverlay.open_for(finalized_ledger)


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------

class TickingClock:
    """Deterministic clock: every call is one second after the previous one."""

    def __init__(self, start=datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        self.now = self.now + timedelta(seconds=1)
        return self.now


@pytest.fixture
def audit_sink():
    from app.services.audit import RecordingAuditSink
    return RecordingAuditSink()


@pytest.fixture
def memory_store():
    from app.services.assessment_store import InMemoryAssessmentStore
    return InMemoryAssessmentStore()


@pytest.fixture
def rate_source(rates):
    from app.services.rate_source import DefaultRateSource
    return DefaultRateSource(**rates.model_dump())


@pytest.fixture
def make_workflow(rate_source, audit_sink):
    """Build a workflow over any store, sharing the test rate source and clock style."""
    from app.services.assessment_workflow import AssessmentWorkflow

    def _make(store, sink=None):
        return AssessmentWorkflow(store, rate_source, sink or audit_sink, clock=TickingClock())
    return _make


@pytest.fixture
def workflow(make_workflow, memory_store):
    return make_workflow(memory_store)


@pytest.fixture
def advance_to(workflow):
    """Walk an assessment forward with plain advance calls until ``stage``."""
    from app.models.assessment import AssessmentStage

    async def _advance(assessment_id, stage):
        target = AssessmentStage(stage)
        while (await workflow.get_assessment(assessment_id)).stage != target:
            await workflow.advance(assessment_id)
    return _advance


@pytest.fixture
async def finalized_assessment(workflow, advance_to):
    """
    Assessment A-100 with the three standard lines, finalised.
    Returns the assessment id.
    """
    await workflow.create_assessment("A-100", "ASM-2025-100")
    await workflow.add_estimate_line("A-100", {"id": "L1", "process_type": "new", "part_type": "oem",
                                               "part_price_nett": "8000", "strip_assemble_hours": "2"})
    await workflow.add_estimate_line("A-100", {"id": "L2", "process_type": "repair",
                                               "labour_hours": "3", "paint_panels": "1"})
    await workflow.add_estimate_line("A-100", {"id": "L3", "process_type": "outwork",
                                               "outwork_charge_nett": "1000"})
    await advance_to("A-100", "estimate_review")
    await workflow.finalize_estimate("A-100")
    return "A-100"


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

@pytest.fixture
async def sql_session_factory(tmp_path):
    """Fresh SQLite file database with every table created."""
    from app.db import init_db, make_engine, make_session_factory
    bind = make_engine(f"sqlite:///{tmp_path / 'costing.db'}")
    await init_db(bind)
    yield make_session_factory(bind)
    await bind.dispose()


@pytest.fixture
def sql_store(sql_session_factory):
    from app.services.sql_store import SqlAssessmentStore
    return SqlAssessmentStore(sql_session_factory)
