"""
Costing core configuration — single source of truth for default rates,
stage ordering and runtime settings.

Import from here in engines and services rather than hardcoding values.
Every value can be overridden from the environment (see ``.env``).
"""
from __future__ import annotations

import os
from decimal import Decimal


def _env_decimal(name: str, default: str) -> Decimal:
    return Decimal(os.getenv(name, default))


# ── Runtime settings ───────────────────────────────────────────────────────────

DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./assessment_costing.db")
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT: str = os.getenv("LOG_FORMAT", "json").lower()

# "log" writes audit events to the application log, "sql" to the audit_logs table
AUDIT_SINK: str = os.getenv("AUDIT_SINK", "log").lower()


# ── Default rate card ──────────────────────────────────────────────────────────
# Used by DefaultRateSource when no company_settings row exists.
# Rates are per hour / per panel; markups and VAT are percentages (0–100).

DEFAULT_LABOUR_RATE: Decimal = _env_decimal("DEFAULT_LABOUR_RATE", "500.00")
DEFAULT_PAINT_RATE: Decimal = _env_decimal("DEFAULT_PAINT_RATE", "2000.00")
DEFAULT_OEM_MARKUP_PERCENTAGE: Decimal = _env_decimal("DEFAULT_OEM_MARKUP_PERCENTAGE", "25")
DEFAULT_ALT_MARKUP_PERCENTAGE: Decimal = _env_decimal("DEFAULT_ALT_MARKUP_PERCENTAGE", "25")
DEFAULT_SECOND_HAND_MARKUP_PERCENTAGE: Decimal = _env_decimal(
    "DEFAULT_SECOND_HAND_MARKUP_PERCENTAGE", "25"
)
DEFAULT_OUTWORK_MARKUP_PERCENTAGE: Decimal = _env_decimal("DEFAULT_OUTWORK_MARKUP_PERCENTAGE", "25")
DEFAULT_VAT_PERCENTAGE: Decimal = _env_decimal("DEFAULT_VAT_PERCENTAGE", "15")
DEFAULT_SUNDRIES_PERCENTAGE: Decimal = _env_decimal("DEFAULT_SUNDRIES_PERCENTAGE", "0")


# ── Money ──────────────────────────────────────────────────────────────────────

CURRENCY: str = os.getenv("CURRENCY", "ZAR")
MONEY_QUANTUM: Decimal = Decimal("0.01")


# ── Assessment lifecycle ───────────────────────────────────────────────────────
# Canonical stage sequence. The last two are terminal; "cancelled" is reachable
# from any non-terminal stage.
STAGE_ORDER: list[str] = [
    "request_submitted",
    "request_reviewed",
    "inspection_scheduled",
    "appointment_scheduled",
    "assessment_in_progress",
    "estimate_review",
    "estimate_sent",
    "estimate_finalized",
    "frc_in_progress",
    "archived",
    "cancelled",
]

# Last stage that may be reached through a plain "advance" call. Later stages
# are entered only by their owning operation (finalize, start FRC, sign-off).
LAST_MANUAL_STAGE: str = "estimate_sent"
