"""assessment_costing_schema

Revision ID: 001_assessment_costing
Revises:
Create Date: 2026-10-18

Creates the costing tables:
- assessments (stage is the compare-and-swap target)
- estimates, additionals, frc (one JSON line-item document per assessment)
- audit_logs
- company_settings (global rate card, latest row wins)

Every create is guarded by an existence check so the migration is
idempotent alongside Base.metadata.create_all().
"""
import logging
from alembic import op
import sqlalchemy as sa

revision = '001_assessment_costing'
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger("alembic.001")

_DOCUMENT_TABLES = ('estimates', 'additionals', 'frc')


def _table_exists(conn, table_name: str) -> bool:
    return sa.inspect(conn).has_table(table_name)


def _column_exists(conn, table_name: str, column_name: str) -> bool:
    return any(c['name'] == column_name for c in sa.inspect(conn).get_columns(table_name))


def _assessment_fk():
    return sa.Column(
        'assessment_id', sa.String(64),
        sa.ForeignKey('assessments.id', ondelete='CASCADE'), primary_key=True,
    )


def upgrade() -> None:
    conn = op.get_bind()

    # ── assessments ───────────────────────────────────────────────────────────
    if not _table_exists(conn, 'assessments'):
        op.create_table(
            'assessments',
            sa.Column('id', sa.String(64), primary_key=True),
            sa.Column('assessment_number', sa.String(50), nullable=True, server_default=''),
            sa.Column('stage', sa.String(40), nullable=False, index=True),
            sa.Column('status', sa.String(20), nullable=False, server_default='active'),
            sa.Column('estimate_finalized_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('finalized_rates', sa.JSON, nullable=True),
            sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        )
        logger.info("Created table: assessments")
    else:
        logger.info("Table assessments already exists — skipping create")

    # ── estimates ─────────────────────────────────────────────────────────────
    if not _table_exists(conn, 'estimates'):
        op.create_table(
            'estimates',
            _assessment_fk(),
            sa.Column('line_items', sa.JSON, nullable=False),
            sa.Column('rates', sa.JSON, nullable=False),
            sa.Column('rate_overrides', sa.JSON, nullable=False),
            sa.Column('finalized_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('version', sa.Integer, nullable=False, server_default='0'),
        )
        logger.info("Created table: estimates")
    elif not _column_exists(conn, 'estimates', 'rate_overrides'):
        # Early deployments stored overrides folded into rates
        with op.batch_alter_table('estimates') as batch_op:
            batch_op.add_column(sa.Column('rate_overrides', sa.JSON, nullable=True))
        logger.info("Added column: estimates.rate_overrides")

    # ── additionals ───────────────────────────────────────────────────────────
    if not _table_exists(conn, 'additionals'):
        op.create_table(
            'additionals',
            _assessment_fk(),
            sa.Column('line_items', sa.JSON, nullable=False),
            sa.Column('rates', sa.JSON, nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('version', sa.Integer, nullable=False, server_default='0'),
        )
        logger.info("Created table: additionals")

    # ── frc ───────────────────────────────────────────────────────────────────
    if not _table_exists(conn, 'frc'):
        op.create_table(
            'frc',
            _assessment_fk(),
            sa.Column('status', sa.String(20), nullable=False),
            sa.Column('line_items', sa.JSON, nullable=False),
            sa.Column('line_items_version', sa.Integer, nullable=False, server_default='0'),
            sa.Column('rates', sa.JSON, nullable=False),
            sa.Column('quoted_total', sa.Numeric(14, 2), nullable=False, server_default='0'),
            sa.Column('actual_total', sa.Numeric(14, 2), nullable=False, server_default='0'),
            sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('last_merge_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('sign_off', sa.JSON, nullable=True),
            sa.Column('version', sa.Integer, nullable=False, server_default='0'),
        )
        logger.info("Created table: frc")

    # Documents written before conflict checks carry no version
    for table in _DOCUMENT_TABLES:
        if not _column_exists(conn, table, 'version'):
            with op.batch_alter_table(table) as batch_op:
                batch_op.add_column(sa.Column('version', sa.Integer, nullable=False, server_default='0'))
            logger.info(f"Added column: {table}.version")

    # ── audit_logs ────────────────────────────────────────────────────────────
    if not _table_exists(conn, 'audit_logs'):
        op.create_table(
            'audit_logs',
            sa.Column('id', sa.String(64), primary_key=True),
            sa.Column('entity_type', sa.String(40), nullable=False),
            sa.Column('entity_id', sa.String(64), nullable=False, index=True),
            sa.Column('action', sa.String(60), nullable=False),
            sa.Column('metadata', sa.JSON, nullable=True),
            sa.Column('changed_by', sa.String(255), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        )
        logger.info("Created table: audit_logs")

    # ── company_settings ──────────────────────────────────────────────────────
    if not _table_exists(conn, 'company_settings'):
        op.create_table(
            'company_settings',
            sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
            sa.Column('labour_rate', sa.Numeric(10, 2), nullable=False),
            sa.Column('paint_rate', sa.Numeric(10, 2), nullable=False),
            sa.Column('oem_markup_percentage', sa.Numeric(6, 2), nullable=False),
            sa.Column('alt_markup_percentage', sa.Numeric(6, 2), nullable=False),
            sa.Column('second_hand_markup_percentage', sa.Numeric(6, 2), nullable=False),
            sa.Column('outwork_markup_percentage', sa.Numeric(6, 2), nullable=False),
            sa.Column('vat_percentage', sa.Numeric(5, 2), nullable=False),
            sa.Column('sundries_percentage', sa.Numeric(5, 2), nullable=False, server_default='0'),
            sa.Column('notes', sa.Text, nullable=True),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        )
        logger.info("Created table: company_settings")


def downgrade() -> None:
    conn = op.get_bind()

    for table in ('audit_logs', 'company_settings') + _DOCUMENT_TABLES:
        if _table_exists(conn, table):
            op.drop_table(table)
    if _table_exists(conn, 'assessments'):
        op.drop_table('assessments')
