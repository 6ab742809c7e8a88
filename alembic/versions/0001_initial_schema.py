"""initial schema: reports, assignments, audit trails, analytics fact tables

Creates the directory tables (departments, categories, teams, users), the
report store with its status and department history, the assignment ledger
with its one-active-per-report partial unique index, report supports, and the
analytics fact, staging and refresh-run tables.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_initial_schema'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

REPORT_STATUSES = (
    'OPEN', 'IN_REVIEW', 'IN_PROGRESS', 'AWAITING_INFORMATION',
    'PENDING_APPROVAL', 'DONE', 'REJECTED', 'CANCELLED',
)

user_role = postgresql.ENUM('CITIZEN', 'TEAM_MEMBER', 'DEPARTMENT_SUPERVISOR', 'SYSTEM_ADMIN', name='user_role', create_type=False)
report_status = postgresql.ENUM(*REPORT_STATUSES, name='report_status', create_type=False)
report_sub_status = postgresql.ENUM('FORWARDED', name='report_sub_status', create_type=False)
report_type = postgresql.ENUM(
    'POTHOLE', 'ROAD_DAMAGE', 'STREETLIGHT', 'GARBAGE', 'WATER_LEAK', 'PARK_DAMAGE', 'OTHER',
    name='report_type', create_type=False,
)
assignee_type = postgresql.ENUM('USER', 'TEAM', name='assignee_type', create_type=False)
assignment_status = postgresql.ENUM('ACTIVE', 'COMPLETED', 'CANCELLED', name='assignment_status', create_type=False)
refresh_status = postgresql.ENUM('RUNNING', 'SUCCEEDED', 'FAILED', 'CANCELLED', name='refresh_status', create_type=False)

ENUMS = (user_role, report_status, report_sub_status, report_type, assignee_type, assignment_status, refresh_status)


def _fact_columns() -> list:
    return [
        sa.Column('report_id', sa.Integer(), nullable=False),
        sa.Column('created_at_dt', sa.Date(), nullable=False),
        sa.Column('created_at_ts', sa.DateTime(timezone=True), nullable=False),
        sa.Column('department_id', sa.Integer(), nullable=True),
        sa.Column('category_id', sa.Integer(), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('first_assigned_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('first_accepted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('first_response_duration_secs', sa.BigInteger(), nullable=True),
        sa.Column('intervention_duration_secs', sa.BigInteger(), nullable=True),
        sa.Column('resolution_duration_secs', sa.BigInteger(), nullable=True),
        sa.Column('support_count', sa.Integer(), nullable=False),
        sa.Column('final_status', sa.String(length=50), nullable=False),
        sa.Column('reopen_count', sa.Integer(), nullable=False),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('last_updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    bind = op.get_bind()
    for enum in ENUMS:
        enum.create(bind, checkfirst=True)

    op.create_table(
        'departments',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('code', sa.String(length=50), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('description', sa.String(length=500), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_departments_code', 'departments', ['code'], unique=True)

    op.create_table(
        'report_categories',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('code', sa.String(length=50), nullable=False),
        sa.Column('description', sa.String(length=500), nullable=True),
        sa.Column('parent_id', sa.Integer(), sa.ForeignKey('report_categories.id'), nullable=True),
        sa.Column('department_id', sa.Integer(), sa.ForeignKey('departments.id', ondelete='SET NULL'), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('sort_order', sa.Integer(), server_default='0', nullable=False),
    )
    op.create_index('ix_report_categories_code', 'report_categories', ['code'], unique=True)

    op.create_table(
        'teams',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('department_id', sa.Integer(), sa.ForeignKey('departments.id'), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
    )
    op.create_index('ix_teams_department_id', 'teams', ['department_id'])

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('role', user_role, nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('department_id', sa.Integer(), sa.ForeignKey('departments.id', ondelete='SET NULL'), nullable=True),
        sa.Column('team_id', sa.Integer(), sa.ForeignKey('teams.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_name', 'users', ['name'])
    op.create_index('ix_users_department_id', 'users', ['department_id'])
    op.create_index('ix_users_team_id', 'users', ['team_id'])

    op.create_table(
        'reports',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('description', sa.String(length=4000), nullable=True),
        sa.Column('lat', sa.Float(), nullable=True),
        sa.Column('lng', sa.Float(), nullable=True),
        sa.Column('address', sa.String(length=300), nullable=True),
        sa.Column('category_id', sa.Integer(), sa.ForeignKey('report_categories.id', ondelete='SET NULL'), nullable=True),
        sa.Column('report_type', report_type, nullable=False),
        sa.Column('status', report_status, nullable=False),
        sa.Column('sub_status', report_sub_status, nullable=True),
        sa.Column('awaiting_info_from', report_status, nullable=True),
        sa.Column('current_department_id', sa.Integer(), sa.ForeignKey('departments.id'), nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejection_reason', sa.String(length=500), nullable=True),
        sa.Column('resolution_notes', sa.String(length=2000), nullable=True),
        sa.Column('reopen_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('reopened_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('assigned_employee_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('closed_by_user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('support_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    for col in ('title', 'category_id', 'status', 'current_department_id', 'user_id',
                'assigned_employee_id', 'deleted_at', 'created_at'):
        op.create_index(f'ix_reports_{col}', 'reports', [col])
    op.create_index('ix_reports_lat_lng', 'reports', ['lat', 'lng'])
    op.create_index('ix_reports_department_status', 'reports', ['current_department_id', 'status'])

    op.create_table(
        'report_status_history',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('report_id', sa.Integer(), sa.ForeignKey('reports.id', ondelete='CASCADE'), nullable=False),
        sa.Column('previous_status', report_status, nullable=True),
        sa.Column('new_status', report_status, nullable=False),
        sa.Column('previous_sub_status', sa.String(length=30), nullable=True),
        sa.Column('new_sub_status', sa.String(length=30), nullable=True),
        sa.Column('changed_by_user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('notes', sa.String(length=1000), nullable=True),
        sa.Column('changed_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_report_status_history_report_id', 'report_status_history', ['report_id'])
    op.create_index('ix_report_status_history_changed_at', 'report_status_history', ['changed_at'])

    op.create_table(
        'department_history',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('report_id', sa.Integer(), sa.ForeignKey('reports.id', ondelete='CASCADE'), nullable=False),
        sa.Column('previous_department_id', sa.Integer(), sa.ForeignKey('departments.id'), nullable=True),
        sa.Column('new_department_id', sa.Integer(), sa.ForeignKey('departments.id'), nullable=False),
        sa.Column('reason', sa.String(length=500), nullable=False),
        sa.Column('changed_by_user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('changed_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_department_history_report_id', 'department_history', ['report_id'])
    op.create_index('ix_department_history_changed_at', 'department_history', ['changed_at'])

    op.create_table(
        'assignments',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('report_id', sa.Integer(), sa.ForeignKey('reports.id', ondelete='CASCADE'), nullable=False),
        sa.Column('assignee_type', assignee_type, nullable=False),
        sa.Column('assignee_user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('assignee_team_id', sa.Integer(), sa.ForeignKey('teams.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('assigned_by_user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('status', assignment_status, nullable=False),
        sa.Column('notes', sa.String(length=1000), nullable=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('accepted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "(assignee_type = 'USER' AND assignee_user_id IS NOT NULL AND assignee_team_id IS NULL)"
            " OR (assignee_type = 'TEAM' AND assignee_team_id IS NOT NULL AND assignee_user_id IS NULL)",
            name='ck_assignments_assignee_matches_type',
        ),
    )
    op.create_index('ix_assignments_report_id', 'assignments', ['report_id'])
    op.create_index('ix_assignments_assignee_user_id', 'assignments', ['assignee_user_id'])
    op.create_index('ix_assignments_assignee_team_id', 'assignments', ['assignee_team_id'])
    op.create_index('ix_assignments_status', 'assignments', ['status'])
    op.create_index(
        'uq_assignments_one_active_per_report', 'assignments', ['report_id'], unique=True,
        postgresql_where=sa.text("status = 'ACTIVE' AND deleted_at IS NULL"),
        sqlite_where=sa.text("status = 'ACTIVE' AND deleted_at IS NULL"),
    )

    op.create_table(
        'report_supports',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('report_id', sa.Integer(), sa.ForeignKey('reports.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('report_id', 'user_id', name='uq_report_support_user'),
    )
    op.create_index('ix_report_supports_report_id', 'report_supports', ['report_id'])
    op.create_index('ix_report_supports_user_id', 'report_supports', ['user_id'])

    op.create_table('fact_reports', *_fact_columns(), sa.PrimaryKeyConstraint('report_id'))
    op.create_index('idx_fact_reports_created_dt', 'fact_reports', ['created_at_dt'])
    op.create_index('idx_fact_reports_department', 'fact_reports', ['department_id'])
    op.create_index('idx_fact_reports_category', 'fact_reports', ['category_id'])
    op.create_index('idx_fact_reports_status', 'fact_reports', ['final_status'])
    op.create_index('idx_fact_reports_coords', 'fact_reports', ['latitude', 'longitude'])

    op.create_table(
        'fact_reports_staging',
        sa.Column('run_id', sa.Integer(), nullable=False),
        *_fact_columns(),
        sa.PrimaryKeyConstraint('run_id', 'report_id'),
    )

    op.create_table(
        'analytics_refresh_runs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('status', refresh_status, nullable=False),
        sa.Column('trigger', sa.String(length=20), nullable=False),
        sa.Column('row_count', sa.Integer(), nullable=True),
        sa.Column('error', sa.String(length=1000), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    """Downgrade schema."""
    for table in (
        'analytics_refresh_runs', 'fact_reports_staging', 'fact_reports', 'report_supports',
        'assignments', 'department_history', 'report_status_history', 'reports',
        'users', 'teams', 'report_categories', 'departments',
    ):
        op.drop_table(table)
    bind = op.get_bind()
    for enum in reversed(ENUMS):
        enum.drop(bind, checkfirst=True)
