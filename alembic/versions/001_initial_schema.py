"""Users, modules, course assignments and weekly activity logs.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_STATUS = ("Done", "Pending", "Not Started")


def _status_column(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.Enum(*_STATUS, name="activity_status"),
        nullable=False,
        server_default="Not Started",
    )


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=False, server_default=""),
        sa.Column("first_name", sa.String(100), nullable=False),
        sa.Column("last_name", sa.String(100), nullable=False),
        sa.Column(
            "role",
            sa.Enum("manager", "facilitator", "student", name="user_role"),
            nullable=False,
            server_default="student",
        ),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("last_login", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "modules",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(20), unique=True, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("credits", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
    )

    op.create_table(
        "course_offerings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("module_id", sa.Integer, sa.ForeignKey("modules.id"), nullable=False),
        sa.Column("facilitator_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("trimester", sa.String(20), nullable=False),
        sa.Column("intake_period", sa.String(20), nullable=False),
        sa.Column("start_date", sa.Date, nullable=False),
        sa.Column("end_date", sa.Date, nullable=False),
        sa.Column("max_students", sa.Integer, nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("module_id", "facilitator_id", "trimester", "intake_period", name="unique_course_offering"),
    )
    op.create_index("ix_course_offerings_facilitator_id", "course_offerings", ["facilitator_id"])

    op.create_table(
        "activity_trackers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("assignment_id", sa.Integer, sa.ForeignKey("course_offerings.id"), nullable=False),
        sa.Column("facilitator_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("week_number", sa.Integer, nullable=False),
        sa.Column("year", sa.Integer, nullable=False),
        sa.Column("attendance", sa.JSON, nullable=False),
        _status_column("formative_one_grading"),
        _status_column("formative_two_grading"),
        _status_column("summative_grading"),
        _status_column("course_moderation"),
        _status_column("intranet_sync"),
        _status_column("grade_book_status"),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("assignment_id", "week_number", "year", name="unique_activity_tracker"),
        sa.CheckConstraint("week_number BETWEEN 1 AND 53", name="ck_activity_week"),
        sa.CheckConstraint("year BETWEEN 2020 AND 2030", name="ck_activity_year"),
    )
    op.create_index("idx_activity_pending", "activity_trackers", ["facilitator_id", "submitted_at", "is_active"])


def downgrade() -> None:
    op.drop_index("idx_activity_pending", table_name="activity_trackers")
    op.drop_table("activity_trackers")
    op.drop_index("ix_course_offerings_facilitator_id", table_name="course_offerings")
    op.drop_table("course_offerings")
    op.drop_table("modules")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
    sa.Enum(name="activity_status").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="user_role").drop(op.get_bind(), checkfirst=True)
