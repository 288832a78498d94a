"""排班異動紀錄：schedule_change_logs

Revision ID: 002
Revises: 001
Create Date: 2026-10-18

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "schedule_change_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("change_type", sa.String(40), nullable=False, comment="shift_created / shift_edited / ..."),
        sa.Column("description", sa.Text(), nullable=False, comment="異動說明"),
        sa.Column("changed_by", sa.String(100), nullable=False, server_default="Supervisor"),
        sa.Column("client_name", sa.String(200), nullable=True),
        sa.Column("building_name", sa.String(200), nullable=True),
        sa.Column("cleaner_names", sa.JSON(), nullable=True),
        sa.Column("shift_date", sa.String(10), nullable=True),
        sa.Column("shift_id", sa.String(36), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_schedule_change_logs_change_type"), "schedule_change_logs", ["change_type"], unique=False)
    op.create_index(op.f("ix_schedule_change_logs_shift_date"), "schedule_change_logs", ["shift_date"], unique=False)
    op.create_index(op.f("ix_schedule_change_logs_shift_id"), "schedule_change_logs", ["shift_id"], unique=False)
    op.create_index(op.f("ix_schedule_change_logs_created_at"), "schedule_change_logs", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_schedule_change_logs_created_at"), table_name="schedule_change_logs")
    op.drop_index(op.f("ix_schedule_change_logs_shift_id"), table_name="schedule_change_logs")
    op.drop_index(op.f("ix_schedule_change_logs_shift_date"), table_name="schedule_change_logs")
    op.drop_index(op.f("ix_schedule_change_logs_change_type"), table_name="schedule_change_logs")
    op.drop_table("schedule_change_logs")
