"""排班條目：schedule_entries

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "schedule_entries",
        sa.Column("id", sa.String(36), nullable=False, comment="UUID，永久不變"),
        sa.Column("client_name", sa.String(200), nullable=False, comment="客戶名稱"),
        sa.Column("building_name", sa.String(200), nullable=False, comment="案場 / 大樓名稱"),
        sa.Column("cleaner_name", sa.String(100), nullable=False, comment="相容舊版：第一位清潔員"),
        sa.Column("cleaner_names", sa.JSON(), nullable=True, comment="指派清潔員（至少一位）"),
        sa.Column("cleaner_ids", sa.JSON(), nullable=True, comment="清潔員 ID"),
        sa.Column("cleaner_hours", sa.JSON(), nullable=True, comment="個別清潔員工時"),
        sa.Column("hours", sa.Float(), nullable=False, server_default="0", comment="工時"),
        sa.Column("day", sa.String(10), nullable=False, comment="monday ~ sunday"),
        sa.Column("date", sa.String(10), nullable=False, comment="YYYY-MM-DD"),
        sa.Column("start_time", sa.String(5), nullable=True, comment="HH:MM"),
        sa.Column("end_time", sa.String(5), nullable=True, comment="HH:MM"),
        sa.Column("status", sa.String(20), nullable=False, server_default="scheduled", comment="scheduled / in-progress / completed / cancelled"),
        sa.Column("week_id", sa.String(10), nullable=False, comment="該週週一 YYYY-MM-DD"),
        sa.Column("notes", sa.Text(), nullable=True, comment="備註"),
        sa.Column("priority", sa.String(10), nullable=False, server_default="medium", comment="low / medium / high"),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("recurring_id", sa.String(64), nullable=True),
        sa.Column("estimated_duration", sa.Integer(), nullable=True),
        sa.Column("actual_duration", sa.Integer(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.Column("is_project", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("project_id", sa.String(64), nullable=True),
        sa.Column("project_name", sa.String(200), nullable=True),
        sa.Column("address", sa.String(500), nullable=True),
        sa.Column("payment_type", sa.String(20), nullable=False, server_default="hourly", comment="hourly / flat_rate"),
        sa.Column("flat_rate_amount", sa.Float(), nullable=False, server_default="0", comment="包案金額（不乘工時）"),
        sa.Column("hourly_rate", sa.Float(), nullable=False, server_default="15", comment="時薪"),
        sa.Column("overtime_rate", sa.Float(), nullable=True, comment="加班倍率，預設 1.5"),
        sa.Column("bonus_amount", sa.Float(), nullable=False, server_default="0", comment="獎金"),
        sa.Column("deductions", sa.Float(), nullable=False, server_default="0", comment="扣款"),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_schedule_entries_date"), "schedule_entries", ["date"], unique=False)
    op.create_index(op.f("ix_schedule_entries_week_id"), "schedule_entries", ["week_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_schedule_entries_week_id"), table_name="schedule_entries")
    op.drop_index(op.f("ix_schedule_entries_date"), table_name="schedule_entries")
    op.drop_table("schedule_entries")
