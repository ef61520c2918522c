"""create lead engine tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_sales_rep",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("specialization", sa.Text(), nullable=True),
        sa.Column("conversion_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("is_on_leave", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("leave_end_date", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "user_id", name="uq_crm_sales_rep_tenant_user"),
    )
    op.create_index("ix_crm_sales_rep_tenant_id", "crm_sales_rep", ["tenant_id"], unique=False)

    op.create_table(
        "crm_contact",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("company", sa.Text(), nullable=True),
        sa.Column("industry", sa.Text(), nullable=True),
        sa.Column("source", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="New"),
        sa.Column("score", sa.Integer(), nullable=True),
        sa.Column("score_components", sa.JSON(), nullable=True),
        sa.Column("score_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assigned_rep_id", sa.Uuid(), nullable=True),
        sa.Column("last_contacted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["assigned_rep_id"], ["crm_sales_rep.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_contact_tenant_id", "crm_contact", ["tenant_id"], unique=False)
    op.create_index("ix_crm_contact_tenant_type", "crm_contact", ["tenant_id", "type"], unique=False)
    op.create_index("ix_crm_contact_assigned_rep_id", "crm_contact", ["assigned_rep_id"], unique=False)

    op.create_table(
        "crm_interaction",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_interaction_contact_id", "crm_interaction", ["contact_id"], unique=False)

    op.create_table(
        "crm_deal",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("rep_id", sa.Uuid(), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("value", sa.Numeric(18, 2), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["rep_id"], ["crm_sales_rep.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_deal_tenant_id", "crm_deal", ["tenant_id"], unique=False)
    op.create_index("ix_crm_deal_contact_id", "crm_deal", ["contact_id"], unique=False)
    op.create_index("ix_crm_deal_rep_id", "crm_deal", ["rep_id"], unique=False)

    op.create_table(
        "crm_nurture_template",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "name", name="uq_crm_nurture_template_tenant_name"),
    )
    op.create_index("ix_crm_nurture_template_tenant_id", "crm_nurture_template", ["tenant_id"], unique=False)

    op.create_table(
        "crm_nurture_step",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("template_id", sa.Uuid(), nullable=False),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("day_offset", sa.Integer(), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(["template_id"], ["crm_nurture_template.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("template_id", "step_order", name="uq_crm_nurture_step_template_order"),
    )

    op.create_table(
        "crm_nurture_enrollment",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("template_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("enrolled_by_user_id", sa.String(length=64), nullable=True),
        sa.Column("enrolled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_steps", sa.Integer(), nullable=False),
        sa.Column("completed_steps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_steps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["template_id"], ["crm_nurture_template.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_nurture_enrollment_tenant_id", "crm_nurture_enrollment", ["tenant_id"], unique=False)
    op.create_index("ix_crm_nurture_enrollment_contact_id", "crm_nurture_enrollment", ["contact_id"], unique=False)
    op.create_index(
        "uq_crm_nurture_enrollment_open_pair",
        "crm_nurture_enrollment",
        ["contact_id", "template_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('ACTIVE', 'PAUSED')"),
        sqlite_where=sa.text("status IN ('ACTIVE', 'PAUSED')"),
    )

    op.create_table(
        "crm_scheduled_step",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("enrollment_id", sa.Uuid(), nullable=False),
        sa.Column("step_id", sa.Uuid(), nullable=False),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["enrollment_id"], ["crm_nurture_enrollment.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["step_id"], ["crm_nurture_step.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("enrollment_id", "step_order", name="uq_crm_scheduled_step_enrollment_order"),
    )
    op.create_index(
        "ix_crm_scheduled_step_status_scheduled_at",
        "crm_scheduled_step",
        ["status", "scheduled_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_scheduled_step_status_scheduled_at", table_name="crm_scheduled_step")
    op.drop_table("crm_scheduled_step")
    op.drop_index("uq_crm_nurture_enrollment_open_pair", table_name="crm_nurture_enrollment")
    op.drop_index("ix_crm_nurture_enrollment_contact_id", table_name="crm_nurture_enrollment")
    op.drop_index("ix_crm_nurture_enrollment_tenant_id", table_name="crm_nurture_enrollment")
    op.drop_table("crm_nurture_enrollment")
    op.drop_table("crm_nurture_step")
    op.drop_index("ix_crm_nurture_template_tenant_id", table_name="crm_nurture_template")
    op.drop_table("crm_nurture_template")
    op.drop_index("ix_crm_deal_rep_id", table_name="crm_deal")
    op.drop_index("ix_crm_deal_contact_id", table_name="crm_deal")
    op.drop_index("ix_crm_deal_tenant_id", table_name="crm_deal")
    op.drop_table("crm_deal")
    op.drop_index("ix_crm_interaction_contact_id", table_name="crm_interaction")
    op.drop_table("crm_interaction")
    op.drop_index("ix_crm_contact_assigned_rep_id", table_name="crm_contact")
    op.drop_index("ix_crm_contact_tenant_type", table_name="crm_contact")
    op.drop_index("ix_crm_contact_tenant_id", table_name="crm_contact")
    op.drop_table("crm_contact")
    op.drop_index("ix_crm_sales_rep_tenant_id", table_name="crm_sales_rep")
    op.drop_table("crm_sales_rep")
