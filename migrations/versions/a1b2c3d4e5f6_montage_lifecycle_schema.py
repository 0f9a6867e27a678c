"""montage lifecycle schema

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "a1b2c3d4e5f6"
down_revision = None
branch_labels = None
depends_on = None


sample_status = sa.Enum("none", "to_send", "sent", "delivered", name="sample_status")
settlement_status = sa.Enum("draft", "approved", "paid", name="settlement_status")
settlement_rule = sa.Enum("MEASUREMENT_FEE", "LABOR", "ADJUSTMENT", name="settlement_rule")
beneficiary_type = sa.Enum("ARCHITECT", "PARTNER", name="beneficiary_type")
commission_status = sa.Enum("pending", "approved", "paid", name="commission_status")
order_status = sa.Enum("awaiting_payment", "paid", "cancelled", name="order_status")


def upgrade():
    op.create_table(
        "user_account",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=120), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=30), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("measurement_rate", sa.Numeric(10, 2), nullable=True),
        sa.Column("commission_rate", sa.Numeric(10, 4), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "customer",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=30), nullable=True),
        sa.Column("tax_id", sa.String(length=20), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tax_id", name="uq_customer_tax_id"),
    )
    op.create_index("ix_customer_email", "customer", ["email"])
    op.create_index("ix_customer_phone", "customer", ["phone"])

    op.create_table(
        "product",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sku", sa.String(length=60), nullable=False),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sku"),
    )

    op.create_table(
        "shop_order",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(length=30), nullable=False),
        sa.Column("status", order_status, nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("montage_id", sa.Integer(), nullable=True),
        sa.Column("total_net", sa.Integer(), nullable=False),
        sa.Column("total_gross", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customer.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_shop_order_montage_id", "shop_order", ["montage_id"])

    op.create_table(
        "shop_order_item",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("sku", sa.String(length=60), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Integer(), nullable=False),
        sa.Column("tax_rate", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["shop_order.id"]),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "montage",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("display_id", sa.String(length=20), nullable=False),
        sa.Column("client_name", sa.String(length=160), nullable=False),
        sa.Column("contact_phone", sa.String(length=30), nullable=True),
        sa.Column("contact_email", sa.String(length=255), nullable=True),
        sa.Column("installation_address", sa.String(length=255), nullable=True),
        sa.Column("installation_city", sa.String(length=120), nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("installer_id", sa.Integer(), nullable=True),
        sa.Column("measurer_id", sa.Integer(), nullable=True),
        sa.Column("architect_id", sa.Integer(), nullable=True),
        sa.Column("partner_id", sa.Integer(), nullable=True),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("floor_area", sa.Float(), nullable=True),
        sa.Column("is_housing_vat", sa.Boolean(), nullable=False),
        sa.Column("material_details", sa.Text(), nullable=True),
        sa.Column("sample_status", sample_status, nullable=False),
        sa.Column("measurement_date", sa.DateTime(), nullable=True),
        sa.Column("scheduled_installation_at", sa.DateTime(), nullable=True),
        sa.Column("scheduled_installation_end_at", sa.DateTime(), nullable=True),
        sa.Column("calendar_event_id", sa.String(length=255), nullable=True),
        sa.Column("access_token", sa.String(length=64), nullable=True),
        sa.Column("payment_order_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "(completed_at IS NOT NULL AND status = 'completed') "
            "OR (completed_at IS NULL AND status <> 'completed')",
            name="ck_montage_completed_at",
        ),
        sa.ForeignKeyConstraint(["installer_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["measurer_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["architect_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["partner_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customer.id"]),
        sa.ForeignKeyConstraint(["payment_order_id"], ["shop_order.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("display_id"),
        sa.UniqueConstraint("access_token"),
    )
    op.create_index("ix_montage_status", "montage", ["status"])
    op.create_index("ix_montage_installer_id", "montage", ["installer_id"])
    op.create_index("ix_montage_measurer_id", "montage", ["measurer_id"])
    op.create_index("ix_montage_architect_id", "montage", ["architect_id"])
    op.create_index("ix_montage_partner_id", "montage", ["partner_id"])
    op.create_index("ix_montage_status_updated", "montage", ["status", "updated_at"])

    with op.batch_alter_table("shop_order", schema=None) as batch_op:
        batch_op.create_foreign_key("fk_shop_order_montage_id", "montage", ["montage_id"], ["id"])

    op.create_table(
        "montage_attachment",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("montage_id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(length=40), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("url", sa.String(length=500), nullable=False),
        sa.Column("uploaded_by_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["montage_id"], ["montage.id"]),
        sa.ForeignKeyConstraint(["uploaded_by_id"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_montage_attachment_montage_id", "montage_attachment", ["montage_id"])

    op.create_table(
        "montage_checklist_item",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("montage_id", sa.Integer(), nullable=False),
        sa.Column("template_id", sa.String(length=60), nullable=True),
        sa.Column("label", sa.String(length=255), nullable=False),
        sa.Column("allow_attachment", sa.Boolean(), nullable=False),
        sa.Column("completed", sa.Boolean(), nullable=False),
        sa.Column("order_index", sa.Integer(), nullable=False),
        sa.Column("attachment_id", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["montage_id"], ["montage.id"]),
        sa.ForeignKeyConstraint(["attachment_id"], ["montage_attachment.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_montage_checklist_item_montage_id", "montage_checklist_item", ["montage_id"])

    op.create_table(
        "montage_note",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("montage_id", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("is_internal", sa.Boolean(), nullable=False),
        sa.Column("created_by_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["montage_id"], ["montage.id"]),
        sa.ForeignKeyConstraint(["created_by_id"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_montage_note_montage_id", "montage_note", ["montage_id"])

    op.create_table(
        "settlement",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("montage_id", sa.Integer(), nullable=False),
        sa.Column("installer_id", sa.Integer(), nullable=False),
        sa.Column("status", settlement_status, nullable=False),
        sa.Column("total_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["montage_id"], ["montage.id"]),
        sa.ForeignKeyConstraint(["installer_id"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("montage_id", name="uq_settlement_montage"),
    )

    op.create_table(
        "settlement_line",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("settlement_id", sa.Integer(), nullable=False),
        sa.Column("rule", settlement_rule, nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["settlement_id"], ["settlement.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("settlement_id", "rule", name="uq_settlement_line_rule"),
    )

    op.create_table(
        "commission",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("montage_id", sa.Integer(), nullable=False),
        sa.Column("beneficiary_type", beneficiary_type, nullable=False),
        sa.Column("beneficiary_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("rate", sa.Numeric(10, 4), nullable=False),
        sa.Column("area", sa.Float(), nullable=False),
        sa.Column("status", commission_status, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_commission_amount_positive"),
        sa.ForeignKeyConstraint(["montage_id"], ["montage.id"]),
        sa.ForeignKeyConstraint(["beneficiary_id"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("montage_id", "beneficiary_type", name="uq_commission_montage_beneficiary"),
    )
    op.create_index("ix_commission_montage_id", "commission", ["montage_id"])
    op.create_index("ix_commission_beneficiary_id", "commission", ["beneficiary_id"])

    op.create_table(
        "app_setting",
        sa.Column("key", sa.String(length=80), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_by_id", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["updated_by_id"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(length=60), nullable=False),
        sa.Column("details", sa.Text(), nullable=False),
        sa.Column("montage_id", sa.Integer(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["montage_id"], ["montage.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_log_action", "audit_log", ["action"])
    op.create_index("ix_audit_log_montage_created", "audit_log", ["montage_id", "created_at"])


def downgrade():
    op.drop_index("ix_audit_log_montage_created", table_name="audit_log")
    op.drop_index("ix_audit_log_action", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_table("app_setting")
    op.drop_index("ix_commission_beneficiary_id", table_name="commission")
    op.drop_index("ix_commission_montage_id", table_name="commission")
    op.drop_table("commission")
    op.drop_table("settlement_line")
    op.drop_table("settlement")
    op.drop_index("ix_montage_note_montage_id", table_name="montage_note")
    op.drop_table("montage_note")
    op.drop_index("ix_montage_checklist_item_montage_id", table_name="montage_checklist_item")
    op.drop_table("montage_checklist_item")
    op.drop_index("ix_montage_attachment_montage_id", table_name="montage_attachment")
    op.drop_table("montage_attachment")
    with op.batch_alter_table("shop_order", schema=None) as batch_op:
        batch_op.drop_constraint("fk_shop_order_montage_id", type_="foreignkey")
    op.drop_table("montage")
    op.drop_table("shop_order_item")
    op.drop_index("ix_shop_order_montage_id", table_name="shop_order")
    op.drop_table("shop_order")
    op.drop_table("product")
    op.drop_index("ix_customer_phone", table_name="customer")
    op.drop_index("ix_customer_email", table_name="customer")
    op.drop_table("customer")
    op.drop_table("user_account")
    bind = op.get_bind()
    for enum_type in (
        order_status,
        commission_status,
        beneficiary_type,
        settlement_rule,
        settlement_status,
        sample_status,
    ):
        enum_type.drop(bind, checkfirst=True)
