"""Users, heist tokens, outcome records, items, point events and notifications.

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


HEIST_STATUS = sa.Enum(
    "SUCCESS",
    "FAILED_INSUFFICIENT_TOKENS",
    "FAILED_COOLDOWN",
    "FAILED_TARGET_PROTECTED",
    "FAILED_INVALID_TARGET",
    "FAILED_INSUFFICIENT_POINTS",
    "FAILED_SHIELD",
    name="heist_status",
)
ITEM_TYPE = sa.Enum("SWORD", "HAMMER", "SHIELD", name="heist_item_type")
EFFECT_TYPE = sa.Enum(
    "INCREASE_STEAL_PERCENTAGE",
    "INCREASE_STEAL_BONUS",
    "REDUCE_THEFT_PERCENTAGE",
    "BLOCK_THEFT_CHANCE",
    name="heist_item_effect_type",
)
POINT_EVENT_TYPE = sa.Enum("HEIST_GAIN", "HEIST_LOSS", name="point_event_type")
NOTIFICATION_TYPE = sa.Enum("HEIST_SUCCESS", "HEIST_VICTIM", "TOKEN_EARNED", name="heist_notification_type")


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("points_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("coins", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("points_balance >= 0", name="ck_users_points_balance_non_negative"),
        sa.CheckConstraint("coins >= 0", name="ck_users_coins_non_negative"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "heist_tokens",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_spent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_earned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_spent_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("balance >= 0", name="ck_heist_tokens_balance_non_negative"),
    )
    op.create_index("ix_heist_tokens_balance", "heist_tokens", ["balance"])

    op.create_table(
        "heists",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("attacker_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("victim_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("points_stolen", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attacker_points_before", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attacker_points_after", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("victim_points_before", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("victim_points_after", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("token_spent", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("status", HEIST_STATUS, nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.Text(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_heists_attacker_created", "heists", ["attacker_id", "created_at"])
    op.create_index("ix_heists_victim_created", "heists", ["victim_id", "created_at"])
    op.create_index("ix_heists_attacker_status", "heists", ["attacker_id", "status"])
    op.create_index("ix_heists_victim_status", "heists", ["victim_id", "status"])

    op.create_table(
        "heist_items",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("item_type", ITEM_TYPE, nullable=False),
        sa.Column("effect_type", EFFECT_TYPE, nullable=False),
        sa.Column("effect_value", sa.Float(), nullable=False),
        sa.Column("coin_cost", sa.Integer(), nullable=False),
        sa.Column("duration_hours", sa.Integer(), nullable=True),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("icon", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_heist_items_item_type", "heist_items", ["item_type"])

    op.create_table(
        "user_heist_items",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("item_id", _uuid(), sa.ForeignKey("heist_items.id", ondelete="CASCADE"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        _timestamp("purchased_at"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("uses_remaining", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    )
    op.create_index("ix_user_heist_items_user_active", "user_heist_items", ["user_id", "is_active"])
    op.create_index("ix_user_heist_items_user_expires", "user_heist_items", ["user_id", "expires_at"])

    op.create_table(
        "heist_item_usages",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("heist_id", _uuid(), sa.ForeignKey("heists.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("item_id", _uuid(), sa.ForeignKey("heist_items.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "user_item_id",
            _uuid(),
            sa.ForeignKey("user_heist_items.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("effect_applied", sa.JSON(), nullable=False),
        _timestamp("used_at"),
    )
    op.create_index("ix_heist_item_usages_heist_id", "heist_item_usages", ["heist_id"])
    op.create_index("ix_heist_item_usages_user_id", "heist_item_usages", ["user_id"])
    op.create_index("ix_heist_item_usages_item_id", "heist_item_usages", ["item_id"])

    op.create_table(
        "user_point_events",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("event_type", POINT_EVENT_TYPE, nullable=False),
        sa.Column("heist_id", _uuid(), sa.ForeignKey("heists.id", ondelete="SET NULL"), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_user_point_events_user_created", "user_point_events", ["user_id", "created_at"])

    op.create_table(
        "heist_notifications",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("heist_id", _uuid(), sa.ForeignKey("heists.id", ondelete="SET NULL"), nullable=True),
        sa.Column("notification_type", NOTIFICATION_TYPE, nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _timestamp("created_at"),
    )
    op.create_index("ix_heist_notifications_user_read", "heist_notifications", ["user_id", "read"])
    op.create_index("ix_heist_notifications_user_created", "heist_notifications", ["user_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_heist_notifications_user_created", table_name="heist_notifications")
    op.drop_index("ix_heist_notifications_user_read", table_name="heist_notifications")
    op.drop_table("heist_notifications")
    op.drop_index("ix_user_point_events_user_created", table_name="user_point_events")
    op.drop_table("user_point_events")
    op.drop_index("ix_heist_item_usages_item_id", table_name="heist_item_usages")
    op.drop_index("ix_heist_item_usages_user_id", table_name="heist_item_usages")
    op.drop_index("ix_heist_item_usages_heist_id", table_name="heist_item_usages")
    op.drop_table("heist_item_usages")
    op.drop_index("ix_user_heist_items_user_expires", table_name="user_heist_items")
    op.drop_index("ix_user_heist_items_user_active", table_name="user_heist_items")
    op.drop_table("user_heist_items")
    op.drop_index("ix_heist_items_item_type", table_name="heist_items")
    op.drop_table("heist_items")
    op.drop_index("ix_heists_victim_status", table_name="heists")
    op.drop_index("ix_heists_attacker_status", table_name="heists")
    op.drop_index("ix_heists_victim_created", table_name="heists")
    op.drop_index("ix_heists_attacker_created", table_name="heists")
    op.drop_table("heists")
    op.drop_index("ix_heist_tokens_balance", table_name="heist_tokens")
    op.drop_table("heist_tokens")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")

    bind = op.get_bind()
    for enum in (NOTIFICATION_TYPE, POINT_EVENT_TYPE, EFFECT_TYPE, ITEM_TYPE, HEIST_STATUS):
        enum.drop(bind, checkfirst=True)
