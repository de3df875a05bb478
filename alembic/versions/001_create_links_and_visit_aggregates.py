"""Create users, links and visit_aggregates tables.

Revision ID: 001
Revises:
Create Date: 2024-05-02

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

BROWSER_COLUMNS = ("chrome", "edge", "firefox", "ie", "opera", "other", "safari")
OS_COLUMNS = ("android", "ios", "linux", "macos", "other", "windows")

COUNTER_JSON = sa.JSON().with_variant(JSONB(), "postgresql")


def _counter(name: str, comment: str) -> sa.Column:
    return sa.Column(name, sa.Integer(), nullable=False, server_default="0", comment=comment)


def upgrade() -> None:
    """Create the link and visit aggregate tables."""
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column(
            "role",
            sa.String(length=20),
            nullable=False,
            server_default="user",
            comment="'user' or 'admin'; admins may read stats of any link",
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_users")),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "links",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column(
            "address",
            sa.String(length=64),
            nullable=False,
            comment="Short address for the URL (e.g., 'abc123' or 'my-custom-slug')",
        ),
        sa.Column("target", sa.Text(), nullable=False, comment="The URL to redirect to"),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column(
            "visit_count",
            sa.Integer(),
            nullable=False,
            server_default="0",
            comment="Total visit count (denormalized for quick access, not authoritative)",
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(
            ["user_id"],
            ["users.id"],
            name=op.f("fk_links_user_id_users"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_links")),
    )
    op.create_index(op.f("ix_links_user_id"), "links", ["user_id"])
    op.create_index(op.f("ix_links_address"), "links", ["address"], unique=True)

    op.create_table(
        "visit_aggregates",
        sa.Column("link_id", sa.Uuid(), nullable=False),
        sa.Column(
            "hour_bucket",
            sa.DateTime(),
            nullable=False,
            comment="Visit time truncated to the hour (naive UTC)",
        ),
        sa.Column(
            "user_id",
            sa.Uuid(),
            nullable=False,
            comment="Owner of the link at the time of the visit",
        ),
        _counter("total", "Visits in this hour"),
        *[_counter(f"br_{name}", f"{name} browser visits") for name in BROWSER_COLUMNS],
        *[_counter(f"os_{name}", f"{name} OS visits") for name in OS_COLUMNS],
        sa.Column(
            "countries",
            COUNTER_JSON,
            nullable=False,
            comment="Lowercase country code (or 'unknown') to visit count",
        ),
        sa.Column(
            "referrers",
            COUNTER_JSON,
            nullable=False,
            comment="Referrer host with dots replaced by [dot] (or 'direct') to visit count",
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(
            ["link_id"],
            ["links.id"],
            name=op.f("fk_visit_aggregates_link_id_links"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("link_id", "hour_bucket", name=op.f("pk_visit_aggregates")),
    )
    op.create_index(op.f("ix_visit_aggregates_user_id"), "visit_aggregates", ["user_id"])


def downgrade() -> None:
    """Drop the link and visit aggregate tables."""
    op.drop_index(op.f("ix_visit_aggregates_user_id"), table_name="visit_aggregates")
    op.drop_table("visit_aggregates")
    op.drop_index(op.f("ix_links_address"), table_name="links")
    op.drop_index(op.f("ix_links_user_id"), table_name="links")
    op.drop_table("links")
    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
