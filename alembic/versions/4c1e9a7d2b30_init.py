"""init

Revision ID: 4c1e9a7d2b30
Revises:
Create Date: 2026-10-19 10:42:17.318204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "4c1e9a7d2b30"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("guid", sa.String(512), primary_key=True),
        sa.Column("google_sub", sa.String(512), nullable=False),
        sa.Column("email", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_users_google_sub", "users", ["google_sub"], unique=True)

    op.create_table(
        "app_sessions",
        sa.Column("session_group", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(512), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_app_sessions_user_id", "app_sessions", ["user_id"])
    op.create_index("idx_app_sessions_expires", "app_sessions", ["expires_at"])

    op.create_table(
        "oauth_requests",
        sa.Column("oauth_state", sa.String(64), primary_key=True),
        sa.Column("pkce_verifier", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_oauth_requests_expires", "oauth_requests", ["expires_at"])

    # One row per user, upserted on every authorization exchange and refresh
    op.create_table(
        "google_tokens",
        sa.Column("user_id", sa.String(512), primary_key=True),
        sa.Column("access_token", sa.String(2048), nullable=False),
        sa.Column("refresh_token", sa.String(512), nullable=False, server_default=""),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "user_settings",
        sa.Column("user_id", sa.String(512), primary_key=True),
        sa.Column("ga_property_id", sa.String(32), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("users")
    op.drop_table("app_sessions")
    op.drop_table("oauth_requests")
    op.drop_table("google_tokens")
    op.drop_table("user_settings")
