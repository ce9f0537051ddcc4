"""Google user identity and app session data models.

Maps Google OpenID Connect subjects to stable user GUIDs and tracks the signed-in
sessions issued to those users by the authorization exchange.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column
from ulid import ULID

from ga_dashboard.model.base import Base, dialect_insert, guidpk, str512


class User(Base):
    """Google identity keyed on the OpenID Connect `sub` claim."""

    __tablename__ = "users"

    guid: Mapped[guidpk]
    google_sub: Mapped[str512]
    email: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (Index("idx_users_google_sub", "google_sub", unique=True),)


class AppSession(Base):
    """Signed-in session issued after a successful authorization exchange.

    The client holds a signed JWT whose `grp` claim is the session group. Deleting the
    row signs the session out even if the JWT itself has not yet expired.
    """

    __tablename__ = "app_sessions"

    session_group: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str512]
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (Index("idx_app_sessions_user_id", "user_id"),)


def upsert_user_stmt(
    dialect_name: str, google_sub: str, email: Optional[str], created_at: datetime
):
    """Create an upsert statement for user records.

    Refreshes the email of an existing Google subject or inserts a new user,
    returning the GUID of the user either way.
    """
    insert = dialect_insert(dialect_name)
    return (
        insert(User)
        .values(
            [
                {
                    "guid": str(ULID()),
                    "google_sub": google_sub,
                    "email": email,
                    "created_at": created_at,
                }
            ]
        )
        .on_conflict_do_update(
            index_elements=["google_sub"],
            set_={"email": email},
        )
        .returning(User.guid)
    )
