"""Google OAuth 2.0 data models.

Provides SQLAlchemy models for login request state and the provider token pair
stored for each user.
"""
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from ga_dashboard.model.base import Base, dialect_insert, str2048


class OAuthRequest(Base):
    """Login request state with the PKCE verifier.

    Created when the user is sent to Google and consumed by the callback.
    """

    __tablename__ = "oauth_requests"

    oauth_state: Mapped[str] = mapped_column(String(64), primary_key=True)
    pkce_verifier: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )


class GoogleToken(Base):
    """Google access and refresh token of a user.

    There is at most one row per user. The refresh token is an empty string when
    Google never issued one.
    """

    __tablename__ = "google_tokens"

    user_id: Mapped[str] = mapped_column(String(512), primary_key=True)
    access_token: Mapped[str2048]
    refresh_token: Mapped[str] = mapped_column(
        String(512), nullable=False, default=""
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )


def upsert_google_token_stmt(
    dialect_name: str,
    user_id: str,
    access_token: str,
    refresh_token: str,
    expires_at: datetime,
    updated_at: datetime,
):
    """Create an upsert statement for stored Google tokens.

    Replaces the access token and expiry of an existing user. The stored refresh token
    is only replaced when a non-empty one is given, because Google omits it on repeat
    consent.
    """
    insert = dialect_insert(dialect_name)

    set_: Dict[str, Any] = {
        "access_token": access_token,
        "expires_at": expires_at,
        "updated_at": updated_at,
    }
    if refresh_token:
        set_["refresh_token"] = refresh_token

    return (
        insert(GoogleToken)
        .values(
            [
                {
                    "user_id": user_id,
                    "access_token": access_token,
                    "refresh_token": refresh_token or "",
                    "expires_at": expires_at,
                    "updated_at": updated_at,
                }
            ]
        )
        .on_conflict_do_update(
            index_elements=["user_id"],
            set_=set_,
        )
    )
