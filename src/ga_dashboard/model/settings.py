"""Per-user reporting target data model."""
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String, update
from sqlalchemy.orm import Mapped, mapped_column

from ga_dashboard.model.base import Base, dialect_insert


class UserSettings(Base):
    """Reporting target selected by a user.

    `ga_property_id` holds the numeric GA4 property id, or null when the selection
    has been cleared.
    """

    __tablename__ = "user_settings"

    user_id: Mapped[str] = mapped_column(String(512), primary_key=True)
    ga_property_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )


def upsert_user_settings_stmt(
    dialect_name: str, user_id: str, ga_property_id: str, updated_at: datetime
):
    insert = dialect_insert(dialect_name)
    return (
        insert(UserSettings)
        .values(
            [
                {
                    "user_id": user_id,
                    "ga_property_id": ga_property_id,
                    "updated_at": updated_at,
                }
            ]
        )
        .on_conflict_do_update(
            index_elements=["user_id"],
            set_={"ga_property_id": ga_property_id, "updated_at": updated_at},
        )
    )


def clear_user_settings_stmt(user_id: str, updated_at: datetime):
    return (
        update(UserSettings)
        .where(UserSettings.user_id == user_id)
        .values(ga_property_id=None, updated_at=updated_at)
    )
