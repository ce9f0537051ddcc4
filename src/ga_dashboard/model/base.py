from sqlalchemy import String, orm
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import mapped_column

from typing_extensions import Annotated

str512 = Annotated[str, 512]
str2048 = Annotated[str, 2048]
guidpk = Annotated[str, mapped_column(String(512), primary_key=True)]


class Base(orm.DeclarativeBase):
    type_annotation_map = {
        str512: String(512),
        str2048: String(2048),
        guidpk: String(512),
    }


def dialect_insert(dialect_name: str):
    """Return the insert construct that supports ON CONFLICT for the given dialect."""
    if dialect_name == "sqlite":
        return sqlite.insert
    return postgresql.insert
