# marketplace/db/base.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import Enum, MetaData
from sqlalchemy.orm import DeclarativeBase

# Use naming convention for constraints
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_N_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    metadata = MetaData(naming_convention=convention)

    def to_dict(self, exclude: Optional[List[str]] = None) -> Dict[str, Any]:
        """Convert model instance to dictionary."""
        exclude = exclude or []
        result = {}
        for column in self.__table__.columns:
            if column.name in exclude:
                continue
            value = getattr(self, column.key)
            if hasattr(value, "isoformat"):
                value = value.isoformat()
            result[column.name] = value
        return result

    def __repr__(self) -> str:
        attrs = []
        for column in self.__table__.columns:
            if column.name in ("created_at", "updated_at"):
                continue
            value = getattr(self, column.key)
            if value is not None:
                attrs.append(f"{column.name}={value!r}")
        return f"<{self.__class__.__name__}({', '.join(attrs)})>"


def enum_column_type(enum_cls, name: str) -> Enum:
    """Postgres enum type holding the string values of a Python ``str`` enum."""
    return Enum(*[member.value for member in enum_cls], name=name)


__all__ = ["Base", "enum_column_type"]
