"""
SQLAlchemy Base Model Configuration
PaperTrade Platform
"""

import re
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, MetaData, Numeric
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column
from sqlalchemy.sql import func


# Constraint naming convention
metadata = MetaData(naming_convention={
    "pk": "pk_%(table_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "ix": "ix_%(column_0_label)s",
})

# Rupee amounts, two decimal places
Money = Numeric(18, 2)

# Weighted average prices keep sub-paisa precision
Price = Numeric(18, 6)

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


class Base(DeclarativeBase):
    """
    Declarative base for every table.

    Models without an explicit __tablename__ get the snake_case form of
    their class name with the "Model" suffix removed, so StrategyLogModel
    maps to "strategy_log".
    """

    metadata = metadata

    @declared_attr.directive
    def __tablename__(cls) -> str:
        name = cls.__name__
        if name.endswith("Model"):
            name = name[:-len("Model")]
        return _CAMEL_BOUNDARY.sub("_", name).lower()


class TimestampMixin:
    """Row creation and last-update times maintained by the database."""

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=func.now())
