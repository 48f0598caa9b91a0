"""Declarative base shared by every fee distributor table."""

from sqlalchemy import MetaData
from sqlalchemy.orm import DeclarativeBase

# Same index and unique names as alembic/versions/001_initial_schema.py.
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
}


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)
