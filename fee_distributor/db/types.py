"""Column Types — exact decimal amounts on every backend.

Invariants:
    - Amount columns always round-trip as Decimal, never float
    - PostgreSQL stores NUMERIC(38, 18); SQLite stores the plain decimal string

Design Decisions:
    - TypeDecorator over bare Numeric: SQLite has no exact decimal storage and
      would silently round-trip through float; amount arithmetic therefore
      happens in Python (core/amounts.py), never in SQL
"""

from decimal import Decimal

from sqlalchemy import Numeric, String
from sqlalchemy.types import TypeDecorator

from fee_distributor.core.amounts import as_decimal, format_amount


class Amount(TypeDecorator):
    """Exact decimal amount column."""

    impl = Numeric(38, 18)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(80))
        return dialect.type_descriptor(Numeric(38, 18, asdecimal=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = as_decimal(value)
        if dialect.name == "sqlite":
            return format_amount(value)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, Decimal):
            return value
        return Decimal(str(value))
