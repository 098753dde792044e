"""Database-agnostic type definitions for SQLAlchemy models.

This module provides type definitions that work with both SQLite and PostgreSQL.
"""
from sqlalchemy import JSON, Numeric
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

# Use JSON instead of JSONB for cross-database compatibility
# JSONB is PostgreSQL-specific, JSON works with both SQLite and PostgreSQL
JSONType = JSON

# UUID type that works with both databases
UUIDType = PG_UUID

# Monetary amounts. Four decimals so that line amounts and subtotals are
# stored unrounded; only tax is rounded to cents.
MoneyType = Numeric(14, 4, asdecimal=True)

# Quantities and rates keep more precision than money
QuantityType = Numeric(14, 4, asdecimal=True)
RateType = Numeric(6, 3, asdecimal=True)
