"""
Database schema for the ScholarGuard SQLite record store.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Column, Index, Integer, MetaData, Table, Text, text

# Using a standard naming convention for database objects
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)

# Timestamps are stored as ISO-8601 text with a UTC offset
scholarships_table = Table(
    "scholarships",
    metadata,
    Column("id", Text, primary_key=True),
    Column("dedup_key", Text, nullable=False, index=True),
    Column("title", Text, nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("eligibility", Text, nullable=False, default=""),
    Column("amount", Text, nullable=False, default=""),
    Column("deadline", Text),
    Column("provider", Text, nullable=False, default=""),
    Column("category", Text, nullable=False, default="Other"),
    Column("application_link", Text, nullable=False),
    Column("source_url", Text, nullable=False, default=""),
    Column("source_name", Text, nullable=False, default="", index=True),
    Column("is_active", Boolean, nullable=False, default=True, index=True),
    Column("link_status", Text, nullable=False, default="valid", index=True),
    Column("quality_score", Integer, nullable=False, default=0),
    Column("validation_summary", Text, nullable=False, default=""),
    Column("last_validated", Text),
    Column("created_at", Text, nullable=False),
    Column("updated_at", Text, nullable=False),
)

# At most one active record per deduplication key
Index(
    "uq_scholarships_active_dedup_key",
    scholarships_table.c.dedup_key,
    unique=True,
    sqlite_where=text("is_active = 1"),
)
