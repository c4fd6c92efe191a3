"""
Database engine initialisation and table definitions.
"""

import sys

from sqlalchemy import (
    Boolean, Column, Index, Integer, MetaData, String, Table, Text,
    create_engine, inspect, text,
)
from sqlalchemy.pool import StaticPool

from medvault.config import get_env

metadata = MetaData()

parties = Table(
    "parties", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("display_name", String(200), nullable=False),
    Column("role", String(20), nullable=False),
    Column("api_key", String(128), nullable=False, unique=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("record_cid", String(64)),
    Column("created_at", String(40), nullable=False),
)

consent_grants = Table(
    "consent_grants", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("holder_id", Integer, nullable=False, index=True),
    Column("requester_id", Integer, nullable=False, index=True),
    Column("contract_address", String(64)),
    Column("approved_fields", Text, nullable=False, default="[]"),
    Column("status", String(20), nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)

# At most one active grant per pair, enforced by the database as well.
Index(
    "uq_consent_grants_active_pair",
    consent_grants.c.holder_id, consent_grants.c.requester_id,
    unique=True,
    sqlite_where=consent_grants.c.status == "active",
    postgresql_where=consent_grants.c.status == "active",
)

access_requests = Table(
    "access_requests", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("holder_id", Integer, nullable=False, index=True),
    Column("requester_id", Integer, nullable=False, index=True),
    Column("requested_fields", Text, nullable=False),
    Column("status", String(20), nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)

# At most one pending request per pair.
Index(
    "uq_access_requests_pending_pair",
    access_requests.c.holder_id, access_requests.c.requester_id,
    unique=True,
    sqlite_where=access_requests.c.status == "pending",
    postgresql_where=access_requests.c.status == "pending",
)

medical_records = Table(
    "medical_records", metadata,
    Column("content_id", String(64), primary_key=True),
    Column("holder_id", Integer, nullable=False, index=True),
    Column("body", Text, nullable=False),
    Column("created_at", String(40), nullable=False),
)


def create_db_engine(db_uri: str):
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if db_uri in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            db_uri,
            future=True,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_engine(db_uri, echo=False, future=True)


def init_engine():
    """Create a SQLAlchemy engine from DB_URI and verify the connection."""
    db_uri = get_env("DB_URI")
    engine = create_db_engine(db_uri)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        print("ERROR: could not connect to DB:", e, file=sys.stderr)
        sys.exit(1)
    print("[init] Connected to DB.")
    return engine


def init_schema(engine) -> None:
    """Create all tables and indexes that do not exist yet."""
    metadata.create_all(engine)


def health_check(engine) -> bool:
    """Return True when the database answers and every table exists."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            existing = set(inspect(conn).get_table_names())
    except Exception:
        return False
    return set(metadata.tables).issubset(existing)
