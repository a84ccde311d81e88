# api/database.py

import os
from pathlib import Path
from dotenv import load_dotenv

env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    ForeignKey,
    String,
    Text,
    Float,
    func,
    TIMESTAMP,
    Boolean,
    JSON,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

DATABASE_URL = os.getenv("DATABASE_URL")


def make_engine(url: str) -> Engine:
    """
    Creates the SQLAlchemy engine. An in-memory SQLite URL gets a single
    shared connection so every request sees the same database.
    """
    if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/") == "sqlite:"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url)


engine = make_engine(DATABASE_URL) if DATABASE_URL else None
metadata = MetaData()

trees = Table(
    "trees",
    metadata,
    Column("id", String, primary_key=True),
    Column("title", String, nullable=False, default="Skill Tree"),
    Column("password_hash", String, nullable=True),
    Column("created_at", TIMESTAMP(timezone=True), server_default=func.now()),
)

skill_nodes = Table(
    "skill_nodes",
    metadata,
    Column("id", String, primary_key=True),
    Column("tree_id", String, ForeignKey("trees.id", ondelete="CASCADE"), index=True, nullable=False),
    Column("name", String, nullable=False),
    Column("description", Text, nullable=True),
    Column("cost", Float, nullable=True),
    Column("level", Float, nullable=True),
    Column("unlocked", Boolean, nullable=False, default=False),
    Column("position", JSON, nullable=True),
)

skill_edges = Table(
    "skill_edges",
    metadata,
    Column("id", String, primary_key=True),
    Column("tree_id", String, ForeignKey("trees.id", ondelete="CASCADE"), index=True, nullable=False),
    # No foreign keys on the endpoints: edges may arrive before their nodes
    Column("source", String, index=True, nullable=False),
    Column("target", String, index=True, nullable=False),
    Column("animated", Boolean, nullable=True, default=True),
)


def get_engine() -> Engine:
    if engine is None:
        raise RuntimeError("DATABASE_URL environment variable not set.")
    return engine


def init_db(bind: Engine = None):
    """Creates any missing tables."""
    metadata.create_all(bind=bind or get_engine())


def get_db() -> Connection:
    conn = get_engine().connect()
    try:
        yield conn
    finally:
        conn.close()
