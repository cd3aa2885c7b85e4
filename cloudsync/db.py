from __future__ import annotations
import re
from sqlalchemy import create_engine, Column, Integer, String, Text, MetaData, Table
from sqlalchemy.engine import Engine

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

def check_table_name(name: str) -> str:
    # table name is interpolated into SQL text, so only plain identifiers pass
    if not _IDENTIFIER.match(name or ""):
        raise ValueError(f"invalid destination table name: {name!r}")
    return name

def make_engine(url: str, pool_size: int = 5) -> Engine:
    return create_engine(url, pool_pre_ping=True, pool_size=pool_size)

def destination_table(name: str, metadata: MetaData | None = None) -> Table:
    schema, _, table = check_table_name(name).rpartition(".")
    return Table(
        table,
        metadata or MetaData(),
        Column("id", Integer, primary_key=True, autoincrement=False),
        Column("name", String(255), nullable=True),
        Column("description", Text, nullable=True),
        schema=schema or None,
    )

def init_db(engine: Engine, table_name: str) -> None:
    table = destination_table(table_name)
    table.metadata.create_all(bind=engine)
