"""
Table definitions for the import pipeline.

The tables are declared with SQLAlchemy Core so the same definitions back
PostgreSQL in production and SQLite in the test suite.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    Index,
)
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

metadata = MetaData()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


import_jobs = Table(
    "import_jobs",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(255)),
    Column("module", String(50), nullable=False, default="baseoff"),
    Column("file_name", String(500), nullable=False),
    Column("storage_path", Text, nullable=False),
    Column("size_mb", Numeric(12, 3, asdecimal=False)),
    Column("file_hash", String(64)),
    Column("status", String(32), nullable=False, default="uploaded"),
    Column("total_rows", Integer),
    Column("processed_rows", Integer, nullable=False, default=0),
    Column("last_processed_offset", Integer, nullable=False, default=0),
    Column("errors_count", Integer, nullable=False, default=0),
    Column("chunk_metadata", JSON),
    Column("error_log", JSON, nullable=False, default=list),
    Column("processing_started_at", DateTime(timezone=True)),
    Column("processing_ended_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Column("updated_at", DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow),
)
Index("idx_import_jobs_status", import_jobs.c.status)
Index("idx_import_jobs_module_created", import_jobs.c.module, import_jobs.c.created_at)


# Normalized client entity, one row per CPF.
baseoff_clients = Table(
    "baseoff_clients",
    metadata,
    Column("cpf", String(11), primary_key=True),
    Column("nome", String(255)),
    Column("telefone1", String(20)),
    Column("telefone2", String(20)),
    Column("telefone3", String(20)),
    Column("banco", String(20)),
    Column("margem_disponivel", Numeric(14, 2, asdecimal=False)),
    Column("valor_beneficio", Numeric(14, 2, asdecimal=False)),
    Column("uf", String(50)),
    Column("municipio", String(255)),
    Column("numero_beneficio", String(50)),
    Column("especie", String(20)),
    Column("dib", Date),
    Column("data_nascimento", Date),
)


baseoff_contracts = Table(
    "baseoff_contracts",
    metadata,
    Column("cpf", String(11), primary_key=True),
    Column("numero_contrato", String(100), primary_key=True),
    Column("banco", String(20)),
    Column("parcelas_restantes", Integer),
    Column("valor_parcela", Numeric(14, 2, asdecimal=False)),
    Column("saldo_devedor", Numeric(14, 2, asdecimal=False)),
    Column("taxa", Numeric(8, 4, asdecimal=False)),
)


# Hashes of files that finished importing, used to warn about re-imports.
file_imports = Table(
    "file_imports",
    metadata,
    Column("file_hash", String(64), primary_key=True),
    Column("module", String(50), primary_key=True, default=""),
    Column("file_name", String(500)),
    Column("job_id", String(36)),
    Column("records_imported", Integer, nullable=False, default=0),
    Column("imported_at", DateTime(timezone=True), nullable=False, default=utcnow),
)


def build_upsert(engine: Engine, table: Table, key_columns: Sequence[str]):
    """
    Build an ``INSERT ... ON CONFLICT DO UPDATE`` statement for ``table``.

    Every non-key column is overwritten with the incoming value (last write
    wins). Execute it with a list of row dicts to upsert many rows at once.
    """
    dialect = engine.dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Upsert is not supported on dialect '{dialect}'")

    stmt = insert(table)
    update_columns = {
        column.name: stmt.excluded[column.name]
        for column in table.columns
        if column.name not in key_columns
    }
    return stmt.on_conflict_do_update(index_elements=list(key_columns), set_=update_columns)


_table_init_lock = threading.Lock()


def ensure_tables(engine: Engine) -> None:
    """Create the pipeline tables if they don't exist."""
    with _table_init_lock:
        metadata.create_all(engine, checkfirst=True)
    logger.info("Import pipeline tables created/verified on %s", engine.url.get_backend_name())
