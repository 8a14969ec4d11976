"""
Batch upsert of projected client and contract records.

Clients are keyed by CPF and contracts by (CPF, contract number). Existing
rows are overwritten field by field (last write wins), so replaying a batch
leaves the tables unchanged. The two buffers are written independently: a
failure on one is logged and does not stop the other.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.engine import Engine

from baseoff_import.db.models import baseoff_clients, baseoff_contracts, build_upsert
from baseoff_import.db.retry import StoreRetryPolicy
from baseoff_import.db.session import get_engine

from .projector import ClientRecord, ContractRecord

logger = logging.getLogger(__name__)

CLIENT_KEY = ("cpf",)
CONTRACT_KEY = ("cpf", "numero_contrato")


@dataclass
class WriteResult:
    clients_written: int = 0
    contracts_written: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def _dedupe_by_key(rows: Iterable[Dict[str, Any]], key_columns: Sequence[str]) -> List[Dict[str, Any]]:
    """
    Collapse rows sharing a natural key, keeping the last occurrence.

    A single INSERT ... ON CONFLICT DO UPDATE cannot touch the same key
    twice, so duplicates inside one batch must be resolved beforehand.
    """
    latest: Dict[Tuple[Any, ...], Dict[str, Any]] = {}
    for row in rows:
        key = tuple(row[column] for column in key_columns)
        latest.pop(key, None)
        latest[key] = row
    return list(latest.values())


class BatchUpsertWriter:
    """Writes client/contract buffers as one upsert per entity type."""

    def __init__(self, engine: Optional[Engine] = None, retry_policy: Optional[StoreRetryPolicy] = None):
        self._engine = engine
        self.retry_policy = retry_policy or StoreRetryPolicy.from_settings()

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = get_engine()
        return self._engine

    def write(
        self,
        clients: Sequence[ClientRecord],
        contracts: Sequence[ContractRecord],
    ) -> WriteResult:
        result = WriteResult()

        if clients:
            try:
                result.clients_written = self._upsert(
                    baseoff_clients, [client.as_row() for client in clients], CLIENT_KEY
                )
            except Exception as exc:
                logger.error("Error upserting %d clients: %s", len(clients), exc)
                result.errors.append(f"clients: {exc}")

        if contracts:
            try:
                result.contracts_written = self._upsert(
                    baseoff_contracts, [contract.as_row() for contract in contracts], CONTRACT_KEY
                )
            except Exception as exc:
                logger.error("Error upserting %d contracts: %s", len(contracts), exc)
                result.errors.append(f"contracts: {exc}")

        if clients or contracts:
            logger.debug(
                "Flushed batch: %d clients, %d contracts",
                result.clients_written,
                result.contracts_written,
            )
        return result

    def _upsert(self, table, rows: List[Dict[str, Any]], key_columns: Sequence[str]) -> int:
        rows = _dedupe_by_key(rows, key_columns)
        stmt = build_upsert(self.engine, table, key_columns)

        def _execute() -> int:
            with self.engine.begin() as conn:
                conn.execute(stmt, rows)
            return len(rows)

        return self.retry_policy.call(_execute)
