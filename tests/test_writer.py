"""
Tests for the batch upsert writer.
"""
from sqlalchemy import select

from baseoff_import.db.models import baseoff_clients, baseoff_contracts
from baseoff_import.db.retry import NO_RETRY
from baseoff_import.domain.imports.projector import ClientRecord, ContractRecord
from baseoff_import.domain.imports.writer import BatchUpsertWriter
from tests.utils.import_files import count_rows


def _clients():
    return [
        ClientRecord(cpf="11111111111", nome="Ana", banco="001", margem_disponivel=100.5),
        ClientRecord(cpf="22222222222", nome="Bia", telefone1="11987654321"),
    ]


def _fetch_clients(engine):
    with engine.connect() as conn:
        rows = conn.execute(select(baseoff_clients).order_by(baseoff_clients.c.cpf)).mappings().all()
    return [dict(row) for row in rows]


def test_upsert_is_idempotent(engine):
    writer = BatchUpsertWriter(engine, retry_policy=NO_RETRY)

    first = writer.write(_clients(), [])
    state_after_first = _fetch_clients(engine)
    second = writer.write(_clients(), [])

    assert first.ok and second.ok
    assert count_rows(engine, baseoff_clients) == 2
    assert _fetch_clients(engine) == state_after_first


def test_existing_rows_are_overwritten(engine):
    writer = BatchUpsertWriter(engine, retry_policy=NO_RETRY)
    writer.write(_clients(), [])

    writer.write([ClientRecord(cpf="11111111111", nome="Ana Souza")], [])

    rows = {row["cpf"]: row for row in _fetch_clients(engine)}
    assert rows["11111111111"]["nome"] == "Ana Souza"
    # Last write wins for every column, including ones the new record leaves empty.
    assert rows["11111111111"]["banco"] is None
    assert rows["22222222222"]["nome"] == "Bia"


def test_duplicate_keys_in_one_batch_keep_last(engine):
    writer = BatchUpsertWriter(engine, retry_policy=NO_RETRY)

    result = writer.write(
        [ClientRecord(cpf="33333333333", nome="Primeiro"), ClientRecord(cpf="33333333333", nome="Segundo")],
        [
            ContractRecord(cpf="33333333333", numero_contrato="C1", valor_parcela=10.0),
            ContractRecord(cpf="33333333333", numero_contrato="C1", valor_parcela=20.0),
            ContractRecord(cpf="33333333333", numero_contrato="C2", valor_parcela=30.0),
        ],
    )

    assert result.clients_written == 1
    assert result.contracts_written == 2
    assert _fetch_clients(engine)[0]["nome"] == "Segundo"
    with engine.connect() as conn:
        parcela = conn.execute(
            select(baseoff_contracts.c.valor_parcela).where(baseoff_contracts.c.numero_contrato == "C1")
        ).scalar()
    assert parcela == 20.0


def test_contract_key_is_cpf_and_number(engine):
    writer = BatchUpsertWriter(engine, retry_policy=NO_RETRY)
    writer.write(
        [],
        [
            ContractRecord(cpf="11111111111", numero_contrato="C1"),
            ContractRecord(cpf="22222222222", numero_contrato="C1"),
        ],
    )
    assert count_rows(engine, baseoff_contracts) == 2


def test_client_failure_does_not_block_contracts(engine):
    class ClientTableDown(BatchUpsertWriter):
        def _upsert(self, table, rows, key_columns):
            if table.name == "baseoff_clients":
                raise RuntimeError("clients table unavailable")
            return super()._upsert(table, rows, key_columns)

    writer = ClientTableDown(engine, retry_policy=NO_RETRY)
    result = writer.write(_clients(), [ContractRecord(cpf="11111111111", numero_contrato="C1")])

    assert not result.ok
    assert result.clients_written == 0
    assert result.contracts_written == 1
    assert "clients table unavailable" in result.errors[0]
    assert count_rows(engine, baseoff_contracts) == 1


def test_empty_buffers_are_noop(engine):
    result = BatchUpsertWriter(engine, retry_policy=NO_RETRY).write([], [])
    assert result.ok
    assert result.clients_written == result.contracts_written == 0
