"""
Helpers for building source files and inspecting tables in tests.
"""
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, select

from baseoff_import.integrations.storage import StorageDownloadError

CSV_HEADER = "CPF;Nome;Telefone;Banco;Contrato;Parcelas;Valor Parcela;Saldo Devedor;Taxa"


class InMemoryStorage:
    """Dict-backed stand-in for the S3 upload/download functions."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}

    def upload(self, file_content: bytes, storage_path: str) -> Dict:
        self.objects[storage_path] = file_content
        return {"storage_path": storage_path, "etag": "test", "size": len(file_content)}

    def download(self, storage_path: str) -> bytes:
        if storage_path not in self.objects:
            raise StorageDownloadError(f"File not found: {storage_path}")
        return self.objects[storage_path]


def csv_row(index: int) -> str:
    cpf = f"{index + 1:011d}"
    return f"{cpf};Cliente {index};(11) 9{index:04d}-0000;001;CT-{index};12;150,50;1.800,00;1,85"


def build_csv(row_count: int = 0, rows: Optional[Iterable[str]] = None) -> bytes:
    lines: List[str] = [CSV_HEADER]
    lines.extend(rows if rows is not None else (csv_row(i) for i in range(row_count)))
    return ("\r\n".join(lines) + "\r\n").encode("utf-8")


def count_rows(engine, table) -> int:
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(table)).scalar()
