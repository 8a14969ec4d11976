"""
Project one tokenized row into a client record and a contract record.

Normalization rules:
- CPF: digits only, left-padded with zeros to 11 characters; empty -> None.
- Numbers: everything but digits, ',', '.' and '-' is dropped and the comma
  is read as the decimal separator; unparseable -> None.
- Phones and dates go through the shared utils cleaners.

A client is emitted only when the CPF resolves; a contract only when both
the CPF and the contract number resolve.
"""
import logging
import math
import re
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Dict, Mapping, Optional, Sequence

from baseoff_import.utils.date import parse_flexible_date
from baseoff_import.utils.phone import clean_phone

from .errors import RowProjectionError

logger = logging.getLogger(__name__)

CPF_LENGTH = 11
MAX_CONTRACT_NUMBER_LENGTH = 100

# Largest magnitude each numeric column can hold; larger values fail the row
# instead of the whole upsert batch.
NUMERIC_LIMITS: Dict[str, float] = {
    "margem_disponivel": 1e12,
    "valor_beneficio": 1e12,
    "valor_parcela": 1e12,
    "saldo_devedor": 1e12,
    "taxa": 1e4,
    "parcelas_restantes": 1e6,
}

TEXT_LIMITS: Dict[str, int] = {
    "nome": 255,
    "banco": 20,
    "uf": 50,
    "municipio": 255,
    "numero_beneficio": 50,
    "especie": 20,
}

_NON_DIGITS = re.compile(r"\D")
_NON_NUMERIC = re.compile(r"[^\d.,\-]")


@dataclass
class ClientRecord:
    cpf: str
    nome: Optional[str] = None
    telefone1: Optional[str] = None
    telefone2: Optional[str] = None
    telefone3: Optional[str] = None
    banco: Optional[str] = None
    margem_disponivel: Optional[float] = None
    valor_beneficio: Optional[float] = None
    uf: Optional[str] = None
    municipio: Optional[str] = None
    numero_beneficio: Optional[str] = None
    especie: Optional[str] = None
    dib: Optional[date] = None
    data_nascimento: Optional[date] = None

    def as_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ContractRecord:
    cpf: str
    numero_contrato: str
    banco: Optional[str] = None
    parcelas_restantes: Optional[int] = None
    valor_parcela: Optional[float] = None
    saldo_devedor: Optional[float] = None
    taxa: Optional[float] = None

    def as_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ProjectedRow:
    client: Optional[ClientRecord] = None
    contract: Optional[ContractRecord] = None


def normalize_cpf(value: Optional[str]) -> Optional[str]:
    """Strip non-digits and left-pad to 11 characters; empty input -> None."""
    if value is None:
        return None
    digits = _NON_DIGITS.sub("", str(value))
    if not digits:
        return None
    return digits.zfill(CPF_LENGTH)


def parse_number(value: Optional[str]) -> Optional[float]:
    """
    Parse a locale-formatted number.

    The comma is the decimal separator. When both separators appear, the
    rightmost one is the decimal separator and the other one groups
    thousands ("1.234,56" and "1,234.56" both give 1234.56). Several dots
    with no comma are thousands groups ("1.234.567").
    """
    if value is None:
        return None

    cleaned = _NON_NUMERIC.sub("", str(value))
    if not cleaned:
        return None

    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        cleaned = cleaned.replace(",", ".")
    elif cleaned.count(".") > 1:
        cleaned = cleaned.replace(".", "")

    try:
        number = float(cleaned)
    except ValueError:
        return None

    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _cell(row: Sequence[str], header_map: Mapping[str, int], key: str) -> Optional[str]:
    index = header_map.get(key)
    if index is None or index >= len(row):
        return None
    value = row[index]
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _text(row: Sequence[str], header_map: Mapping[str, int], key: str) -> Optional[str]:
    value = _cell(row, header_map, key)
    limit = TEXT_LIMITS.get(key)
    if value is not None and limit is not None:
        value = value[:limit]
    return value


def _number(row: Sequence[str], header_map: Mapping[str, int], key: str) -> Optional[float]:
    raw = _cell(row, header_map, key)
    number = parse_number(raw)
    if number is not None and abs(number) >= NUMERIC_LIMITS[key]:
        raise RowProjectionError(f"Value out of range for {key}: '{raw}'")
    return number


def project_row(row: Sequence[str], header_map: Mapping[str, int]) -> ProjectedRow:
    """
    Convert one raw row into optional client/contract records.

    Raises:
        RowProjectionError: the row holds a value that cannot be stored
            (CPF longer than 11 digits, out-of-range number, oversized
            contract number)
    """
    cpf = normalize_cpf(_cell(row, header_map, "cpf"))
    if cpf is None:
        return ProjectedRow()

    if len(cpf) > CPF_LENGTH:
        raise RowProjectionError(f"Invalid CPF '{_cell(row, header_map, 'cpf')}': more than {CPF_LENGTH} digits")

    banco = _text(row, header_map, "banco")

    client = ClientRecord(
        cpf=cpf,
        nome=_text(row, header_map, "nome"),
        telefone1=clean_phone(_cell(row, header_map, "telefone1")),
        telefone2=clean_phone(_cell(row, header_map, "telefone2")),
        telefone3=clean_phone(_cell(row, header_map, "telefone3")),
        banco=banco,
        margem_disponivel=_number(row, header_map, "margem_disponivel"),
        valor_beneficio=_number(row, header_map, "valor_beneficio"),
        uf=_upper(_text(row, header_map, "uf")),
        municipio=_text(row, header_map, "municipio"),
        numero_beneficio=_text(row, header_map, "numero_beneficio"),
        especie=_text(row, header_map, "especie"),
        dib=parse_flexible_date(_cell(row, header_map, "dib"), log_context="dib"),
        data_nascimento=parse_flexible_date(
            _cell(row, header_map, "data_nascimento"), log_context="data_nascimento"
        ),
    )

    contract = None
    numero_contrato = _cell(row, header_map, "numero_contrato")
    if numero_contrato:
        if len(numero_contrato) > MAX_CONTRACT_NUMBER_LENGTH:
            raise RowProjectionError(f"Contract number longer than {MAX_CONTRACT_NUMBER_LENGTH} characters")
        parcelas = _number(row, header_map, "parcelas_restantes")
        contract = ContractRecord(
            cpf=cpf,
            numero_contrato=numero_contrato,
            banco=banco,
            parcelas_restantes=int(parcelas) if parcelas is not None else None,
            valor_parcela=_number(row, header_map, "valor_parcela"),
            saldo_devedor=_number(row, header_map, "saldo_devedor"),
            taxa=_number(row, header_map, "taxa"),
        )

    return ProjectedRow(client=client, contract=contract)


def _upper(value: Optional[str]) -> Optional[str]:
    return value.upper() if value else value
